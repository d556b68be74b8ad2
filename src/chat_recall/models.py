from pydantic import BaseModel, Field
from typing import TypeAlias, Literal

SearchMode: TypeAlias = Literal["semantic", "lexical", "hybrid", "similar"]
MatchSource: TypeAlias = Literal["semantic", "lexical", "semantic+lexical"]


class SearchHit(BaseModel):
    """A ranked search result, shared by the lexical and semantic paths"""

    identifier: str = Field(description="Message identifier")
    score: float = Field(description="Final ranking score")
    snippet: str = Field(default="", description="Short excerpt of the content")
    content: str = Field(default="", description="Full message content")
    source: str | None = Field(default=None, description="Chat the message belongs to")
    role: str | None = Field(default=None, description="Author role of the message")
    category: str | None = Field(default=None, description="Message category")
    created_at: str | None = Field(
        default=None, description="Message timestamp in ISO-8601 format"
    )
    semantic_score: float = Field(default=0.0, description="Raw cosine similarity")
    lexical_score: float = Field(default=0.0, description="Raw lexical score")
    matched_by: MatchSource = Field(default="semantic", description="Which leg found it")

    def rescored(self, score: float, **updates: object) -> "SearchHit":
        return self.model_copy(update={"score": score, **updates})
