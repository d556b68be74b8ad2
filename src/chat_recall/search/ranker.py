"""
Ranking helpers for merging semantic and lexical result sets.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from ..models import MatchSource, SearchHit


class FusionPolicy(str, enum.Enum):
    """How the two scores of a result found by both legs are combined."""

    AVERAGE = "average"
    SUM = "sum"
    MAX = "max"

    def combine(self, semantic: float, lexical: float) -> float:
        if self is FusionPolicy.SUM:
            return semantic + lexical
        if self is FusionPolicy.MAX:
            return max(semantic, lexical)
        return (semantic + lexical) / 2.0


@dataclass(frozen=True)
class FusedCandidate:
    """Merged retrieval candidate for one message."""

    hit: SearchHit
    semantic_score: float | None
    lexical_score: float | None
    semantic_boost: float
    policy: FusionPolicy

    @property
    def combined_score(self) -> float:
        boosted = (
            self.semantic_score * self.semantic_boost
            if self.semantic_score is not None
            else None
        )
        if boosted is not None and self.lexical_score is not None:
            return self.policy.combine(boosted, self.lexical_score)
        if boosted is not None:
            return boosted
        return self.lexical_score or 0.0

    @property
    def matched_by(self) -> MatchSource:
        if self.semantic_score is not None and self.lexical_score is not None:
            return "semantic+lexical"
        if self.semantic_score is not None:
            return "semantic"
        return "lexical"

    def to_hit(self) -> SearchHit:
        return self.hit.rescored(
            self.combined_score,
            semantic_score=self.semantic_score or 0.0,
            lexical_score=self.lexical_score or 0.0,
            matched_by=self.matched_by,
        )


def fuse_results(
    semantic_hits: list[SearchHit],
    lexical_hits: list[SearchHit],
    *,
    semantic_boost: float = 1.2,
    policy: FusionPolicy | str = FusionPolicy.AVERAGE,
    limit: int = 20,
) -> list[SearchHit]:
    """Merge both legs, sort by ``(-score, identifier)`` and apply limit.

    Semantic scores are multiplied by *semantic_boost*, lexical scores are
    taken as-is, and identifiers found by both are combined by *policy*.
    """
    fusion = FusionPolicy(policy)
    semantic = {hit.identifier: hit for hit in semantic_hits}
    lexical = {hit.identifier: hit for hit in lexical_hits}

    candidates = [
        FusedCandidate(
            hit=semantic.get(identifier) or lexical[identifier],
            semantic_score=semantic[identifier].score if identifier in semantic else None,
            lexical_score=lexical[identifier].score if identifier in lexical else None,
            semantic_boost=semantic_boost,
            policy=fusion,
        )
        for identifier in {*semantic, *lexical}
    ]
    ordered = sorted(
        candidates,
        key=lambda candidate: (-candidate.combined_score, candidate.hit.identifier),
    )
    return [candidate.to_hit() for candidate in ordered[: max(limit, 0)]]
