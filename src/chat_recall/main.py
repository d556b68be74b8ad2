import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from .cache import EmbeddingCache, ResultCache
from .config import EngineConfig, resolve_db_path
from .embeddings import build_embedding_provider
from .errors import MetadataFilterParseError, QueryValidationError, SearchError
from .index import VectorIndex
from .models import SearchHit
from .search import SemanticSearchEngine, parse_search_filters, supported_filter_syntax
from .sources import SourceItem
from .storage import DuckDBMessageStore, DuckDBStorage

app = Typer(no_args_is_help=True)
console = Console()

DbPathOption = Annotated[
    Optional[str],
    Option("--db-path", help="DuckDB file (defaults to CHAT_RECALL_DB_PATH or ~/.chat_recall)."),
]
LocalOption = Annotated[
    bool,
    Option("--local", help="Use the offline hashing embedding instead of Google GenAI."),
]


@app.callback()
def main(
    verbose: Annotated[bool, Option("--verbose", "-v", help="Enable debug logging.")] = False,
) -> None:
    """
    Hybrid semantic + lexical search over a chat archive.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def open_engine(
    db_path: str | None,
    *,
    local: bool = False,
) -> tuple[DuckDBStorage, DuckDBMessageStore, SemanticSearchEngine]:
    config = EngineConfig.from_env()
    storage = DuckDBStorage(resolve_db_path(db_path))
    messages = DuckDBMessageStore(storage, snippet_length=config.snippet_length)
    provider = build_embedding_provider(timeout=config.embedding_timeout, local_only=local)
    engine = SemanticSearchEngine(
        VectorIndex(storage, config=config),
        provider,
        messages,
        lexical=messages,
        embedding_cache=EmbeddingCache.from_config(storage, config),
        result_cache=ResultCache.from_config(storage, config),
        config=config,
    )
    return storage, messages, engine


def load_jsonl(path: Path) -> list[SourceItem]:
    items: list[SourceItem] = []
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                row: dict[str, Any] = json.loads(line)
                items.append(
                    SourceItem(
                        identifier=str(row["id"]),
                        content=str(row["content"]),
                        source=str(row.get("chat_id") or row.get("source") or ""),
                        role=str(row.get("role") or "user"),
                        category=row.get("category"),
                        created_at=str(row.get("created_at") or ""),
                    )
                )
            except (json.JSONDecodeError, KeyError) as exc:
                raise ValueError(f"{path}:{line_number}: invalid message record ({exc})") from exc
    return items


def render_hits(hits: list[SearchHit], title: str) -> None:
    if not hits:
        console.print(f"[yellow]No results for {title}[/]")
        return
    table = Table(title=title, title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("id", no_wrap=True)
    table.add_column("score", justify="right")
    table.add_column("via")
    table.add_column("chat")
    table.add_column("snippet")
    for rank, hit in enumerate(hits, start=1):
        table.add_row(
            str(rank),
            hit.identifier,
            f"{hit.score:.3f}",
            hit.matched_by,
            hit.source or "",
            hit.snippet,
        )
    console.print(table)


@app.command()
def ingest(
    path: Annotated[Path, Argument(help="JSONL file with id, content, chat_id, role, category, created_at.")],
    db_path: DbPathOption = None,
) -> None:
    """Load messages from a JSONL file into the message store."""
    try:
        items = load_jsonl(path)
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]{exc}[/]")
        raise Exit(code=1) from exc
    storage = DuckDBStorage(resolve_db_path(db_path))
    try:
        written = DuckDBMessageStore(storage).add_messages(items)
    finally:
        storage.close()
    console.print(f"Ingested {written} messages")


@app.command()
def index(db_path: DbPathOption = None, local: LocalOption = False) -> None:
    """Embed every new or changed message."""
    storage, _, engine = open_engine(db_path, local=local)
    try:
        with console.status("Indexing messages..."):
            report = asyncio.run(engine.index_all())
    finally:
        storage.close()
    table = Table(title="Indexing report", title_justify="left")
    table.add_column("processed", justify="right")
    table.add_column("failed", justify="right")
    table.add_column("skipped", justify="right")
    table.add_column("removed", justify="right")
    table.add_row(
        str(report.processed), str(report.failed), str(report.skipped), str(report.removed)
    )
    console.print(table)
    if report.cancelled:
        console.print("[yellow]Indexing was cancelled before completion[/]")


@app.command()
def search(
    query: Annotated[str, Argument(help="Free-text query.")],
    mode: Annotated[str, Option("--mode", "-m", help="hybrid, semantic or lexical.")] = "hybrid",
    filters: Annotated[
        Optional[str], Option("--filters", "-f", help=supported_filter_syntax())
    ] = None,
    limit: Annotated[int, Option("--limit", "-n", min=1)] = 10,
    db_path: DbPathOption = None,
    local: LocalOption = False,
) -> None:
    """Search the archive."""
    if mode not in {"hybrid", "semantic", "lexical"}:
        console.print(f"[bold red]Unknown mode {mode!r}; use hybrid, semantic or lexical[/]")
        raise Exit(code=2)
    try:
        parsed = parse_search_filters(filters)
    except MetadataFilterParseError as exc:
        console.print(f"[bold red]{exc}[/]")
        raise Exit(code=2) from exc

    storage, _, engine = open_engine(db_path, local=local)
    runner = {
        "hybrid": engine.hybrid_search,
        "semantic": engine.semantic_search,
        "lexical": engine.lexical_search,
    }[mode]
    try:
        hits = asyncio.run(runner(query, parsed, limit))
    except (QueryValidationError, SearchError) as exc:
        console.print(f"[bold red]{exc}[/]")
        raise Exit(code=1) from exc
    finally:
        storage.close()
    render_hits(hits, f"{mode} search: {query!r}")


@app.command()
def similar(
    identifier: Annotated[str, Argument(help="Message id to find neighbours of.")],
    limit: Annotated[int, Option("--limit", "-n", min=1)] = 5,
    db_path: DbPathOption = None,
    local: LocalOption = False,
) -> None:
    """Find messages similar to an indexed message."""
    storage, _, engine = open_engine(db_path, local=local)
    try:
        hits = asyncio.run(engine.find_similar(identifier, limit))
    finally:
        storage.close()
    render_hits(hits, f"similar to {identifier}")


@app.command(name="rebuild-buckets")
def rebuild_buckets(db_path: DbPathOption = None) -> None:
    """Recompute every LSH bucket assignment."""
    storage = DuckDBStorage(resolve_db_path(db_path))
    vector_index = VectorIndex(storage, config=EngineConfig.from_env())

    async def _rebuild() -> bool:
        await vector_index.load()
        return await vector_index.rebuild_buckets()

    try:
        completed = asyncio.run(_rebuild())
        stats = vector_index.stats()
    finally:
        storage.close()
    status = "completed" if completed else "cancelled"
    console.print(
        f"Bucket rebuild {status}: {stats['size']} vectors in {stats['buckets']} buckets "
        f"(generation {stats['generation']})"
    )


@app.command()
def stats(db_path: DbPathOption = None, local: LocalOption = False) -> None:
    """Show index, cache and search statistics."""
    storage, _, engine = open_engine(db_path, local=local)

    async def _stats() -> dict[str, Any]:
        await engine.index.load()
        return await engine.stats()

    try:
        summary = asyncio.run(_stats())
    finally:
        storage.close()
    console.print(
        Panel(
            json.dumps(summary, indent=2, default=str),
            title="chat-recall stats",
            title_align="left",
            border_style="bold green",
        )
    )


@app.command(name="clear-cache")
def clear_cache(db_path: DbPathOption = None) -> None:
    """Drop cached query embeddings and result sets."""
    config = EngineConfig.from_env()
    storage = DuckDBStorage(resolve_db_path(db_path))

    async def _clear() -> None:
        await EmbeddingCache.from_config(storage, config).clear()
        await ResultCache.from_config(storage, config).clear()

    try:
        asyncio.run(_clear())
    finally:
        storage.close()
    console.print("Caches cleared")
