from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from .config import Settings
from .errors import VaultSearchError
from .graph import snapshot
from .graph.build import GraphBuilder
from .graph.disambiguate import Disambiguator
from .graph.extract import EntityExtractor
from .graph.knowledge_graph import KnowledgeGraphIndex
from .graph.query import query_graph
from .index.chunk_store import ChunkStore, DocumentChunk
from .index.embedder import Embedder, embedder_from_settings
from .search.models import SearchOptions, SearchResponse
from .search.orchestrator import SearchOrchestrator


app = typer.Typer(add_completion=False, help="VaultSearch: semantic, graph-aware search over a notes vault.")
console = Console()

graph_app = typer.Typer(add_completion=False, help="Knowledge graph utilities.")
app.add_typer(graph_app, name="graph")


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level (default from VAULTSEARCH_LOG_LEVEL)"),
):
    settings = Settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


class Runtime:
    def __init__(self, settings: Settings, store: ChunkStore, index: KnowledgeGraphIndex, builder: GraphBuilder):
        self.settings = settings
        self.store = store
        self.index = index
        self.builder = builder
        self._embedder: Embedder | None = None

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = embedder_from_settings(self.settings)
        return self._embedder

    def orchestrator(self, *, with_embedder: bool = True) -> SearchOrchestrator:
        return SearchOrchestrator(
            self.store,
            self.embedder if with_embedder else None,
            self.index,
            max_related=self.settings.max_related,
            related_min_similarity=self.settings.related_min_similarity,
        )

    def save_graph(self) -> Path:
        self.builder.drain()
        return snapshot.save(self.settings.db_path, self.index, pending=self.builder.pending)


@contextmanager
def _runtime(db: Path | None) -> Iterator[Runtime]:
    settings = Settings()
    if db is not None:
        settings = dataclasses.replace(settings, db_path=str(db))

    disambiguator = Disambiguator(
        threshold=settings.disambiguation_threshold,
        low_confidence_threshold=settings.low_confidence_threshold,
    )
    pending: set[str] = set()
    try:
        snap = snapshot.load(settings.db_path, disambiguator=disambiguator)
        index, pending = snap.index, snap.pending
    except FileNotFoundError:
        index = KnowledgeGraphIndex(disambiguator)

    try:
        store = ChunkStore.open(settings.db_path, dimension=settings.embed_dim, slow_query_ms=settings.slow_query_ms)
    except VaultSearchError as e:
        console.print(str(e), style="red")
        raise typer.Exit(code=2)

    builder = GraphBuilder(
        index,
        EntityExtractor(window=settings.relationship_window),
        timeout_s=settings.extraction_timeout_s,
    ).attach(store)
    builder.mark_pending(pending)
    try:
        yield Runtime(settings, store, index, builder)
    except VaultSearchError as e:
        console.print(str(e), style="red")
        if e.retryable:
            console.print("This error is retryable; check the embedding backend / database and retry.", style="yellow")
        raise typer.Exit(code=1)
    finally:
        builder.close()
        store.close()


def _options(
    limit: int,
    content_types: list[str] | None = None,
    tags: list[str] | None = None,
    folders: list[str] | None = None,
    min_similarity: float | None = None,
    tag_mode: str = "any",
) -> SearchOptions:
    return SearchOptions(
        limit=int(limit),
        content_types=tuple(content_types or ()),
        tags=tuple(tags or ()),
        tag_mode=tag_mode,
        folders=tuple(folders or ()),
        min_similarity=min_similarity,
    )


def _print_response(resp: SearchResponse, *, as_json: bool, show_text: bool = False) -> None:
    if as_json:
        console.print_json(json.dumps(resp.to_dict(), ensure_ascii=False))
        return

    title = f"{resp.mode}: {resp.query}" if resp.query else resp.mode
    table = Table(title=f"{title} ({resp.total_found} result(s), {resp.latency_ms:.0f}ms)")
    table.add_column("#", justify="right", width=4)
    table.add_column("score", justify="right", width=8)
    table.add_column("file")
    table.add_column("preview")

    for i, r in enumerate(resp.results, start=1):
        preview = r.highlights[0].text if r.highlights else r.chunk.text
        preview = " ".join(preview.split())
        if len(preview) > 220:
            preview = preview[:220].rstrip() + "..."
        table.add_row(
            Text(str(i)),
            Text(f"{r.score:.3f}"),
            Text(f"{r.chunk.file_name}#{r.chunk.chunk_index}"),
            Text(preview),
        )
    console.print(table)

    if resp.concepts:
        console.print("Concepts: " + ", ".join(f"{c.name} ({c.frequency})" for c in resp.concepts), markup=False)
    shared = resp.graph_insights.get("sharedEntities") or []
    if shared:
        console.print(
            "Shared entities: " + ", ".join(f"{s['entity']['name']} x{s['hitCount']}" for s in shared),
            markup=False,
        )

    if show_text:
        for r in resp.results:
            console.print("\n" + "=" * 80, markup=False)
            console.print(f"{r.chunk.file_name}#{r.chunk.chunk_index}", markup=False, style="bold")
            console.print(r.chunk.text, markup=False)


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _chunk_from_record(rec: dict[str, Any], embedding: Any) -> DocumentChunk:
    file_name = str(rec.get("fileName") or rec.get("file_name") or "")
    index = int(rec.get("chunkIndex", rec.get("chunk_index", 0)))
    return DocumentChunk(
        id=str(rec.get("id") or f"{file_name}#{index}"),
        file_name=file_name,
        text=str(rec.get("text", "")),
        embedding=embedding,
        chunk_index=index,
        content_type=str(rec.get("contentType", rec.get("content_type", "note"))),
        tags=tuple(rec.get("tags") or ()),
        wikilinks=tuple(rec.get("wikilinks") or ()),
        created_at=_parse_dt(rec.get("createdAt", rec.get("created_at"))),
        modified_at=_parse_dt(rec.get("modifiedAt", rec.get("modified_at"))),
        extra=dict(rec.get("extra") or {}),
    )


@app.command()
def load(
    input: Path = typer.Option(..., "--input", exists=True, file_okay=True, dir_okay=False, help="JSONL of chunks"),
    db: Path | None = typer.Option(None, "--db", help="SQLite DB path to create/update"),
    batch_size: int = typer.Option(64, help="Embedding batch size"),
):
    """Load pre-chunked notes (one JSON object per line) into the store."""
    records = []
    with input.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise typer.BadParameter(f"{input}:{line_no}: invalid JSON ({e})")

    with _runtime(db) as rt:
        changed = 0
        for i in range(0, len(records), int(batch_size)):
            batch = records[i : i + int(batch_size)]
            missing = [r for r in batch if r.get("embedding") is None]
            vecs = iter(rt.embedder.embed_texts([str(r.get("text", "")) for r in missing])) if missing else iter(())
            chunks = [
                _chunk_from_record(r, r["embedding"] if r.get("embedding") is not None else next(vecs))
                for r in batch
            ]
            changed += rt.store.batch_upsert(chunks)
        path = rt.save_graph()
        pending = len(rt.builder.pending)

    console.print(f"Chunks read: {len(records)}")
    console.print(f"Chunks changed: {changed}")
    console.print(f"Graph snapshot: {path.name}")
    if pending:
        console.print(f"{pending} chunk(s) pending entity extraction. Run `vaultsearch graph reprocess`.", style="yellow")


@app.command()
def search(
    query: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(10, "-k", "--limit", help="Max results"),
    content_type: list[str] | None = typer.Option(None, "--type", help="Content type filter (repeatable)"),
    tag: list[str] | None = typer.Option(None, "--tag", help="Tag filter (repeatable)"),
    all_tags: bool = typer.Option(False, "--all-tags", help="Require every --tag instead of any"),
    folder: list[str] | None = typer.Option(None, "--folder", help="Folder prefix filter (repeatable)"),
    min_similarity: float | None = typer.Option(None, "--min-similarity"),
    as_json: bool = typer.Option(False, "--json", help="Print the response envelope as JSON"),
    show_text: bool = typer.Option(False, "--show-text", help="Also print full chunk text"),
):
    """Semantic search with related chunks, graph context and concepts."""
    opts = _options(k, content_type, tag, folder, min_similarity, tag_mode="all" if all_tags else "any")
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator().search(query, opts))
    _print_response(resp, as_json=as_json, show_text=show_text)


@app.command("tag")
def tag_cmd(
    tag: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(20, "-k", "--limit"),
    order: str = typer.Option("recency", help="recency | relevance"),
    as_json: bool = typer.Option(False, "--json"),
):
    """List chunks carrying a tag."""
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator(with_embedder=False).search_by_tag(tag, _options(k), order=order))
    _print_response(resp, as_json=as_json)


@app.command()
def mocs(
    query: str | None = typer.Argument(None),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(20, "-k", "--limit"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Maps of content; ranked by inbound links when no query is given."""
    with _runtime(db) as rt:
        orch = rt.orchestrator(with_embedder=query is not None)
        resp = asyncio.run(orch.search_mocs(query, _options(k)))
    _print_response(resp, as_json=as_json)


@app.command()
def conversations(
    query: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(10, "-k", "--limit"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Search conversation logs only."""
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator().search_conversations(query, _options(k)))
    _print_response(resp, as_json=as_json)


@app.command()
def related(
    file_name: str = typer.Argument(..., help="File name as stored, e.g. notes/acme.md"),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(10, "-k", "--limit"),
    strategy: str = typer.Option("average", help="average | best"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Notes similar to a file, excluding the file itself."""
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator(with_embedder=False).find_related_notes(file_name, _options(k), strategy=strategy))
    _print_response(resp, as_json=as_json)


@app.command()
def cluster(
    concept: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    k: int = typer.Option(10, "-k", "--limit"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Graph-first retrieval around a concept's knowledge cluster."""
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator(with_embedder=False).explore_knowledge_cluster(concept, _options(k)))
    if not as_json and "seedEntity" not in resp.graph_insights:
        console.print(f"No entity matches {concept!r}.", style="yellow")
        raise typer.Exit(code=2)
    _print_response(resp, as_json=as_json)


@app.command("file")
def file_cmd(
    file_name: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
):
    """Show a file's chunks in order."""
    with _runtime(db) as rt:
        resp = asyncio.run(rt.orchestrator(with_embedder=False).get_file_chunks(file_name))

    if not resp.results:
        console.print("No matching chunks found.", style="yellow")
        raise typer.Exit(code=2)

    for r in resp.results:
        c = r.chunk
        console.print("=" * 80, markup=False)
        console.print(f"id: {c.id}", markup=False)
        console.print(f"chunk_index: {c.chunk_index}", markup=False)
        if c.tags:
            console.print(f"tags: {', '.join(c.tags)}", markup=False)
        console.print("")
        console.print(c.text, markup=False)


@app.command()
def stats(
    db: Path | None = typer.Option(None, "--db"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Show vault and graph stats."""
    with _runtime(db) as rt:
        st = rt.store.get_stats()
        graph_stats = rt.index.stats()
        pending = len(rt.builder.pending)

    if as_json:
        console.print_json(json.dumps({**st.to_dict(), "graph": graph_stats, "pendingExtraction": pending}))
        return

    table = Table(title="VaultSearch Stats")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Chunks", str(st.total_chunks))
    table.add_row("Entities", str(graph_stats["entities"]))
    table.add_row("Relationships", str(graph_stats["relationships"]))
    table.add_row("Clusters", str(graph_stats["clusters"]))
    table.add_row("Pending extraction", str(pending))
    console.print(table)

    for title, data in (("Chunks by Type", st.by_content_type), ("Chunks by Folder", st.by_folder)):
        if not data:
            continue
        t2 = Table(title=title)
        t2.add_column("value")
        t2.add_column("count")
        for key, n in sorted(data.items(), key=lambda x: (-x[1], x[0])):
            t2.add_row(str(key), str(n))
        console.print(t2)


@app.command("delete-file")
def delete_file(
    file_name: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
):
    """Delete a file's chunks and their graph contribution."""
    with _runtime(db) as rt:
        n = rt.store.delete_chunks_by_file(file_name)
        rt.save_graph()
    console.print(f"Deleted {n} chunk(s) for {file_name}")


@app.command()
def clear(
    db: Path | None = typer.Option(None, "--db"),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
):
    """Delete every chunk and the knowledge graph."""
    if not yes:
        typer.confirm("Delete all chunks?", abort=True)
    with _runtime(db) as rt:
        n = rt.store.clear_all()
        rt.index.clear()
        rt.save_graph()
    console.print(f"Cleared {n} chunk(s)")


@graph_app.command("build")
def graph_build(
    db: Path | None = typer.Option(None, "--db"),
    clear_existing: bool = typer.Option(True, "--clear/--no-clear", help="Clear the existing graph first"),
):
    """Build the knowledge graph from every stored chunk."""
    with _runtime(db) as rt:
        res = rt.builder.rebuild(rt.store, clear=clear_existing)
        path = rt.save_graph()

    table = Table(title="Graph Build")
    table.add_column("Metric")
    table.add_column("Value")
    for key in ("chunks_seen", "chunks_indexed", "chunks_failed", "entities", "relationships", "clusters", "pending"):
        table.add_row(key, str(res[key]))
    console.print(table)
    console.print(f"Saved {path.name}")


@graph_app.command("reprocess")
def graph_reprocess(
    db: Path | None = typer.Option(None, "--db"),
):
    """Retry entity extraction for chunks that failed earlier."""
    with _runtime(db) as rt:
        if not rt.builder.pending:
            console.print("Nothing pending.", style="green")
            return
        res = rt.builder.reprocess_pending()
        rt.save_graph()
    console.print(f"Reprocessed {res['chunks_seen']} chunk(s), {res['still_pending']} still pending")


@graph_app.command("query")
def graph_query(
    query: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    entity_limit: int = typer.Option(5, help="Max entities"),
    neighbor_limit: int = typer.Option(8, help="Max neighbors per entity"),
    chunk_limit: int = typer.Option(5, help="Max chunks per entity"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Query the entity graph."""
    with _runtime(db) as rt:
        res = query_graph(
            index=rt.index,
            store=rt.store,
            query=query,
            entity_limit=entity_limit,
            neighbor_limit=neighbor_limit,
            chunk_limit=chunk_limit,
        )

    if as_json:
        console.print_json(json.dumps(res, ensure_ascii=False))
        return

    if not res["entities"]:
        console.print("No matching entities.", style="yellow")
        raise typer.Exit(code=2)

    for item in res["entities"]:
        ent = item["entity"]
        flag = " (low confidence)" if ent["low_confidence"] else ""
        console.print(f"\n{ent['name']} [{ent['type']}] mentions={ent['mention_count']}{flag}", markup=False, style="bold")
        for n in item["neighbors"]:
            arrow = "->" if n["direction"] == "out" else "<-"
            console.print(f"  {arrow} {n['relationship']} {n['entity']['name']} ({n['confidence']:.2f})", markup=False)
        for c in item["chunks"]:
            console.print(f"  - {c['file_name']}: {c['preview']}", markup=False)


if __name__ == "__main__":
    app()
