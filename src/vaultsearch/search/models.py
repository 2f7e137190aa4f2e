from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..errors import InvalidInput
from ..index.chunk_store import DocumentChunk, SearchFilters


MODES = ("search", "tag", "mocs", "conversations", "related", "cluster", "file")


@dataclass(frozen=True)
class SearchOptions:
    limit: int = 10
    content_types: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    tag_mode: str = "any"
    folders: tuple[str, ...] = ()
    has_wikilinks: bool | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    min_similarity: float | None = None
    include_related: bool = True
    include_graph: bool = True
    max_related: int | None = None
    max_concepts: int = 10

    def validate(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise InvalidInput(f"limit must be a positive integer, got {self.limit!r}")
        if self.max_related is not None and self.max_related < 0:
            raise InvalidInput(f"max_related must be >= 0, got {self.max_related!r}")
        if self.max_concepts < 0:
            raise InvalidInput(f"max_concepts must be >= 0, got {self.max_concepts!r}")
        self.filters().validate()

    def filters(self, *, exclude_files: tuple[str, ...] = (), content_types: tuple[str, ...] | None = None) -> SearchFilters:
        return SearchFilters(
            content_types=tuple(self.content_types if content_types is None else content_types),
            tags=tuple(self.tags),
            tag_mode=self.tag_mode,
            folders=tuple(self.folders),
            has_wikilinks=self.has_wikilinks,
            date_from=self.date_from,
            date_to=self.date_to,
            exclude_files=tuple(exclude_files),
            min_similarity=self.min_similarity,
        )


@dataclass(frozen=True)
class Highlight:
    start: int
    end: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


@dataclass(frozen=True)
class RelatedChunk:
    chunk_id: str
    file_name: str
    score: float
    reason: str  # "wikilink" | "similarity"

    def to_dict(self) -> dict[str, Any]:
        return {"chunkId": self.chunk_id, "fileName": self.file_name, "score": self.score, "reason": self.reason}


@dataclass(frozen=True)
class EntityRef:
    id: str
    name: str
    type: str
    confidence: float
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "confidence": self.confidence,
            "lowConfidence": self.low_confidence,
        }


@dataclass(frozen=True)
class GraphContext:
    entities: tuple[EntityRef, ...] = ()
    neighbors: tuple[EntityRef, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "neighbors": [e.to_dict() for e in self.neighbors],
        }


@dataclass
class SearchResult:
    chunk: DocumentChunk
    score: float
    highlights: list[Highlight] = field(default_factory=list)
    related_chunks: list[RelatedChunk] = field(default_factory=list)
    graph_context: GraphContext = field(default_factory=GraphContext)
    facets: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "score": self.score,
            "highlights": [h.to_dict() for h in self.highlights],
            "relatedChunks": [r.to_dict() for r in self.related_chunks],
            "graphContext": self.graph_context.to_dict(),
            "facets": dict(self.facets),
        }


@dataclass(frozen=True)
class Concept:
    entity_id: str
    name: str
    type: str
    confidence: float
    frequency: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "name": self.name,
            "type": self.type,
            "confidence": self.confidence,
            "frequency": self.frequency,
        }


@dataclass
class SearchResponse:
    query: str | None
    mode: str
    results: list[SearchResult] = field(default_factory=list)
    total_found: int = 0
    latency_ms: float = 0.0
    facets: dict[str, Any] = field(default_factory=dict)
    graph_insights: dict[str, Any] = field(default_factory=dict)
    concepts: list[Concept] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "mode": self.mode,
            "results": [r.to_dict() for r in self.results],
            "totalFound": self.total_found,
            "latencyMs": self.latency_ms,
            "facets": self.facets,
            "graphInsights": self.graph_insights,
            "concepts": [c.to_dict() for c in self.concepts],
        }
