"""
Data models for the knowledge graph.

Entities, relationships and clusters reference each other by id only, so the
whole graph is plain data: easy to snapshot and safe to share with readers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


ENTITY_TYPES = ("person", "organization", "location", "concept", "other")

RELATIONSHIP_TYPES = (
    "works-for",
    "located-in",
    "lives-in",
    "part-of",
    "is-a",
    "founded-by",
    "related-to",
)


@dataclass(frozen=True)
class Mention:
    surface: str
    chunk_id: str
    start: int
    end: int
    confidence: float
    low_confidence: bool = False
    type: str = "other"


@dataclass
class Entity:
    id: str
    name: str
    type: str
    mentions: list[Mention] = field(default_factory=list)
    confidence: float = 0.0
    low_confidence: bool = False

    @property
    def mention_count(self) -> int:
        return len(self.mentions)

    def chunk_ids(self) -> set[str]:
        return {m.chunk_id for m in self.mentions}

    def recompute_confidence(self) -> None:
        if self.mentions:
            self.confidence = max(m.confidence for m in self.mentions)
            self.low_confidence = all(m.low_confidence for m in self.mentions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "confidence": self.confidence,
            "lowConfidence": self.low_confidence,
            "mentions": [
                {
                    "surface": m.surface,
                    "chunkId": m.chunk_id,
                    "start": m.start,
                    "end": m.end,
                    "confidence": m.confidence,
                    "lowConfidence": m.low_confidence,
                    "type": m.type,
                }
                for m in self.mentions
            ],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Entity":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            type=str(d["type"]),
            confidence=float(d.get("confidence", 0.0)),
            low_confidence=bool(d.get("lowConfidence", False)),
            mentions=[
                Mention(
                    surface=str(m["surface"]),
                    chunk_id=str(m["chunkId"]),
                    start=int(m["start"]),
                    end=int(m["end"]),
                    confidence=float(m["confidence"]),
                    low_confidence=bool(m.get("lowConfidence", False)),
                    # Snapshots without mention types take the entity's.
                    type=str(m.get("type", d["type"])),
                )
                for m in d.get("mentions", [])
            ],
        )


@dataclass(frozen=True)
class Evidence:
    chunk_id: str
    confidence: float


@dataclass
class Relationship:
    id: str
    source_id: str
    target_id: str
    type: str
    evidence: list[Evidence] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return max((e.confidence for e in self.evidence), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "type": self.type,
            "confidence": self.confidence,
            "evidence": [{"chunkId": e.chunk_id, "confidence": e.confidence} for e in self.evidence],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Relationship":
        return cls(
            id=str(d["id"]),
            source_id=str(d["sourceId"]),
            target_id=str(d["targetId"]),
            type=str(d["type"]),
            evidence=[Evidence(chunk_id=str(e["chunkId"]), confidence=float(e["confidence"])) for e in d.get("evidence", [])],
        )


@dataclass(frozen=True)
class KnowledgeCluster:
    id: str
    name: str
    parent_id: str | None
    level: int
    entity_ids: frozenset[str]
    central_entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "level": self.level,
            "entityIds": sorted(self.entity_ids),
            "centralEntityId": self.central_entity_id,
        }


def relationship_id(source_id: str, rel_type: str, target_id: str) -> str:
    return f"{source_id}|{rel_type}|{target_id}"
