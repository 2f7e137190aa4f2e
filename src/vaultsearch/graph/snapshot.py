from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from .disambiguate import Disambiguator
from .knowledge_graph import KnowledgeGraphIndex


SNAPSHOT_VERSION = 1


@dataclass
class GraphSnapshot:
    index: KnowledgeGraphIndex
    pending: set[str] = field(default_factory=set)


def path_for_db(db_path: str | os.PathLike[str]) -> Path:
    return Path(str(db_path) + ".graph.json")


def save(
    db_path: str | os.PathLike[str],
    index: KnowledgeGraphIndex,
    *,
    pending: set[str] | None = None,
) -> Path:
    path = path_for_db(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        "version": SNAPSHOT_VERSION,
        "graph": index.to_dict(),
        "pending": sorted(pending or ()),
    }
    # Write-then-rename so a crash never leaves half a snapshot.
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
    return path


def load(db_path: str | os.PathLike[str], *, disambiguator: Disambiguator | None = None) -> GraphSnapshot:
    path = path_for_db(db_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Graph snapshot not found. Expected {path.name} next to {Path(db_path).name}."
        )

    data = json.loads(path.read_text(encoding="utf-8"))
    if int(data.get("version", 0)) != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported graph snapshot version: {data.get('version')!r}")

    return GraphSnapshot(
        index=KnowledgeGraphIndex.from_dict(data.get("graph") or {}, disambiguator),
        pending=set(data.get("pending") or ()),
    )
