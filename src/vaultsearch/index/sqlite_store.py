from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Sequence


SCHEMA_VERSION = 2

CHUNK_COLUMNS = (
    "chunk_id, file_name, file_key, folder, chunk_index, text, content_type, "
    "tags_json, wikilinks_json, wikilink_count, created_at, modified_at, date_ts, "
    "weight, extra_json, embedding, sha256"
)


def connect(db_path: str | os.PathLike[str]) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # One connection is shared by worker threads; ChunkStore serialises access.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chunks (
          chunk_id TEXT PRIMARY KEY,
          file_name TEXT NOT NULL,
          file_key TEXT NOT NULL,
          folder TEXT NOT NULL,
          chunk_index INTEGER NOT NULL,
          text TEXT NOT NULL,
          content_type TEXT NOT NULL,
          tags_json TEXT NOT NULL,
          wikilinks_json TEXT NOT NULL,
          wikilink_count INTEGER NOT NULL,
          created_at TEXT,
          modified_at TEXT,
          date_ts REAL,
          weight REAL NOT NULL,
          extra_json TEXT NOT NULL,
          embedding BLOB NOT NULL,
          sha256 TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_name, chunk_index);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_file_key ON chunks(file_key);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_type ON chunks(content_type);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_folder ON chunks(folder);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chunk_tags (
          chunk_id TEXT NOT NULL REFERENCES chunks(chunk_id) ON DELETE CASCADE,
          tag TEXT NOT NULL,
          PRIMARY KEY (chunk_id, tag)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunk_tags_tag ON chunk_tags(tag);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chunk_links (
          chunk_id TEXT NOT NULL REFERENCES chunks(chunk_id) ON DELETE CASCADE,
          target_key TEXT NOT NULL,
          PRIMARY KEY (chunk_id, target_key)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunk_links_target ON chunk_links(target_key);")

    conn.execute(
        "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def get_meta(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    return None if row is None else str(row["value"])


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute("INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)", (key, value))


def get_chunk_hash(conn: sqlite3.Connection, chunk_id: str) -> str | None:
    row = conn.execute("SELECT sha256 FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
    return None if row is None else str(row["sha256"])


def upsert_chunk_row(conn: sqlite3.Connection, row: dict[str, Any], tags: Sequence[str], link_keys: Sequence[str]) -> None:
    conn.execute(
        f"""
        INSERT INTO chunks({CHUNK_COLUMNS})
        VALUES (:chunk_id, :file_name, :file_key, :folder, :chunk_index, :text, :content_type,
                :tags_json, :wikilinks_json, :wikilink_count, :created_at, :modified_at, :date_ts,
                :weight, :extra_json, :embedding, :sha256)
        ON CONFLICT(chunk_id) DO UPDATE SET
          file_name=excluded.file_name, file_key=excluded.file_key, folder=excluded.folder,
          chunk_index=excluded.chunk_index, text=excluded.text, content_type=excluded.content_type,
          tags_json=excluded.tags_json, wikilinks_json=excluded.wikilinks_json,
          wikilink_count=excluded.wikilink_count, created_at=excluded.created_at,
          modified_at=excluded.modified_at, date_ts=excluded.date_ts, weight=excluded.weight,
          extra_json=excluded.extra_json, embedding=excluded.embedding, sha256=excluded.sha256
        """,
        row,
    )
    conn.execute("DELETE FROM chunk_tags WHERE chunk_id = ?", (row["chunk_id"],))
    conn.executemany(
        "INSERT OR IGNORE INTO chunk_tags(chunk_id, tag) VALUES(?, ?)",
        [(row["chunk_id"], t) for t in tags],
    )
    conn.execute("DELETE FROM chunk_links WHERE chunk_id = ?", (row["chunk_id"],))
    conn.executemany(
        "INSERT OR IGNORE INTO chunk_links(chunk_id, target_key) VALUES(?, ?)",
        [(row["chunk_id"], k) for k in link_keys],
    )


def get_chunks_by_ids(conn: sqlite3.Connection, chunk_ids: Sequence[str]) -> list[sqlite3.Row]:
    if not chunk_ids:
        return []
    placeholders = ",".join(["?"] * len(chunk_ids))
    cur = conn.execute(
        f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE chunk_id IN ({placeholders})",
        list(chunk_ids),
    )
    rows = list(cur.fetchall())
    by_id = {str(r["chunk_id"]): r for r in rows}
    return [by_id[cid] for cid in chunk_ids if cid in by_id]


def get_chunks_by_file(conn: sqlite3.Connection, file_name: str) -> list[sqlite3.Row]:
    cur = conn.execute(
        f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE file_name = ? ORDER BY chunk_index, chunk_id",
        (str(file_name),),
    )
    return list(cur.fetchall())


def chunk_ids_for_file(conn: sqlite3.Connection, file_name: str) -> list[str]:
    cur = conn.execute("SELECT chunk_id FROM chunks WHERE file_name = ? ORDER BY chunk_index", (str(file_name),))
    return [str(r["chunk_id"]) for r in cur.fetchall()]


def all_chunk_ids(conn: sqlite3.Connection) -> list[str]:
    return [str(r["chunk_id"]) for r in conn.execute("SELECT chunk_id FROM chunks ORDER BY chunk_id")]


def delete_chunks(conn: sqlite3.Connection, chunk_ids: Sequence[str]) -> int:
    if not chunk_ids:
        return 0
    placeholders = ",".join(["?"] * len(chunk_ids))
    cur = conn.execute(f"DELETE FROM chunks WHERE chunk_id IN ({placeholders})", list(chunk_ids))
    return int(cur.rowcount)


def clear_chunks(conn: sqlite3.Connection) -> None:
    conn.execute("DELETE FROM chunk_links;")
    conn.execute("DELETE FROM chunk_tags;")
    conn.execute("DELETE FROM chunks;")


def build_where(
    *,
    content_types: Sequence[str] = (),
    tags: Sequence[str] = (),
    tag_mode: str = "any",
    folders: Sequence[str] = (),
    has_wikilinks: bool | None = None,
    date_from: float | None = None,
    date_to: float | None = None,
    exclude_files: Sequence[str] = (),
) -> tuple[str, list[Any]]:
    """Translate filter values into a WHERE clause over `chunks c`.

    Each filter dimension is ANDed; values inside one dimension are ORed,
    except tags with tag_mode="all".
    """
    where: list[str] = []
    params: list[Any] = []

    if content_types:
        where.append(f"c.content_type IN ({','.join(['?'] * len(content_types))})")
        params.extend(content_types)

    if tags:
        placeholders = ",".join(["?"] * len(tags))
        if tag_mode == "all":
            where.append(
                f"(SELECT COUNT(DISTINCT t.tag) FROM chunk_tags t "
                f"WHERE t.chunk_id = c.chunk_id AND t.tag IN ({placeholders})) = ?"
            )
            params.extend(tags)
            params.append(len(set(tags)))
        else:
            where.append(
                f"EXISTS (SELECT 1 FROM chunk_tags t WHERE t.chunk_id = c.chunk_id AND t.tag IN ({placeholders}))"
            )
            params.extend(tags)

    prefixes = [f for f in folders if f]
    if prefixes:
        ors = []
        for prefix in prefixes:
            ors.append("(c.folder = ? OR c.folder LIKE ? ESCAPE '\\')")
            params.extend([prefix, _like_escape(prefix) + "/%"])
        where.append("(" + " OR ".join(ors) + ")")

    if has_wikilinks is True:
        where.append("c.wikilink_count > 0")
    elif has_wikilinks is False:
        where.append("c.wikilink_count = 0")

    if date_from is not None:
        where.append("c.date_ts >= ?")
        params.append(float(date_from))
    if date_to is not None:
        where.append("c.date_ts <= ?")
        params.append(float(date_to))

    if exclude_files:
        where.append(f"c.file_name NOT IN ({','.join(['?'] * len(exclude_files))})")
        params.extend(exclude_files)

    clause = ("WHERE " + " AND ".join(where)) if where else ""
    return clause, params


def iter_embeddings(conn: sqlite3.Connection, where: str, params: Sequence[Any]) -> Iterable[sqlite3.Row]:
    cur = conn.execute(f"SELECT c.chunk_id, c.embedding FROM chunks c {where}", list(params))
    yield from cur


def list_chunk_rows(
    conn: sqlite3.Connection,
    where: str,
    params: Sequence[Any],
    *,
    order_by: str,
    limit: int,
) -> list[sqlite3.Row]:
    cols = ", ".join(f"c.{c.strip()}" for c in CHUNK_COLUMNS.split(","))
    cur = conn.execute(
        f"SELECT {cols} FROM chunks c {where} ORDER BY {order_by} LIMIT ?",
        [*params, int(limit)],
    )
    return list(cur.fetchall())


def chunks_linking_to(conn: sqlite3.Connection, target_keys: Sequence[str], *, exclude_file: str) -> list[tuple[str, int]]:
    """Return [(chunk_id, n_shared)] for chunks whose wikilinks hit *target_keys*."""
    if not target_keys:
        return []
    placeholders = ",".join(["?"] * len(target_keys))
    cur = conn.execute(
        f"""
        SELECT l.chunk_id AS chunk_id, COUNT(*) AS n
        FROM chunk_links l
        JOIN chunks c ON c.chunk_id = l.chunk_id
        WHERE l.target_key IN ({placeholders}) AND c.file_name != ?
        GROUP BY l.chunk_id
        ORDER BY n DESC, l.chunk_id
        """,
        [*target_keys, exclude_file],
    )
    return [(str(r["chunk_id"]), int(r["n"])) for r in cur.fetchall()]


def chunks_in_files(conn: sqlite3.Connection, file_keys: Sequence[str], *, exclude_file: str) -> list[str]:
    if not file_keys:
        return []
    placeholders = ",".join(["?"] * len(file_keys))
    cur = conn.execute(
        f"""
        SELECT chunk_id FROM chunks
        WHERE file_key IN ({placeholders}) AND file_name != ?
        ORDER BY file_name, chunk_index
        """,
        [*file_keys, exclude_file],
    )
    return [str(r["chunk_id"]) for r in cur.fetchall()]


def inbound_link_counts(conn: sqlite3.Connection) -> dict[str, int]:
    cur = conn.execute(
        """
        SELECT l.target_key AS target_key, COUNT(DISTINCT c.file_name) AS n
        FROM chunk_links l
        JOIN chunks c ON c.chunk_id = l.chunk_id
        WHERE c.file_key != l.target_key
        GROUP BY l.target_key
        """
    )
    return {str(r["target_key"]): int(r["n"]) for r in cur.fetchall()}


def count_by(conn: sqlite3.Connection, column: str) -> dict[str, int]:
    if column not in {"content_type", "folder"}:
        raise ValueError(f"cannot group by {column!r}")
    cur = conn.execute(f"SELECT {column} AS k, COUNT(*) AS n FROM chunks GROUP BY {column}")
    return {str(r["k"]): int(r["n"]) for r in cur.fetchall()}


def tag_counts(conn: sqlite3.Connection) -> dict[str, int]:
    cur = conn.execute("SELECT tag, COUNT(*) AS n FROM chunk_tags GROUP BY tag ORDER BY n DESC, tag ASC")
    return {str(r["tag"]): int(r["n"]) for r in cur.fetchall()}


def count_chunks(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) AS n FROM chunks").fetchone()["n"])


def _like_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
