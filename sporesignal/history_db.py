"""SQLite-backed persistence for the SporeSignal server.

Stores tracked entities and their append-only sample series in a single
file.  Samples are typed ``(entity_id, timestamp_ms, value)`` rows ordered
by timestamp per entity; the store is otherwise opaque to the streaming
pipeline.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any

from .domain_models import Entity, Sample

LOGGER = logging.getLogger(__name__)

# -- Schema -------------------------------------------------------------------

_SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    entity_id     TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    description   TEXT NOT NULL DEFAULT '',
    kind          TEXT NOT NULL DEFAULT '',
    owner_id      TEXT NOT NULL DEFAULT '',
    status        TEXT NOT NULL DEFAULT 'ingesting',
    sample_count  INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS samples (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id     TEXT NOT NULL REFERENCES entities(entity_id) ON DELETE CASCADE,
    timestamp_ms  INTEGER NOT NULL,
    value         REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_samples_entity_time ON samples(entity_id, timestamp_ms);
"""

_ENTITY_COLS = (
    "entity_id, name, description, kind, owner_id, status, sample_count, created_at"
)


class HistoryDB:
    """Thin wrapper around a SQLite database for entity series history."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = RLock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._ensure_schema()

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _cursor(self, *, commit: bool = True):
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                if commit:
                    self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cur.close()

    def _ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(_SCHEMA_SQL)
        with self._cursor() as cur:
            cur.execute("SELECT value FROM schema_meta WHERE key = ?", ("version",))
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    "INSERT INTO schema_meta (key, value) VALUES (?, ?)",
                    ("version", str(_SCHEMA_VERSION)),
                )
                return
            version = int(str(row[0]))
            if version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported signal DB schema version {version}; "
                    f"expected {_SCHEMA_VERSION}. Delete the database file to recreate."
                )

    @staticmethod
    def _row_to_entity(row: tuple[Any, ...]) -> Entity:
        entity_id, name, description, kind, owner_id, status, sample_count, created = row
        return Entity(
            entity_id=entity_id,
            name=name,
            description=description,
            kind=kind,
            owner_id=owner_id,
            status=status,
            sample_count=int(sample_count or 0),
            created_at=created,
        )

    # -- write ----------------------------------------------------------------

    def create_entity(self, entity: Entity) -> Entity:
        created_at = entity.created_at or datetime.now(UTC).isoformat()
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO entities ({_ENTITY_COLS}) VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
                (
                    entity.entity_id,
                    entity.name,
                    entity.description,
                    entity.kind,
                    entity.owner_id,
                    entity.status,
                    created_at,
                ),
            )
        entity.created_at = created_at
        entity.sample_count = 0
        return entity

    def append_sample(self, entity_id: str, sample: Sample) -> None:
        """Append one sample; raises on failure so the caller sees the write fail."""
        if not math.isfinite(sample.value):
            raise ValueError(f"Refusing to store non-finite value {sample.value!r}")
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO samples (entity_id, timestamp_ms, value) VALUES (?, ?, ?)",
                (entity_id, int(sample.timestamp_ms), float(sample.value)),
            )
            cur.execute(
                "UPDATE entities SET sample_count = sample_count + 1 WHERE entity_id = ?",
                (entity_id,),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown entity {entity_id!r}")

    def append_samples(self, entity_id: str, samples: list[Sample]) -> None:
        if not samples:
            return
        chunk_size = 256
        with self._cursor() as cur:
            for start in range(0, len(samples), chunk_size):
                batch = samples[start : start + chunk_size]
                cur.executemany(
                    "INSERT INTO samples (entity_id, timestamp_ms, value) VALUES (?, ?, ?)",
                    ((entity_id, int(s.timestamp_ms), float(s.value)) for s in batch),
                )
            cur.execute(
                "UPDATE entities SET sample_count = sample_count + ? WHERE entity_id = ?",
                (len(samples), entity_id),
            )

    def set_entity_status(self, entity_id: str, status: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE entities SET status = ? WHERE entity_id = ?",
                (status, entity_id),
            )
            return cur.rowcount > 0

    def delete_entity(self, entity_id: str) -> bool:
        """Delete every sample of *entity_id*, then the entity record itself."""
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM entities WHERE entity_id = ?", (entity_id,))
            if cur.fetchone() is None:
                return False
            cur.execute("DELETE FROM samples WHERE entity_id = ?", (entity_id,))
            removed = cur.rowcount
            cur.execute("DELETE FROM entities WHERE entity_id = ?", (entity_id,))
        LOGGER.info("Deleted entity %s and %d sample(s)", entity_id, removed)
        return True

    # -- read -----------------------------------------------------------------

    def get_entity(self, entity_id: str) -> Entity | None:
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"SELECT {_ENTITY_COLS} FROM entities WHERE entity_id = ?",
                (entity_id,),
            )
            row = cur.fetchone()
        return None if row is None else self._row_to_entity(row)

    def list_entities(self) -> list[Entity]:
        with self._cursor(commit=False) as cur:
            cur.execute(f"SELECT {_ENTITY_COLS} FROM entities ORDER BY created_at DESC")
            rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def latest_timestamp_ms(self, entity_id: str) -> int | None:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT MAX(timestamp_ms) FROM samples WHERE entity_id = ?",
                (entity_id,),
            )
            row = cur.fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def get_samples(
        self,
        entity_id: str,
        *,
        since_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Sample]:
        """Return samples at or after *since_ms* in ascending timestamp order.

        With *limit*, only the most recent ``limit`` samples are kept.
        """
        where = "entity_id = ?"
        params: list[Any] = [entity_id]
        if since_ms is not None:
            where += " AND timestamp_ms >= ?"
            params.append(int(since_ms))
        if limit is not None:
            sql = (
                f"SELECT timestamp_ms, value FROM ("
                f"SELECT id, timestamp_ms, value FROM samples WHERE {where} "
                f"ORDER BY timestamp_ms DESC, id DESC LIMIT ?"
                f") ORDER BY timestamp_ms ASC, id ASC"
            )
            params.append(max(0, int(limit)))
        else:
            sql = (
                f"SELECT timestamp_ms, value FROM samples WHERE {where} "
                f"ORDER BY timestamp_ms ASC, id ASC"
            )
        with self._cursor(commit=False) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [Sample(timestamp_ms=int(ts), value=float(v)) for ts, v in rows]

    def get_recent_window(
        self,
        entity_id: str,
        window_ms: int | None,
        *,
        limit: int | None = None,
    ) -> list[Sample]:
        """Samples within *window_ms* of the entity's latest sample; all of them when ``None``."""
        with self._lock:
            since_ms = None
            if window_ms is not None:
                latest = self.latest_timestamp_ms(entity_id)
                if latest is None:
                    return []
                since_ms = latest - int(window_ms)
            return self.get_samples(entity_id, since_ms=since_ms, limit=limit)
