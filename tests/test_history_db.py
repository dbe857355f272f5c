from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

import pytest
from conftest import T0_MS, make_samples

from sporesignal.domain_models import Entity, Sample
from sporesignal.history_db import HistoryDB


def _db_with_entity(tmp_path: Path, entity_id: str = "ent-1") -> HistoryDB:
    db = HistoryDB(tmp_path / "signals.db")
    db.create_entity(Entity(entity_id=entity_id, name="Oyster tray A", kind="oyster"))
    return db


def test_create_and_get_entity(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    entity = db.get_entity("ent-1")
    assert entity is not None
    assert entity.name == "Oyster tray A"
    assert entity.status == "ingesting"
    assert entity.sample_count == 0
    assert entity.created_at
    assert db.get_entity("missing") is None


def test_append_sample_keeps_insertion_order_and_count(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    for sample in make_samples([10, 12, 9, 40, 11]):
        db.append_sample("ent-1", sample)
    stored = db.get_samples("ent-1")
    assert [s.value for s in stored] == [10.0, 12.0, 9.0, 40.0, 11.0]
    assert db.get_entity("ent-1").sample_count == 5
    assert db.latest_timestamp_ms("ent-1") == T0_MS + 4000


def test_append_sample_rejects_non_finite(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    with pytest.raises(ValueError, match="non-finite"):
        db.append_sample("ent-1", Sample(timestamp_ms=T0_MS, value=float("nan")))
    assert db.get_samples("ent-1") == []


def test_append_sample_for_unknown_entity_fails(tmp_path: Path) -> None:
    db = HistoryDB(tmp_path / "signals.db")
    with pytest.raises((sqlite3.IntegrityError, KeyError)):
        db.append_sample("ghost", Sample(timestamp_ms=T0_MS, value=1.0))


def test_append_samples_in_chunks(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    calls: list[int] = []
    original_cursor = db._cursor

    @contextmanager
    def _wrapped_cursor(*, commit: bool = True):
        with original_cursor(commit=commit) as cur:

            class _CursorProxy:
                def __init__(self, base_cursor):
                    self._base_cursor = base_cursor

                def __getattr__(self, name: str):
                    return getattr(self._base_cursor, name)

                def executemany(self, sql: str, seq_of_parameters):
                    rows = list(seq_of_parameters)
                    calls.append(len(rows))
                    return self._base_cursor.executemany(sql, rows)

            yield _CursorProxy(cur)

    db._cursor = _wrapped_cursor  # type: ignore[method-assign]
    db.append_samples("ent-1", make_samples(range(700)))
    assert sum(calls) == 700
    assert max(calls) <= 256
    assert db.get_entity("ent-1").sample_count == 700


def test_thread_safe_appends(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)

    def _append(start: int) -> None:
        db.append_samples("ent-1", make_samples(range(50), start_ms=T0_MS + start * 1000))

    with ThreadPoolExecutor(max_workers=4) as pool:
        for offset in range(0, 400, 50):
            pool.submit(_append, offset)

    assert len(db.get_samples("ent-1")) == 400


def test_get_samples_limit_keeps_most_recent(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    db.append_samples("ent-1", make_samples(range(10)))
    recent = db.get_samples("ent-1", limit=3)
    assert [s.value for s in recent] == [7.0, 8.0, 9.0]


def test_recent_window_is_relative_to_latest_sample(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    hour = 3_600_000
    db.append_samples(
        "ent-1",
        [Sample(timestamp_ms=T0_MS + h * hour, value=float(h)) for h in range(10)],
    )
    window = db.get_recent_window("ent-1", 4 * hour)
    assert [s.value for s in window] == [5.0, 6.0, 7.0, 8.0, 9.0]
    assert len(db.get_recent_window("ent-1", None)) == 10
    assert db.get_recent_window("ent-1", 4 * hour, limit=2)[0].value == 8.0
    assert db.get_recent_window("empty", 4 * hour) == []


def test_delete_entity_cascades_samples(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    db.create_entity(Entity(entity_id="ent-2", name="Shiitake log"))
    db.append_samples("ent-1", make_samples([1, 2, 3]))
    db.append_samples("ent-2", make_samples([4, 5]))

    assert db.delete_entity("ent-1") is True
    assert db.get_entity("ent-1") is None
    assert db.get_samples("ent-1") == []
    assert [s.value for s in db.get_samples("ent-2")] == [4.0, 5.0]
    assert db.delete_entity("ent-1") is False


def test_set_entity_status_and_list(tmp_path: Path) -> None:
    db = _db_with_entity(tmp_path)
    assert db.set_entity_status("ent-1", "complete") is True
    assert db.set_entity_status("missing", "complete") is False
    assert [e.status for e in db.list_entities()] == ["complete"]


def test_schema_version_mismatch_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "signals.db"
    HistoryDB(path).close()
    conn = sqlite3.connect(str(path))
    conn.execute("UPDATE schema_meta SET value = '99' WHERE key = 'version'")
    conn.commit()
    conn.close()
    with pytest.raises(RuntimeError, match="Unsupported signal DB schema version 99"):
        HistoryDB(path)
