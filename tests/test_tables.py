from __future__ import annotations

import json
import sqlite3
from unittest.mock import patch

import pytest

from stringscope.engine import tables as tables_module
from stringscope.engine.budget import ResourceGovernor
from stringscope.engine.tables import DatabaseSearch, TableEnumerator, is_text_type, open_corpus_database
from stringscope.errors import CorpusUnavailable

from helpers import make_config


def _drain(engine, search_id):
    batches = []
    while True:
        result = engine.process_batch(search_id)
        batches.append(result)
        if result.status != "running":
            return batches


def test_text_type_detection():
    assert is_text_type("VARCHAR(191)") is True
    assert is_text_type("longtext") is True
    assert is_text_type("BLOB") is True
    assert is_text_type("json") is True
    assert is_text_type("INTEGER") is False
    assert is_text_type("") is False


def test_enumerator_skips_tables_without_primary_key(corpus_db):
    conn = sqlite3.connect(corpus_db)
    try:
        listing = TableEnumerator(conn).enumerate(None, ResourceGovernor.disabled())
    finally:
        conn.close()

    assert [t.name for t in listing.tables] == ["options", "users"]
    assert listing.skipped == ["logs"]
    users = listing.tables[1]
    assert users.primary_key == "id"
    assert users.primary_type == "int"
    assert users.columns == ["bio"]
    assert users.row_count == 10


def test_composite_key_table_is_skipped(tmp_path):
    db_path = tmp_path / "composite.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE meta (post_id INTEGER, meta_key TEXT, meta_value TEXT, PRIMARY KEY (post_id, meta_key))")
    try:
        assert TableEnumerator(conn).describe("meta") is None
    finally:
        conn.close()


def test_users_bio_match(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db))

    session = engine.init("needle", "literal", ["users"])
    result = engine.process_batch(session.id)

    assert result.status == "completed"
    assert len(result.results) == 1
    record = result.results[0]
    assert record.kind == "database"
    assert (record.table, record.column) == ("users", "bio")
    assert (record.primary_key, record.primary_value, record.primary_type) == ("id", 7, "int")
    assert record.preview == "likes <mark>needle</mark> work"
    assert record.from_structured_value is False


def test_full_database_search_reports_skipped_and_structured(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db))

    session = engine.init("needle")
    batches = _drain(engine, session.id)
    records = engine.get_results(session.id)

    assert session.skipped_tables == ["logs"]
    assert batches[-1].skipped_tables == ["logs"]
    assert [(r.table, r.primary_value) for r in records] == [("options", 1), ("users", 7)]
    structured = records[0]
    assert structured.column == "option_value"
    assert structured.from_structured_value is True
    assert structured.structure_path == "->widgets[1]->title"


def test_row_batches_resume_and_progress(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db, batch_size_db=3))

    session = engine.init("user", "literal", ["users"])
    batches = _drain(engine, session.id)

    assert [b.processed for b in batches] == [3, 6, 9, 10]
    assert [b.progress for b in batches] == [30.0, 60.0, 90.0, 100.0]
    assert batches[0].current == "users"
    assert batches[-1].current == "completed"
    assert [r.primary_value for r in engine.get_results(session.id)] == [1, 2, 3, 4, 5, 6, 8, 9, 10]


def test_batched_rows_equal_unbounded_pass(tmp_path, corpus_db, store):
    batched = DatabaseSearch(store, make_config(tmp_path, database=corpus_db, batch_size_db=2))
    reference = DatabaseSearch(
        store,
        make_config(tmp_path, database=corpus_db, batch_size_db=10_000),
        governor_factory=ResourceGovernor.disabled,
    )

    first = batched.init("e", "literal")
    second = reference.init("e", "literal")
    _drain(batched, first.id)
    _drain(reference, second.id)

    assert [r.to_dict() for r in batched.get_results(first.id)] == [
        r.to_dict() for r in reference.get_results(second.id)
    ]


def test_result_cap_splits_batches_without_losing_rows(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db, max_results_per_batch=2))

    session = engine.init("user", "literal", ["users"])
    batches = _drain(engine, session.id)

    assert all(len(b.results) <= 3 for b in batches)
    assert len(batches) > 1
    assert len(engine.get_results(session.id)) == 9


def test_oversized_cells_are_skipped(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db, max_cell_bytes=10))

    session = engine.init("needle", "literal", ["users"])
    result = engine.process_batch(session.id)

    assert result.status == "completed"
    assert result.results == []


def test_unknown_tables_complete_immediately(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db))

    session = engine.init("needle", "literal", ["nope"])
    result = engine.process_batch(session.id)

    assert session.total == 0
    assert result.status == "completed"
    assert result.progress == 0


def test_list_tables(tmp_path, corpus_db, store):
    engine = DatabaseSearch(store, make_config(tmp_path, database=corpus_db))

    assert engine.list_tables() == [
        {"name": "logs", "rows": 1},
        {"name": "options", "rows": 1},
        {"name": "users", "rows": 10},
    ]


def test_missing_database_is_unavailable(tmp_path, store):
    engine = DatabaseSearch(store, make_config(tmp_path))
    with pytest.raises(CorpusUnavailable):
        engine.init("needle")
    with pytest.raises(CorpusUnavailable):
        open_corpus_database(tmp_path / "absent.db")


def test_read_only_connection_rejects_writes(corpus_db):
    conn = open_corpus_database(corpus_db)
    try:
        with pytest.raises(sqlite3.OperationalError):
            conn.execute("DELETE FROM users")
    finally:
        conn.close()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _values_db(tmp_path, values):
    db_path = tmp_path / "values.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)")
    conn.executemany("INSERT INTO t (id, v) VALUES (?, ?)", list(enumerate(values, start=1)))
    conn.commit()
    conn.close()
    return db_path


def test_corrupt_nested_cell_does_not_stall_search(tmp_path, store):
    db_path = _values_db(tmp_path, ["[" * 100_000, "needle"])
    engine = DatabaseSearch(store, make_config(tmp_path, database=db_path))

    session = engine.init("needle", "literal", ["t"])
    result = engine.process_batch(session.id)

    assert (result.status, result.processed) == ("completed", 2)
    assert [r.primary_value for r in result.results] == [2]


def test_slow_rows_yield_before_budget(tmp_path, corpus_db, store):
    clock = FakeClock()
    engine = DatabaseSearch(
        store,
        make_config(tmp_path, database=corpus_db),
        governor_factory=lambda: ResourceGovernor(time_budget=5, clock=clock),
    )
    real_scan = tables_module.scan_row

    def slow_scan(*args, **kwargs):
        clock.now += 1.0
        return real_scan(*args, **kwargs)

    session = engine.init("needle", "literal", ["users"])
    with patch("stringscope.engine.tables.scan_row", side_effect=slow_scan):
        batches = _drain(engine, session.id)

    assert batches[0].status == "running"
    assert batches[0].processed < batches[0].total
    assert [b.processed for b in batches] == [3, 6, 9, 10]
    assert batches[-1].status == "completed"


def test_memory_pressure_yields_between_rows(tmp_path, corpus_db, store):
    config = make_config(tmp_path, database=corpus_db)
    session = DatabaseSearch(store, config).init("needle", "literal", ["users"])
    engine = DatabaseSearch(
        store,
        config,
        governor_factory=lambda: ResourceGovernor(time_budget=0, memory_limit=1, memory_probe=lambda: 10),
    )

    result = engine.process_batch(session.id)

    assert result.status == "running"
    assert result.processed == 1


def test_matches_per_cell_are_capped(tmp_path, store):
    db_path = _values_db(tmp_path, [json.dumps(["needle"] * 10)])
    engine = DatabaseSearch(store, make_config(tmp_path, database=db_path, max_matches_per_cell=3))

    session = engine.init("needle", "literal", ["t"])
    result = engine.process_batch(session.id)

    assert [r.structure_path for r in result.results] == ["[0]", "[1]", "[2]"]


def test_php_serialized_cells_are_walked(tmp_path, store):
    serialized = 'a:1:{s:7:"widgets";a:2:{i:0;s:5:"plain";i:1;s:12:"needle title";}}'
    db_path = _values_db(tmp_path, [serialized])
    engine = DatabaseSearch(store, make_config(tmp_path, database=db_path))

    session = engine.init("needle", "literal", ["t"])
    result = engine.process_batch(session.id)

    assert len(result.results) == 1
    assert result.results[0].from_structured_value is True
    assert result.results[0].structure_path == "[widgets][1]"
