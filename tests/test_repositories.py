from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from festival_ingest.repositories.common import SchemaInvariantViolation, canonical_json, content_hash
from festival_ingest.repositories.database import MIGRATIONS, Database
from festival_ingest.repositories.external_id_repository import (
    IMDB_SOURCE_CODE,
    ExternalIdRepository,
)
from festival_ingest.repositories.ingest_run_repository import IngestRunRepository
from festival_ingest.repositories.program_repository import ProgramRepository
from festival_ingest.repositories.raw_repository import RawRepository
from festival_ingest.services.program_normalizer import normalize_program_item
from tests.support import count_rows


def test_initialize_applies_migrations_once(tmp_path: Path) -> None:
    db = Database(tmp_path / "nested" / "festival.sqlite")

    assert db.initialize() == len(MIGRATIONS)
    assert db.initialize() == 0
    assert db.path.exists()
    assert count_rows(db, "schema_migrations") == len(MIGRATIONS)
    assert count_rows(db, "external_sources", "code = 'imdb'") == 1


def test_canonical_json_ignores_key_order() -> None:
    assert canonical_json({"b": 1, "a": [1, {"d": 2, "c": 3}]}) == '{"a":[1,{"c":3,"d":2}],"b":1}'
    assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})
    assert content_hash({"a": 1}) != content_hash({"a": 2})


def test_run_lifecycle(database: Database) -> None:
    runs = IngestRunRepository(database)
    run_id = runs.start_run(source="feed", locale="de", params={"max_pages": 3})

    started = runs.get_run(run_id)
    assert started is not None
    assert started.status == "running"
    assert started.params == {"max_pages": 3}
    assert started.stats is None

    runs.mark_failed(run_id, error_text="boom")
    failed = runs.get_run(run_id)
    assert failed is not None
    assert failed.status == "failed"
    assert failed.error_text == "boom"
    assert failed.ended_at is not None
    assert runs.get_run("missing") is None


def test_raw_entity_versions_only_grow_on_change(database: Database) -> None:
    runs = IngestRunRepository(database)
    raw = RawRepository(database)
    first_run = runs.start_run(source="feed", locale="de", params={})
    second_run = runs.start_run(source="feed", locale="de", params={})
    third_run = runs.start_run(source="feed", locale="de", params={})

    created = raw.record_raw_entity(
        run_id=first_run, entity_type="program_item", source_id="f", locale="de", payload={"t": 1}
    )
    unchanged = raw.record_raw_entity(
        run_id=second_run, entity_type="program_item", source_id="f", locale="de", payload={"t": 1}
    )
    changed = raw.record_raw_entity(
        run_id=third_run, entity_type="program_item", source_id="f", locale="de", payload={"t": 2}
    )

    assert created.is_new is True and created.version_written is True
    assert unchanged.is_new is False and unchanged.version_written is False
    assert changed.version_written is True
    assert raw.count_versions(entity_type="program_item", source_id="f", locale="de") == 2
    with database.connection() as conn:
        current = conn.execute(
            "SELECT first_seen_run_id, last_seen_run_id, payload_hash FROM raw_entities_current"
        ).fetchone()
    assert current["first_seen_run_id"] == first_run
    assert current["last_seen_run_id"] == third_run
    assert current["payload_hash"] == content_hash({"t": 2})

    # Locale is part of the raw entity key.
    raw.record_raw_entity(
        run_id=third_run, entity_type="program_item", source_id="f", locale="en", payload={"t": 2}
    )
    assert count_rows(database, "raw_entities_current") == 2


def test_raw_page_write_replaces_same_page(database: Database) -> None:
    run_id = IngestRunRepository(database).start_run(source="feed", locale="de", params={})
    raw = RawRepository(database)

    raw.record_raw_page(
        run_id=run_id, endpoint="e", page_number=1, request_body={"Page": 1}, payload={"a": 1},
        status_code=200,
    )
    digest = raw.record_raw_page(
        run_id=run_id, endpoint="e", page_number=1, request_body={"Page": 1}, payload={"a": 2},
        status_code=200,
    )

    assert digest == content_hash({"a": 2})
    assert count_rows(database, "raw_pages") == 1


def test_transaction_rolls_back_every_repository_write(database: Database) -> None:
    runs = IngestRunRepository(database)
    run_id = runs.start_run(source="feed", locale="de", params={})
    program = ProgramRepository(database)

    with pytest.raises(RuntimeError, match="abort"):
        with database.transaction():
            program.upsert_item(run_id=run_id, item=normalize_program_item({"id": "x"}))
            assert count_rows(database, "films") == 1
            raise RuntimeError("abort")

    assert count_rows(database, "films") == 0

    with pytest.raises(RuntimeError, match="Nested"):
        with database.transaction():
            with database.transaction():
                pass


def test_credit_billing_order_is_overwritten_on_upsert(database: Database) -> None:
    run_id = IngestRunRepository(database).start_run(source="feed", locale="de", params={})
    program = ProgramRepository(database)
    item = {"id": "f", "castMembers": [{"personId": "p-1", "name": "Ana", "order": 2}]}

    program.upsert_item(run_id=run_id, item=normalize_program_item(item))
    item["castMembers"] = [{"personId": "p-1", "name": "Ana", "order": 5}]
    program.upsert_item(run_id=run_id, item=normalize_program_item(item))

    with database.connection() as conn:
        rows = conn.execute("SELECT billing_order FROM film_credits").fetchall()
    assert [row["billing_order"] for row in rows] == [5]


def test_deactivate_missing_only_touches_stale_rows(database: Database) -> None:
    runs = IngestRunRepository(database)
    program = ProgramRepository(database)
    old_run = runs.start_run(source="feed", locale="de", params={})
    new_run = runs.start_run(source="feed", locale="de", params={})
    stale = {"id": "stale", "screenings": [{"id": "s-stale", "date": "2026-02-18T10:00:00Z"}]}
    fresh = {"id": "fresh", "screenings": [{"id": "s-fresh", "date": "2026-02-18T12:00:00Z"}]}
    program.upsert_item(run_id=old_run, item=normalize_program_item(stale))
    program.upsert_item(run_id=new_run, item=normalize_program_item(fresh))

    result = program.deactivate_missing(new_run)

    assert result.films == 1
    assert result.screenings == 1
    assert count_rows(database, "films", "is_active = 1") == 1
    assert program.deactivate_missing(new_run).films == 0


def test_verify_helpers_count_rows_and_orphans(database: Database) -> None:
    run_id = IngestRunRepository(database).start_run(source="feed", locale="de", params={})
    program = ProgramRepository(database)
    program.upsert_item(
        run_id=run_id,
        item=normalize_program_item(
            {"id": "f", "screenings": [{"id": "s", "date": "2026-02-18T10:00:00Z"}]}
        ),
    )

    counts = program.count_rows()

    assert counts["films"] == 1
    assert counts["screenings"] == 1
    assert counts["external_sources"] == 1
    assert program.count_orphan_screenings() == 0


def test_external_source_lookup_requires_seed_row(database: Database) -> None:
    repository = ExternalIdRepository(database)

    assert repository.get_source_id(IMDB_SOURCE_CODE) >= 1
    with pytest.raises(SchemaInvariantViolation):
        repository.get_source_id("letterboxd")


def test_external_links_are_unique_per_source_and_id(database: Database) -> None:
    run_id = IngestRunRepository(database).start_run(source="feed", locale="de", params={})
    program = ProgramRepository(database)
    first = program.upsert_item(run_id=run_id, item=normalize_program_item({"id": "a"}))
    second = program.upsert_item(run_id=run_id, item=normalize_program_item({"id": "b"}))
    repository = ExternalIdRepository(database)
    source_id = repository.get_source_id(IMDB_SOURCE_CODE)

    repository.upsert_link(film_id=first, source_id=source_id, external_id="tt1", url=None, raw={})
    repository.upsert_link(film_id=first, source_id=source_id, external_id="tt2", url=None, raw={})

    assert count_rows(database, "film_external_ids") == 1
    assert repository.find_film_for_external_id(source_id=source_id, external_id="tt2") == first
    with pytest.raises(sqlite3.IntegrityError):
        repository.upsert_link(
            film_id=second, source_id=source_id, external_id="tt2", url=None, raw={}
        )
