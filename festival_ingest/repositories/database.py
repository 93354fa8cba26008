from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from festival_ingest.repositories.common import utc_now_iso

MIGRATIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""

INGEST_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingest_runs (
    run_id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    locale TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('running', 'success', 'failed')),
    params_json TEXT NOT NULL,
    stats_json TEXT NULL,
    error_text TEXT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT NULL
);

CREATE TABLE IF NOT EXISTS raw_pages (
    run_id TEXT NOT NULL,
    page_number INTEGER NOT NULL,
    endpoint TEXT NOT NULL,
    request_json TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (run_id, page_number),
    FOREIGN KEY(run_id) REFERENCES ingest_runs(run_id)
);

CREATE TABLE IF NOT EXISTS raw_entities_current (
    entity_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    locale TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    first_seen_run_id TEXT NOT NULL,
    last_seen_run_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, source_id, locale),
    FOREIGN KEY(first_seen_run_id) REFERENCES ingest_runs(run_id),
    FOREIGN KEY(last_seen_run_id) REFERENCES ingest_runs(run_id)
);

CREATE TABLE IF NOT EXISTS raw_entities_versions (
    entity_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    locale TEXT NOT NULL,
    run_id TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, source_id, locale, run_id),
    FOREIGN KEY(run_id) REFERENCES ingest_runs(run_id)
);

CREATE TABLE IF NOT EXISTS films (
    film_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_film_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    original_title TEXT NULL,
    synopsis TEXT NULL,
    runtime_minutes INTEGER NULL,
    year INTEGER NULL,
    country TEXT NULL,
    section TEXT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_seen_run_id TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(last_seen_run_id) REFERENCES ingest_runs(run_id)
);

CREATE INDEX IF NOT EXISTS idx_films_active ON films(is_active, film_id);

CREATE TABLE IF NOT EXISTS people (
    person_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_person_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    last_seen_run_id TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(last_seen_run_id) REFERENCES ingest_runs(run_id)
);

CREATE TABLE IF NOT EXISTS film_credits (
    credit_id INTEGER PRIMARY KEY AUTOINCREMENT,
    film_id INTEGER NOT NULL,
    person_id INTEGER NOT NULL,
    role_type TEXT NOT NULL,
    role_name TEXT NOT NULL,
    billing_order INTEGER NULL,
    last_seen_run_id TEXT NULL,
    UNIQUE (film_id, person_id, role_type, role_name),
    FOREIGN KEY(film_id) REFERENCES films(film_id),
    FOREIGN KEY(person_id) REFERENCES people(person_id)
);

CREATE TABLE IF NOT EXISTS venues (
    venue_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_venue_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    address TEXT NULL,
    lat REAL NULL,
    lng REAL NULL,
    last_seen_run_id TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(last_seen_run_id) REFERENCES ingest_runs(run_id)
);

CREATE TABLE IF NOT EXISTS screenings (
    screening_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_screening_id TEXT NOT NULL UNIQUE,
    film_id INTEGER NOT NULL,
    venue_id INTEGER NULL,
    starts_at_utc TEXT NOT NULL,
    local_tz TEXT NULL,
    format TEXT NULL,
    ticket_url TEXT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_seen_run_id TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(film_id) REFERENCES films(film_id),
    FOREIGN KEY(venue_id) REFERENCES venues(venue_id),
    FOREIGN KEY(last_seen_run_id) REFERENCES ingest_runs(run_id)
);

CREATE INDEX IF NOT EXISTS idx_screenings_film_starts ON screenings(film_id, starts_at_utc);
"""

EXTERNAL_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS external_sources (
    source_id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    base_url TEXT NULL
);

INSERT OR IGNORE INTO external_sources (code, name, base_url)
VALUES ('imdb', 'IMDb', 'https://www.imdb.com');

CREATE TABLE IF NOT EXISTS film_external_ids (
    film_id INTEGER NOT NULL,
    source_id INTEGER NOT NULL,
    external_id TEXT NOT NULL,
    url TEXT NULL,
    raw_json TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (film_id, source_id),
    FOREIGN KEY(film_id) REFERENCES films(film_id),
    FOREIGN KEY(source_id) REFERENCES external_sources(source_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_film_external_ids_source_external
ON film_external_ids(source_id, external_id);

CREATE TABLE IF NOT EXISTS film_external_ratings (
    rating_id INTEGER PRIMARY KEY AUTOINCREMENT,
    film_id INTEGER NOT NULL,
    source_id INTEGER NOT NULL,
    fetched_at TEXT NOT NULL,
    rating_value REAL NULL,
    rating_scale REAL NOT NULL,
    vote_count INTEGER NULL,
    raw_json TEXT NOT NULL,
    FOREIGN KEY(film_id) REFERENCES films(film_id),
    FOREIGN KEY(source_id) REFERENCES external_sources(source_id)
);

CREATE INDEX IF NOT EXISTS idx_film_external_ratings_film_fetched
ON film_external_ratings(film_id, source_id, fetched_at DESC);
"""

MIGRATIONS: tuple[tuple[str, str], ...] = (
    ("0001_ingest_schema", INGEST_SCHEMA_SQL),
    ("0002_external_ids", EXTERNAL_SCHEMA_SQL),
)


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._active_conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        # Calls made inside transaction() share its connection and its commit.
        if self._active_conn is not None:
            yield self._active_conn
            return

        conn = self._open()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        if self._active_conn is not None:
            raise RuntimeError("Nested transactions are not supported.")

        conn = self._open()
        self._active_conn = conn
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._active_conn = None
            conn.close()

    def initialize(self) -> int:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return self.apply_migrations()

    def apply_migrations(self) -> int:
        applied_count = 0
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(MIGRATIONS_TABLE_SQL)
            rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
            applied = {str(row["version"]) for row in rows}

            for version, sql in MIGRATIONS:
                if version in applied:
                    continue
                # executescript commits any pending transaction before it runs.
                conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, utc_now_iso()),
                )
                conn.commit()
                applied_count += 1
        return applied_count

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn
