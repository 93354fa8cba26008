from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass

from festival_ingest.repositories.common import SchemaInvariantViolation, utc_now_iso
from festival_ingest.repositories.database import Database
from festival_ingest.services.program_normalizer import (
    NormalizedCredit,
    NormalizedFilm,
    NormalizedPerson,
    NormalizedProgramItem,
    NormalizedScreening,
    NormalizedVenue,
)

COUNTED_TABLES = (
    "ingest_runs",
    "raw_pages",
    "raw_entities_current",
    "raw_entities_versions",
    "films",
    "people",
    "film_credits",
    "venues",
    "screenings",
    "external_sources",
    "film_external_ids",
    "film_external_ratings",
)


@dataclass(frozen=True)
class DeactivationResult:
    films: int
    screenings: int


@dataclass(frozen=True)
class FilmRow:
    film_id: int
    source_film_id: str
    title: str
    original_title: str | None
    year: int | None
    is_active: bool
    last_seen_run_id: str | None


class ProgramRepository:
    """Normalized films, people, credits, venues and screenings.

    Every upsert stamps ``last_seen_run_id`` so that ``deactivate_missing``
    can soft-delete whatever a successful run did not touch.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_item(self, *, run_id: str, item: NormalizedProgramItem) -> int:
        with self._db.connection() as conn:
            film_id = self._upsert_film(conn, run_id=run_id, film=item.film)
            self._upsert_people_and_credits(
                conn,
                run_id=run_id,
                film_id=film_id,
                people=item.people,
                credits=item.credits,
            )
            self._upsert_venues_and_screenings(
                conn,
                run_id=run_id,
                film_id=film_id,
                venues=item.venues,
                screenings=item.screenings,
            )
        return film_id

    def upsert_film(self, *, run_id: str, film: NormalizedFilm) -> int:
        with self._db.connection() as conn:
            return self._upsert_film(conn, run_id=run_id, film=film)

    def deactivate_missing(self, run_id: str) -> DeactivationResult:
        updated_at = utc_now_iso()
        with self._db.connection() as conn:
            films = conn.execute(
                """
                UPDATE films
                SET is_active = 0, updated_at = ?
                WHERE is_active = 1 AND last_seen_run_id IS NOT ?
                """,
                (updated_at, run_id),
            ).rowcount
            screenings = conn.execute(
                """
                UPDATE screenings
                SET is_active = 0, updated_at = ?
                WHERE is_active = 1 AND last_seen_run_id IS NOT ?
                """,
                (updated_at, run_id),
            ).rowcount
        return DeactivationResult(films=films, screenings=screenings)

    def get_film_by_source_id(self, source_film_id: str) -> FilmRow | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT film_id, source_film_id, title, original_title, year,
                       is_active, last_seen_run_id
                FROM films
                WHERE source_film_id = ?
                """,
                (source_film_id,),
            ).fetchone()
        if row is None:
            return None
        return FilmRow(
            film_id=int(row["film_id"]),
            source_film_id=str(row["source_film_id"]),
            title=str(row["title"]),
            original_title=row["original_title"],
            year=row["year"],
            is_active=bool(row["is_active"]),
            last_seen_run_id=row["last_seen_run_id"],
        )

    def count_rows(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._db.connection() as conn:
            for table in COUNTED_TABLES:
                row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
                counts[table] = int(row["count"]) if row is not None else 0
        return counts

    def count_orphan_screenings(self) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count
                FROM screenings s
                LEFT JOIN films f ON f.film_id = s.film_id
                WHERE f.film_id IS NULL
                """
            ).fetchone()
        return int(row["count"]) if row is not None else 0

    def _upsert_film(self, conn: sqlite3.Connection, *, run_id: str, film: NormalizedFilm) -> int:
        now_iso = utc_now_iso()
        conn.execute(
            """
            INSERT INTO films (
                source_film_id, title, original_title, synopsis, runtime_minutes,
                year, country, section, is_active, last_seen_run_id,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            ON CONFLICT(source_film_id) DO UPDATE SET
                title = excluded.title,
                original_title = excluded.original_title,
                synopsis = excluded.synopsis,
                runtime_minutes = excluded.runtime_minutes,
                year = excluded.year,
                country = excluded.country,
                section = excluded.section,
                is_active = 1,
                last_seen_run_id = excluded.last_seen_run_id,
                updated_at = excluded.updated_at
            """,
            (
                film.source_film_id,
                film.title,
                film.original_title,
                film.synopsis,
                film.runtime_minutes,
                film.year,
                film.country,
                film.section,
                run_id,
                now_iso,
                now_iso,
            ),
        )
        row = conn.execute(
            "SELECT film_id FROM films WHERE source_film_id = ?",
            (film.source_film_id,),
        ).fetchone()
        if row is None:
            raise SchemaInvariantViolation(
                f"Film row missing after upsert: {film.source_film_id}"
            )
        return int(row["film_id"])

    def _upsert_people_and_credits(
        self,
        conn: sqlite3.Connection,
        *,
        run_id: str,
        film_id: int,
        people: Sequence[NormalizedPerson],
        credits: Sequence[NormalizedCredit],
    ) -> None:
        now_iso = utc_now_iso()
        person_ids: dict[str, int] = {}
        for person in people:
            conn.execute(
                """
                INSERT INTO people (
                    source_person_id, name, last_seen_run_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(source_person_id) DO UPDATE SET
                    name = excluded.name,
                    last_seen_run_id = excluded.last_seen_run_id,
                    updated_at = excluded.updated_at
                """,
                (person.source_person_id, person.name, run_id, now_iso, now_iso),
            )
            row = conn.execute(
                "SELECT person_id FROM people WHERE source_person_id = ?",
                (person.source_person_id,),
            ).fetchone()
            if row is None:
                raise SchemaInvariantViolation(
                    f"Person row missing after upsert: {person.source_person_id}"
                )
            person_ids[person.source_person_id] = int(row["person_id"])

        for credit in credits:
            person_id = person_ids.get(credit.source_person_id)
            if person_id is None:
                raise SchemaInvariantViolation(
                    f"Credit references unknown person: {credit.source_person_id}"
                )
            conn.execute(
                """
                INSERT INTO film_credits (
                    film_id, person_id, role_type, role_name, billing_order, last_seen_run_id
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(film_id, person_id, role_type, role_name) DO UPDATE SET
                    billing_order = excluded.billing_order,
                    last_seen_run_id = excluded.last_seen_run_id
                """,
                (
                    film_id,
                    person_id,
                    credit.role_type,
                    credit.role_name,
                    credit.billing_order,
                    run_id,
                ),
            )

    def _upsert_venues_and_screenings(
        self,
        conn: sqlite3.Connection,
        *,
        run_id: str,
        film_id: int,
        venues: Sequence[NormalizedVenue],
        screenings: Sequence[NormalizedScreening],
    ) -> None:
        now_iso = utc_now_iso()
        venue_ids: dict[str, int] = {}
        for venue in venues:
            conn.execute(
                """
                INSERT INTO venues (
                    source_venue_id, name, address, lat, lng, last_seen_run_id,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_venue_id) DO UPDATE SET
                    name = excluded.name,
                    address = COALESCE(excluded.address, venues.address),
                    lat = COALESCE(excluded.lat, venues.lat),
                    lng = COALESCE(excluded.lng, venues.lng),
                    last_seen_run_id = excluded.last_seen_run_id,
                    updated_at = excluded.updated_at
                """,
                (
                    venue.source_venue_id,
                    venue.name,
                    venue.address,
                    venue.lat,
                    venue.lng,
                    run_id,
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute(
                "SELECT venue_id FROM venues WHERE source_venue_id = ?",
                (venue.source_venue_id,),
            ).fetchone()
            if row is None:
                raise SchemaInvariantViolation(
                    f"Venue row missing after upsert: {venue.source_venue_id}"
                )
            venue_ids[venue.source_venue_id] = int(row["venue_id"])

        for screening in screenings:
            venue_id = (
                venue_ids.get(screening.source_venue_id)
                if screening.source_venue_id is not None
                else None
            )
            conn.execute(
                """
                INSERT INTO screenings (
                    source_screening_id, film_id, venue_id, starts_at_utc, local_tz,
                    format, ticket_url, is_active, last_seen_run_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(source_screening_id) DO UPDATE SET
                    film_id = excluded.film_id,
                    venue_id = excluded.venue_id,
                    starts_at_utc = excluded.starts_at_utc,
                    local_tz = excluded.local_tz,
                    format = excluded.format,
                    ticket_url = excluded.ticket_url,
                    is_active = 1,
                    last_seen_run_id = excluded.last_seen_run_id,
                    updated_at = excluded.updated_at
                """,
                (
                    screening.source_screening_id,
                    film_id,
                    venue_id,
                    screening.starts_at_utc,
                    screening.local_tz,
                    screening.format,
                    screening.ticket_url,
                    run_id,
                    now_iso,
                    now_iso,
                ),
            )
