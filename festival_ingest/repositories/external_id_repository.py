from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from festival_ingest.repositories.common import SchemaInvariantViolation, utc_now_iso
from festival_ingest.repositories.database import Database

IMDB_SOURCE_CODE = "imdb"


@dataclass(frozen=True)
class FilmForEnrichment:
    film_id: int
    title: str
    original_title: str | None
    year: int | None


@dataclass(frozen=True)
class ExternalLink:
    film_id: int
    source_id: int
    external_id: str
    url: str | None
    raw: dict[str, Any]
    fetched_at: str


@dataclass(frozen=True)
class ExternalRating:
    rating_id: int
    film_id: int
    source_id: int
    fetched_at: str
    rating_value: float | None
    rating_scale: float
    vote_count: int | None


class ExternalIdRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_source_id(self, code: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT source_id FROM external_sources WHERE code = ?",
                (code,),
            ).fetchone()
        if row is None:
            raise SchemaInvariantViolation(f"Missing external_sources row for code={code}")
        return int(row["source_id"])

    def list_films_for_enrichment(
        self,
        *,
        source_id: int,
        force: bool = False,
        limit: int | None = None,
    ) -> list[FilmForEnrichment]:
        query = """
            SELECT f.film_id, f.title, f.original_title, f.year
            FROM films f
            WHERE f.is_active = 1
        """
        params: list[Any] = []
        if not force:
            query += """
              AND NOT EXISTS (
                SELECT 1 FROM film_external_ids x
                WHERE x.film_id = f.film_id AND x.source_id = ?
              )
            """
            params.append(source_id)
        query += " ORDER BY f.film_id ASC"
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            FilmForEnrichment(
                film_id=int(row["film_id"]),
                title=str(row["title"]),
                original_title=row["original_title"],
                year=int(row["year"]) if row["year"] is not None else None,
            )
            for row in rows
        ]

    def find_film_for_external_id(self, *, source_id: int, external_id: str) -> int | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT film_id
                FROM film_external_ids
                WHERE source_id = ? AND external_id = ?
                """,
                (source_id, external_id),
            ).fetchone()
        return int(row["film_id"]) if row is not None else None

    def get_link(self, *, film_id: int, source_id: int) -> ExternalLink | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT film_id, source_id, external_id, url, raw_json, fetched_at
                FROM film_external_ids
                WHERE film_id = ? AND source_id = ?
                """,
                (film_id, source_id),
            ).fetchone()
        if row is None:
            return None
        raw = json.loads(str(row["raw_json"]))
        return ExternalLink(
            film_id=int(row["film_id"]),
            source_id=int(row["source_id"]),
            external_id=str(row["external_id"]),
            url=row["url"],
            raw=raw if isinstance(raw, dict) else {},
            fetched_at=str(row["fetched_at"]),
        )

    def upsert_link(
        self,
        *,
        film_id: int,
        source_id: int,
        external_id: str,
        url: str | None,
        raw: dict[str, Any],
        fetched_at: str | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO film_external_ids (
                    film_id, source_id, external_id, url, raw_json, fetched_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(film_id, source_id) DO UPDATE SET
                    external_id = excluded.external_id,
                    url = excluded.url,
                    raw_json = excluded.raw_json,
                    fetched_at = excluded.fetched_at
                """,
                (
                    film_id,
                    source_id,
                    external_id,
                    url,
                    json.dumps(raw, sort_keys=True),
                    fetched_at or utc_now_iso(),
                ),
            )

    def insert_rating(
        self,
        *,
        film_id: int,
        source_id: int,
        rating_value: float | None,
        rating_scale: float,
        vote_count: int | None,
        raw: dict[str, Any],
        fetched_at: str | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO film_external_ratings (
                    film_id, source_id, fetched_at, rating_value, rating_scale,
                    vote_count, raw_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    film_id,
                    source_id,
                    fetched_at or utc_now_iso(),
                    rating_value,
                    rating_scale,
                    vote_count,
                    json.dumps(raw, sort_keys=True),
                ),
            )

    def list_ratings(self, *, film_id: int, source_id: int) -> list[ExternalRating]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT rating_id, film_id, source_id, fetched_at, rating_value,
                       rating_scale, vote_count
                FROM film_external_ratings
                WHERE film_id = ? AND source_id = ?
                ORDER BY rating_id ASC
                """,
                (film_id, source_id),
            ).fetchall()
        return [
            ExternalRating(
                rating_id=int(row["rating_id"]),
                film_id=int(row["film_id"]),
                source_id=int(row["source_id"]),
                fetched_at=str(row["fetched_at"]),
                rating_value=row["rating_value"],
                rating_scale=float(row["rating_scale"]),
                vote_count=row["vote_count"],
            )
            for row in rows
        ]
