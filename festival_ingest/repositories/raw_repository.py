from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from festival_ingest.repositories.common import canonical_json, content_hash, utc_now_iso
from festival_ingest.repositories.database import Database


@dataclass(frozen=True)
class RawEntityWrite:
    source_id: str
    payload_hash: str
    is_new: bool
    version_written: bool


class RawRepository:
    """Append-only provenance for fetched pages and the items inside them."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def record_raw_page(
        self,
        *,
        run_id: str,
        endpoint: str,
        page_number: int,
        request_body: dict[str, Any],
        payload: Any,
        status_code: int,
    ) -> str:
        payload_hash = content_hash(payload)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO raw_pages (
                    run_id, page_number, endpoint, request_json, payload_json,
                    payload_hash, status_code, fetched_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    page_number,
                    endpoint,
                    canonical_json(request_body),
                    canonical_json(payload),
                    payload_hash,
                    status_code,
                    utc_now_iso(),
                ),
            )
        return payload_hash

    def record_raw_entity(
        self,
        *,
        run_id: str,
        entity_type: str,
        source_id: str,
        locale: str,
        payload: Any,
    ) -> RawEntityWrite:
        payload_json = canonical_json(payload)
        payload_hash = content_hash(payload)
        now_iso = utc_now_iso()

        with self._db.connection() as conn:
            existing = conn.execute(
                """
                SELECT payload_hash
                FROM raw_entities_current
                WHERE entity_type = ? AND source_id = ? AND locale = ?
                """,
                (entity_type, source_id, locale),
            ).fetchone()

            conn.execute(
                """
                INSERT INTO raw_entities_current (
                    entity_type, source_id, locale, payload_json, payload_hash,
                    first_seen_run_id, last_seen_run_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_type, source_id, locale) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    payload_hash = excluded.payload_hash,
                    last_seen_run_id = excluded.last_seen_run_id,
                    updated_at = excluded.updated_at
                """,
                (
                    entity_type,
                    source_id,
                    locale,
                    payload_json,
                    payload_hash,
                    run_id,
                    run_id,
                    now_iso,
                    now_iso,
                ),
            )

            version_written = existing is None or str(existing["payload_hash"]) != payload_hash
            if version_written:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO raw_entities_versions (
                        entity_type, source_id, locale, run_id, payload_json,
                        payload_hash, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entity_type, source_id, locale, run_id, payload_json, payload_hash, now_iso),
                )

        return RawEntityWrite(
            source_id=source_id,
            payload_hash=payload_hash,
            is_new=existing is None,
            version_written=version_written,
        )

    def count_versions(self, *, entity_type: str, source_id: str, locale: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count
                FROM raw_entities_versions
                WHERE entity_type = ? AND source_id = ? AND locale = ?
                """,
                (entity_type, source_id, locale),
            ).fetchone()
        return int(row["count"]) if row is not None else 0
