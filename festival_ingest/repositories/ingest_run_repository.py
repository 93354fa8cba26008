from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, cast
from uuid import uuid4

from festival_ingest.repositories.common import utc_now_iso
from festival_ingest.repositories.database import Database

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"

RunStatus = Literal["running", "success", "failed"]


@dataclass(frozen=True)
class IngestRun:
    run_id: str
    source: str
    locale: str
    status: RunStatus
    params: dict[str, Any]
    stats: dict[str, Any] | None
    error_text: str | None
    started_at: str
    ended_at: str | None


class IngestRunRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def start_run(self, *, source: str, locale: str, params: dict[str, Any]) -> str:
        run_id = str(uuid4())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ingest_runs (run_id, source, locale, status, params_json, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    source,
                    locale,
                    RUN_STATUS_RUNNING,
                    json.dumps(params, sort_keys=True),
                    utc_now_iso(),
                ),
            )
        return run_id

    def mark_success(self, run_id: str, *, stats: dict[str, Any], ended_at: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE ingest_runs
                SET status = ?, ended_at = ?, stats_json = ?
                WHERE run_id = ?
                """,
                (RUN_STATUS_SUCCESS, ended_at, json.dumps(stats, sort_keys=True), run_id),
            )

    def mark_failed(self, run_id: str, *, error_text: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE ingest_runs
                SET status = ?, ended_at = ?, error_text = ?
                WHERE run_id = ?
                """,
                (RUN_STATUS_FAILED, utc_now_iso(), error_text, run_id),
            )

    def get_run(self, run_id: str) -> IngestRun | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT run_id, source, locale, status, params_json, stats_json,
                       error_text, started_at, ended_at
                FROM ingest_runs
                WHERE run_id = ?
                """,
                (run_id,),
            ).fetchone()

        if row is None:
            return None
        stats_raw = row["stats_json"]
        return IngestRun(
            run_id=str(row["run_id"]),
            source=str(row["source"]),
            locale=str(row["locale"]),
            status=cast(RunStatus, str(row["status"])),
            params=_load_object(str(row["params_json"])),
            stats=_load_object(str(stats_raw)) if stats_raw is not None else None,
            error_text=row["error_text"],
            started_at=str(row["started_at"]),
            ended_at=row["ended_at"],
        )


def _load_object(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}
