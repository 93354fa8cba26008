from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from festival_ingest.logging_config import log_context
from festival_ingest.repositories.common import utc_now_iso
from festival_ingest.repositories.database import Database
from festival_ingest.repositories.ingest_run_repository import IngestRunRepository
from festival_ingest.repositories.program_repository import ProgramRepository
from festival_ingest.repositories.raw_repository import RawRepository
from festival_ingest.services.http_client import HttpClient
from festival_ingest.services.program_normalizer import (
    ProgramPage,
    extract_page,
    extract_source_id,
    normalize_program_item,
)
from festival_ingest.telemetry import TelemetryClient

LOGGER = logging.getLogger("festival_ingest.ingest")

PROGRAM_ITEM_ENTITY_TYPE = "program_item"


@dataclass(frozen=True)
class IngestResult:
    run_id: str
    pages_fetched: int
    items_seen: int
    finished_at: str


def should_stop_pagination(
    *,
    current_page: int,
    items_count: int,
    max_pages: int,
    has_next: bool | None = None,
    total_pages: int | None = None,
) -> bool:
    """Stop policy evaluated after each persisted page.

    Priority: max-page cap, declared total, declared has-next, empty page.
    """
    if current_page >= max_pages:
        return True
    if total_pages is not None and current_page >= total_pages:
        return True
    if has_next is not None:
        return not has_next
    return items_count == 0


class ProgramIngestService:
    def __init__(
        self,
        *,
        db: Database,
        run_repository: IngestRunRepository,
        raw_repository: RawRepository,
        program_repository: ProgramRepository,
        http_client: HttpClient,
        endpoint_template: str,
        locale: str,
        origin: str,
        source_label: str,
        max_pages: int,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._db = db
        self._run_repository = run_repository
        self._raw_repository = raw_repository
        self._program_repository = program_repository
        self._http_client = http_client
        self._endpoint = endpoint_template.format(locale=locale)
        self._locale = locale
        self._origin = origin.rstrip("/")
        self._source_label = source_label
        self._max_pages = max(1, max_pages)
        self._telemetry = telemetry or TelemetryClient.disabled()

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def run(self) -> IngestResult:
        run_id = self._run_repository.start_run(
            source=self._source_label,
            locale=self._locale,
            params={
                "endpoint": self._endpoint,
                "max_pages": self._max_pages,
                "retries": self._http_client.retries,
                "timeout_seconds": self._http_client.timeout_seconds,
            },
        )
        with log_context(run_id=run_id):
            return self._run(run_id)

    def _run(self, run_id: str) -> IngestResult:
        LOGGER.info("ingest run started endpoint=%s", self._endpoint)
        self._telemetry.emit(
            "ingest.run.started",
            locale=self._locale,
            max_pages=self._max_pages,
        )

        pages_fetched = 0
        items_seen = 0
        try:
            page_number = 1
            while True:
                page = self._fetch_and_persist_page(run_id=run_id, page_number=page_number)
                pages_fetched += 1
                items_seen += len(page.items)

                if should_stop_pagination(
                    current_page=page_number,
                    items_count=len(page.items),
                    max_pages=self._max_pages,
                    has_next=page.has_next,
                    total_pages=page.total_pages,
                ):
                    break
                page_number += 1

            finished_at = utc_now_iso()
            with self._db.transaction():
                deactivated = self._program_repository.deactivate_missing(run_id)
                self._run_repository.mark_success(
                    run_id,
                    stats={"pages_fetched": pages_fetched, "items_seen": items_seen},
                    ended_at=finished_at,
                )
        except Exception as exc:
            error_text = str(exc) or type(exc).__name__
            try:
                self._run_repository.mark_failed(run_id, error_text=error_text)
            except sqlite3.Error:
                # The original failure still propagates below.
                LOGGER.exception("could not record run failure")
            LOGGER.exception("ingest run failed pages_fetched=%s", pages_fetched)
            self._telemetry.emit(
                "ingest.run.failed",
                pages_fetched=pages_fetched,
                error_type=type(exc).__name__,
                error=error_text,
            )
            raise

        LOGGER.info(
            "ingest run finished pages=%s items=%s deactivated_films=%s "
            "deactivated_screenings=%s",
            pages_fetched,
            items_seen,
            deactivated.films,
            deactivated.screenings,
        )
        self._telemetry.emit(
            "ingest.run.finished",
            pages_fetched=pages_fetched,
            items_seen=items_seen,
            deactivated_films=deactivated.films,
            deactivated_screenings=deactivated.screenings,
        )
        return IngestResult(
            run_id=run_id,
            pages_fetched=pages_fetched,
            items_seen=items_seen,
            finished_at=finished_at,
        )

    def _fetch_and_persist_page(self, *, run_id: str, page_number: int) -> ProgramPage:
        request_body = {"Page": page_number}
        response = self._http_client.post_json(
            self._endpoint,
            request_body,
            headers={
                "Accept": "application/json, text/plain, */*",
                "Origin": self._origin,
                "Referer": f"{self._origin}/",
            },
        )
        payload = response.json()
        page = extract_page(payload)

        # One page is all-or-nothing.
        with self._db.transaction():
            self._raw_repository.record_raw_page(
                run_id=run_id,
                endpoint=self._endpoint,
                page_number=page_number,
                request_body=request_body,
                payload=payload,
                status_code=response.status_code,
            )
            for item in page.items:
                self._raw_repository.record_raw_entity(
                    run_id=run_id,
                    entity_type=PROGRAM_ITEM_ENTITY_TYPE,
                    source_id=extract_source_id(item),
                    locale=self._locale,
                    payload=item,
                )
                self._program_repository.upsert_item(
                    run_id=run_id,
                    item=normalize_program_item(item),
                )

        LOGGER.info(
            "page persisted page=%s items=%s has_next=%s total_pages=%s",
            page_number,
            len(page.items),
            page.has_next,
            page.total_pages,
        )
        self._telemetry.emit(
            "ingest.page.persisted",
            page=page_number,
            items=len(page.items),
        )
        return page
