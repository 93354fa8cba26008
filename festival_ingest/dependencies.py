from __future__ import annotations

from festival_ingest.config import AppSettings
from festival_ingest.repositories.database import Database
from festival_ingest.repositories.external_id_repository import ExternalIdRepository
from festival_ingest.repositories.ingest_run_repository import IngestRunRepository
from festival_ingest.repositories.program_repository import ProgramRepository
from festival_ingest.repositories.raw_repository import RawRepository
from festival_ingest.services.enrichment_service import ImdbEnrichmentService
from festival_ingest.services.http_client import HttpClient
from festival_ingest.services.imdb_service import ImdbClient, ImdbMatcher
from festival_ingest.services.program_ingest_service import ProgramIngestService
from festival_ingest.telemetry import TelemetryClient, build_telemetry_client

PROGRAM_JITTER_SECONDS = 0.25
IMDB_JITTER_SECONDS = 0.2


def build_database(settings: AppSettings) -> Database:
    database = Database(settings.db_path)
    database.initialize()
    return database


def build_telemetry(settings: AppSettings) -> TelemetryClient:
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def build_program_ingest_service(
    settings: AppSettings,
    *,
    database: Database,
    telemetry: TelemetryClient,
) -> ProgramIngestService:
    return ProgramIngestService(
        db=database,
        run_repository=IngestRunRepository(database),
        raw_repository=RawRepository(database),
        program_repository=ProgramRepository(database),
        http_client=HttpClient(
            timeout_seconds=settings.program_http_timeout_seconds,
            retries=settings.program_http_retries,
            user_agent=settings.program_user_agent,
            jitter_seconds=PROGRAM_JITTER_SECONDS,
        ),
        endpoint_template=settings.program_endpoint_template,
        locale=settings.locale,
        origin=settings.program_origin,
        source_label=settings.program_source_label,
        max_pages=settings.program_max_pages,
        telemetry=telemetry,
    )


def build_enrichment_service(
    settings: AppSettings,
    *,
    database: Database,
    telemetry: TelemetryClient,
) -> ImdbEnrichmentService:
    client = ImdbClient(
        http_client=HttpClient(
            timeout_seconds=settings.imdb_http_timeout_seconds,
            retries=settings.imdb_http_retries,
            user_agent=settings.imdb_user_agent,
            jitter_seconds=IMDB_JITTER_SECONDS,
        ),
        suggestion_base_url=settings.imdb_suggestion_base_url,
        title_base_url=settings.imdb_title_base_url,
    )
    return ImdbEnrichmentService(
        external_id_repository=ExternalIdRepository(database),
        matcher=ImdbMatcher(client=client, min_score=settings.imdb_min_score),
        delay_seconds=settings.imdb_delay_seconds,
        telemetry=telemetry,
    )
