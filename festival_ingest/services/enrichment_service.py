from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from festival_ingest.logging_config import log_context
from festival_ingest.repositories.common import utc_now_iso
from festival_ingest.repositories.external_id_repository import (
    IMDB_SOURCE_CODE,
    ExternalIdRepository,
    FilmForEnrichment,
)
from festival_ingest.services.imdb_service import ImdbMatcher, ImdbRating, ScoredCandidate
from festival_ingest.telemetry import TelemetryClient

LOGGER = logging.getLogger("festival_ingest.enrich")

EnrichmentStatus = Literal["matched", "unmatched", "collision"]


@dataclass(frozen=True)
class EnrichmentOutcome:
    film_id: int
    status: EnrichmentStatus
    external_id: str | None = None
    score: float | None = None
    rating: ImdbRating | None = None
    existing_film_id: int | None = None


@dataclass
class EnrichmentStats:
    processed: int = 0
    matched: int = 0
    rated: int = 0
    unmatched: int = 0
    collisions: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "rated": self.rated,
            "unmatched": self.unmatched,
            "collisions": self.collisions,
            "errors": self.errors,
        }


class ImdbEnrichmentService:
    """Links active films to IMDb titles and snapshots their ratings.

    Films are handled one at a time with a politeness delay between them. A
    failure inside one film is counted and logged; the batch keeps going.
    """

    def __init__(
        self,
        *,
        external_id_repository: ExternalIdRepository,
        matcher: ImdbMatcher,
        delay_seconds: float,
        telemetry: TelemetryClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = external_id_repository
        self._matcher = matcher
        self._delay_seconds = max(0.0, delay_seconds)
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._sleep = sleep

    def run(self, *, limit: int | None = None, force: bool = False) -> EnrichmentStats:
        source_id = self._repository.get_source_id(IMDB_SOURCE_CODE)
        films = self._repository.list_films_for_enrichment(
            source_id=source_id,
            force=force,
            limit=limit,
        )
        LOGGER.info("imdb enrichment started films=%s force=%s", len(films), force)

        stats = EnrichmentStats()
        for film in films:
            stats.processed += 1
            with log_context(film_id=film.film_id):
                self._enrich_and_count(film, source_id=source_id, stats=stats)

            if self._delay_seconds > 0:
                self._sleep(self._delay_seconds)

        LOGGER.info(
            "imdb enrichment finished processed=%s matched=%s rated=%s unmatched=%s "
            "collisions=%s errors=%s",
            stats.processed,
            stats.matched,
            stats.rated,
            stats.unmatched,
            stats.collisions,
            stats.errors,
        )
        self._telemetry.emit("enrich.batch.finished", **stats.as_dict())
        return stats

    def _enrich_and_count(
        self,
        film: FilmForEnrichment,
        *,
        source_id: int,
        stats: EnrichmentStats,
    ) -> None:
        try:
            outcome = self.enrich_film(film, source_id=source_id)
        except Exception as exc:
            stats.errors += 1
            LOGGER.warning(
                "imdb enrichment failed title=%s error=%s",
                film.title,
                exc,
                exc_info=True,
            )
            self._telemetry.emit(
                "enrich.film.error",
                title=film.title,
                error_type=type(exc).__name__,
            )
            return

        if outcome.status == "matched":
            stats.matched += 1
            if outcome.rating is not None:
                stats.rated += 1
        elif outcome.status == "collision":
            stats.collisions += 1
        else:
            stats.unmatched += 1

    def enrich_film(self, film: FilmForEnrichment, *, source_id: int) -> EnrichmentOutcome:
        match = self._matcher.match_film(
            title=film.title,
            original_title=film.original_title,
            year=film.year,
        )
        best = match.best
        if best is None or not match.accepted:
            LOGGER.info(
                "imdb unmatched title=%s best_score=%s",
                film.title,
                best.score if best is not None else None,
            )
            self._telemetry.emit(
                "enrich.film.unmatched",
                best_score=best.score if best is not None else None,
            )
            return EnrichmentOutcome(
                film_id=film.film_id,
                status="unmatched",
                score=best.score if best is not None else None,
            )

        imdb_id = best.candidate.id
        owner_film_id = self._repository.find_film_for_external_id(
            source_id=source_id,
            external_id=imdb_id,
        )
        if owner_film_id is not None and owner_film_id != film.film_id:
            LOGGER.warning(
                "imdb collision imdb_id=%s existing_film_id=%s",
                imdb_id,
                owner_film_id,
            )
            self._telemetry.emit(
                "enrich.film.collision",
                imdb_id=imdb_id,
                existing_film_id=owner_film_id,
            )
            return EnrichmentOutcome(
                film_id=film.film_id,
                status="collision",
                external_id=imdb_id,
                score=best.score,
                existing_film_id=owner_film_id,
            )

        # A failed rating fetch leaves the film unlinked, so the next batch retries it.
        rating = self._matcher.client.fetch_rating(imdb_id)
        self._write_link(film=film, source_id=source_id, best=best, queries=match.queries)
        if rating is not None:
            self._repository.insert_rating(
                film_id=film.film_id,
                source_id=source_id,
                rating_value=rating.rating_value,
                rating_scale=rating.rating_scale,
                vote_count=rating.vote_count,
                raw={
                    "imdb_id": imdb_id,
                    "fetched_at": utc_now_iso(),
                    "rating": rating.to_dict(),
                },
            )

        LOGGER.info(
            "imdb matched imdb_id=%s score=%s rating=%s",
            imdb_id,
            best.score,
            rating.rating_value if rating is not None else None,
        )
        self._telemetry.emit(
            "enrich.film.matched",
            imdb_id=imdb_id,
            score=best.score,
            rated=rating is not None,
        )
        return EnrichmentOutcome(
            film_id=film.film_id,
            status="matched",
            external_id=imdb_id,
            score=best.score,
            rating=rating,
        )

    def _write_link(
        self,
        *,
        film: FilmForEnrichment,
        source_id: int,
        best: ScoredCandidate,
        queries: list[str],
    ) -> None:
        matched_at = utc_now_iso()
        self._repository.upsert_link(
            film_id=film.film_id,
            source_id=source_id,
            external_id=best.candidate.id,
            url=self._matcher.client.title_url(best.candidate.id),
            raw={
                "matched_at": matched_at,
                "score": best.score,
                "candidate": best.candidate.to_dict(),
                "queries": queries,
            },
            fetched_at=matched_at,
        )
