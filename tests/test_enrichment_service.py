from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from festival_ingest.repositories.database import Database
from festival_ingest.repositories.external_id_repository import (
    IMDB_SOURCE_CODE,
    ExternalIdRepository,
)
from festival_ingest.repositories.ingest_run_repository import IngestRunRepository
from festival_ingest.repositories.program_repository import ProgramRepository
from festival_ingest.services.enrichment_service import ImdbEnrichmentService
from festival_ingest.services.imdb_service import ImdbCandidate, ImdbMatcher, ImdbRating
from festival_ingest.services.program_normalizer import NormalizedFilm
from festival_ingest.telemetry import TelemetryClient
from tests.support import count_rows


class _FakeImdbClient:
    def __init__(
        self,
        *,
        candidates: Mapping[str, list[ImdbCandidate]],
        ratings: Mapping[str, ImdbRating | None] | None = None,
        failing_queries: frozenset[str] = frozenset(),
        failing_ratings: set[str] | None = None,
    ) -> None:
        self._candidates = dict(candidates)
        self._ratings = dict(ratings or {})
        self._failing_queries = failing_queries
        self.failing_ratings = failing_ratings if failing_ratings is not None else set()
        self.searched: list[str] = []
        self.rating_requests: list[str] = []

    def title_url(self, imdb_id: str) -> str:
        return f"https://www.imdb.com/title/{imdb_id}/"

    def search(self, query: str) -> list[ImdbCandidate]:
        self.searched.append(query)
        if query in self._failing_queries:
            raise TimeoutError(f"suggestion lookup timed out for {query}")
        return list(self._candidates.get(query, []))

    def fetch_rating(self, imdb_id: str) -> ImdbRating | None:
        self.rating_requests.append(imdb_id)
        if imdb_id in self.failing_ratings:
            raise TimeoutError(f"title page timed out for {imdb_id}")
        return self._ratings.get(imdb_id)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _seed_films(database: Database, *films: tuple[str, str, int | None]) -> list[int]:
    run_id = IngestRunRepository(database).start_run(source="test", locale="de", params={})
    repository = ProgramRepository(database)
    return [
        repository.upsert_film(
            run_id=run_id,
            film=NormalizedFilm(
                source_film_id=source_id,
                title=title,
                original_title=None,
                synopsis=None,
                runtime_minutes=None,
                year=year,
                country=None,
                section=None,
            ),
        )
        for source_id, title, year in films
    ]


def _service(
    database: Database,
    client: _FakeImdbClient,
    *,
    sleeps: list[float] | None = None,
    telemetry: TelemetryClient | None = None,
) -> ImdbEnrichmentService:
    return ImdbEnrichmentService(
        external_id_repository=ExternalIdRepository(database),
        matcher=ImdbMatcher(client=client, min_score=66.0),  # type: ignore[arg-type]
        delay_seconds=0.12,
        telemetry=telemetry,
        sleep=(sleeps if sleeps is not None else []).append,
    )


def _harbor(candidate_id: str = "tt0100", year: int = 2026) -> ImdbCandidate:
    return ImdbCandidate(id=candidate_id, title="Silent Harbor", year=year, type="feature", rank=None)


def test_match_writes_link_and_rating(database: Database) -> None:
    (film_id,) = _seed_films(database, ("f-1", "Silent Harbor", 2026))
    client = _FakeImdbClient(
        candidates={"Silent Harbor": [_harbor()]},
        ratings={"tt0100": ImdbRating(rating_value=7.2, rating_scale=10.0, vote_count=1500)},
    )
    sleeps: list[float] = []
    sink = _CaptureSink()

    stats = _service(
        database,
        client,
        sleeps=sleeps,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    ).run()

    assert stats.as_dict() == {
        "processed": 1,
        "matched": 1,
        "rated": 1,
        "unmatched": 0,
        "collisions": 0,
        "errors": 0,
    }
    assert client.searched == ["Silent Harbor", "Silent Harbor 2026"]
    assert sleeps == [0.12]

    repository = ExternalIdRepository(database)
    source_id = repository.get_source_id(IMDB_SOURCE_CODE)
    link = repository.get_link(film_id=film_id, source_id=source_id)
    assert link is not None
    assert link.external_id == "tt0100"
    assert link.url == "https://www.imdb.com/title/tt0100/"
    assert link.raw["score"] == 120.0
    assert link.raw["candidate"]["title"] == "Silent Harbor"
    assert link.raw["queries"] == ["Silent Harbor", "Silent Harbor 2026"]
    ratings = repository.list_ratings(film_id=film_id, source_id=source_id)
    assert len(ratings) == 1
    assert ratings[0].rating_value == 7.2
    assert ratings[0].vote_count == 1500

    assert [name for name, _ in sink.events] == ["enrich.film.matched", "enrich.batch.finished"]


def test_match_without_rating_counts_as_unrated(database: Database) -> None:
    _seed_films(database, ("f-1", "Silent Harbor", 2026))
    client = _FakeImdbClient(candidates={"Silent Harbor": [_harbor()]})

    stats = _service(database, client).run()

    assert stats.matched == 1
    assert stats.rated == 0
    assert count_rows(database, "film_external_ratings") == 0


def test_low_scores_are_left_unmatched(database: Database) -> None:
    _seed_films(database, ("f-1", "Silent Harbor", 2026))
    client = _FakeImdbClient(
        candidates={
            "Silent Harbor": [
                ImdbCandidate(id="tt9", title="Loud Mountain", year=1980, type=None, rank=None)
            ]
        }
    )

    stats = _service(database, client).run()

    assert stats.unmatched == 1
    assert stats.matched == 0
    assert client.rating_requests == []
    assert count_rows(database, "film_external_ids") == 0


def test_second_film_claiming_same_id_is_a_collision(database: Database) -> None:
    first_id, second_id = _seed_films(
        database,
        ("f-1", "Silent Harbor", 2026),
        ("f-2", "Silent Harbor", 2026),
    )
    client = _FakeImdbClient(candidates={"Silent Harbor": [_harbor()]})
    sink = _CaptureSink()

    stats = _service(database, client, telemetry=TelemetryClient(enabled=True, sink=sink)).run()

    assert stats.matched == 1
    assert stats.collisions == 1
    repository = ExternalIdRepository(database)
    source_id = repository.get_source_id(IMDB_SOURCE_CODE)
    assert repository.find_film_for_external_id(source_id=source_id, external_id="tt0100") == first_id
    assert repository.get_link(film_id=second_id, source_id=source_id) is None
    collision = next(attrs for name, attrs in sink.events if name == "enrich.film.collision")
    assert collision["existing_film_id"] == first_id
    assert collision["film_id"] == second_id


def test_per_film_errors_do_not_abort_the_batch(database: Database) -> None:
    _seed_films(
        database,
        ("f-1", "Broken Reel", None),
        ("f-2", "Silent Harbor", 2026),
    )
    client = _FakeImdbClient(
        candidates={"Silent Harbor": [_harbor()]},
        failing_queries=frozenset({"Broken Reel"}),
    )
    sleeps: list[float] = []

    stats = _service(database, client, sleeps=sleeps).run()

    assert stats.processed == 2
    assert stats.errors == 1
    assert stats.matched == 1
    assert sleeps == [0.12, 0.12]


def test_linked_films_are_skipped_unless_forced(database: Database) -> None:
    _seed_films(database, ("f-1", "Silent Harbor", 2026), ("f-2", "Unknown Film", None))
    client = _FakeImdbClient(candidates={"Silent Harbor": [_harbor()]})
    service = _service(database, client)

    first = service.run()
    second = service.run()
    forced = service.run(force=True, limit=1)

    assert first.processed == 2
    assert second.processed == 1
    assert second.unmatched == 1
    assert forced.processed == 1
    assert forced.matched == 1
    assert count_rows(database, "film_external_ids") == 1


def test_inactive_films_are_not_enriched(database: Database) -> None:
    (film_id,) = _seed_films(database, ("f-1", "Silent Harbor", 2026))
    with database.connection() as conn:
        conn.execute("UPDATE films SET is_active = 0 WHERE film_id = ?", (film_id,))
    client = _FakeImdbClient(candidates={"Silent Harbor": [_harbor()]})

    stats = _service(database, client).run()

    assert stats.processed == 0
    assert client.searched == []


def test_rating_failure_leaves_film_unlinked_for_next_batch(database: Database) -> None:
    (film_id,) = _seed_films(database, ("f-1", "Silent Harbor", 2026))
    client = _FakeImdbClient(
        candidates={"Silent Harbor": [_harbor()]},
        ratings={"tt0100": ImdbRating(rating_value=6.9, rating_scale=10.0, vote_count=80)},
        failing_ratings={"tt0100"},
    )
    service = _service(database, client)

    failed = service.run()

    assert failed.errors == 1
    assert failed.matched == 0
    assert count_rows(database, "film_external_ids") == 0
    assert count_rows(database, "film_external_ratings") == 0

    client.failing_ratings.clear()
    retried = service.run()

    assert retried.processed == 1
    assert retried.matched == 1
    assert retried.rated == 1
    repository = ExternalIdRepository(database)
    source_id = repository.get_source_id(IMDB_SOURCE_CODE)
    link = repository.get_link(film_id=film_id, source_id=source_id)
    assert link is not None
    assert link.external_id == "tt0100"
    assert client.rating_requests == ["tt0100", "tt0100"]
