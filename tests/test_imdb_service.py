from __future__ import annotations

import json
from urllib.request import Request

import pytest

from festival_ingest.services.http_client import HttpClient
from festival_ingest.services.imdb_service import (
    ImdbCandidate,
    ImdbClient,
    ImdbMatcher,
    build_search_queries,
    normalize_title,
    parse_rating_from_html,
    parse_suggestion_payload,
    score_candidate,
    select_best_candidate,
    suggestion_url,
)
from tests.support import FakeUrlopenResponse, json_response, no_sleep

GOOD_LUCK = "Good Luck, Have Fun, Don't Die"


def _candidate(
    title: str,
    *,
    candidate_id: str = "tt0000001",
    year: int | None = None,
    kind: str | None = None,
    rank: float | None = None,
) -> ImdbCandidate:
    return ImdbCandidate(id=candidate_id, title=title, year=year, type=kind, rank=rank)


def test_normalize_title_strips_accents_and_punctuation() -> None:
    assert normalize_title("  Amélie: Le Fabuleux   Destin!  ") == "amelie le fabuleux destin"
    assert normalize_title(GOOD_LUCK) == "good luck have fun don t die"
    assert normalize_title("???") == ""


def test_exact_title_and_year_scores_known_value() -> None:
    score = score_candidate(
        film_title=GOOD_LUCK,
        original_title=None,
        film_year=2025,
        candidate=_candidate(GOOD_LUCK, year=2025, kind="feature", rank=160),
    )

    assert score == 123.4


def test_year_gap_is_penalised() -> None:
    exact = score_candidate(
        film_title=GOOD_LUCK,
        original_title=None,
        film_year=2025,
        candidate=_candidate(GOOD_LUCK, year=2025, kind="feature", rank=160),
    )
    far = score_candidate(
        film_title=GOOD_LUCK,
        original_title=None,
        film_year=2025,
        candidate=_candidate(GOOD_LUCK, year=2009, kind="feature", rank=160),
    )

    assert far == 77.4
    assert exact > far


def test_short_titles_are_penalised_unless_exact() -> None:
    partial = score_candidate(
        film_title="IT",
        original_title=None,
        film_year=None,
        candidate=_candidate("It Follows"),
    )
    exact = score_candidate(
        film_title="IT",
        original_title=None,
        film_year=None,
        candidate=_candidate("It"),
    )

    assert partial == 24.5
    assert exact == 90.0


def test_original_title_can_carry_the_match() -> None:
    score = score_candidate(
        film_title="The Fabulous Destiny",
        original_title="Le Fabuleux Destin",
        film_year=2001,
        candidate=_candidate("Le fabuleux destin", year=2002, kind="movie"),
    )

    assert score == 65 + 25 + 14 + 8


def test_year_and_rank_bonuses() -> None:
    base = dict(film_title="Silent Harbor", original_title=None, film_year=2020)

    assert score_candidate(**base, candidate=_candidate("Silent Harbor", year=2022)) == 98.0
    assert score_candidate(**base, candidate=_candidate("Silent Harbor", year=2024)) == 92.0
    assert score_candidate(**base, candidate=_candidate("Silent Harbor", rank=0)) == 100.0
    assert score_candidate(**base, candidate=_candidate("Silent Harbor", rank=10**9)) == 84.0


def test_select_best_candidate_keeps_first_on_ties() -> None:
    best = select_best_candidate(
        film_title="Harbor",
        original_title=None,
        film_year=None,
        candidates=[
            _candidate("Harbor", candidate_id="tt1"),
            _candidate("Harbor", candidate_id="tt2"),
            _candidate("Unrelated", candidate_id="tt3"),
        ],
    )

    assert best is not None
    assert best.candidate.id == "tt1"
    assert select_best_candidate(
        film_title="Harbor", original_title=None, film_year=None, candidates=[]
    ) is None


def test_build_search_queries() -> None:
    assert build_search_queries(title="Opening Night", original_title="Premiere", year=2026) == [
        "Opening Night",
        "Opening Night 2026",
        "Premiere",
        "Premiere 2026",
    ]
    assert build_search_queries(title="Opening Night", original_title="opening night!", year=None) == [
        "Opening Night"
    ]
    assert build_search_queries(title="  ", original_title=None, year=None) == []


def test_suggestion_url_uses_first_normalized_character() -> None:
    base = "https://v3.sg.media-imdb.com/suggestion/"

    assert suggestion_url(base, "Good Luck") == (
        "https://v3.sg.media-imdb.com/suggestion/g/Good%20Luck.json"
    )
    assert suggestion_url(base, "Éclair 2026").endswith("/e/%C3%89clair%202026.json")
    assert suggestion_url(base, "1917").endswith("/1/1917.json")
    assert suggestion_url(base, "¿?").endswith("/a/%C2%BF%3F.json")


def test_parse_suggestion_payload_filters_entries() -> None:
    candidates = parse_suggestion_payload(
        {
            "d": [
                {"id": "tt123", "l": "Harbor", "y": 2020, "q": "Feature", "rank": 55},
                {"id": "nm999", "l": "Some Actor"},
                {"id": "tt456"},
                {"id": "tt789", "l": "Harbor Lights", "y": "2021"},
                "junk",
            ]
        }
    )

    assert [candidate.id for candidate in candidates] == ["tt123", "tt789"]
    assert candidates[0].type == "feature"
    assert candidates[0].rank == 55
    assert candidates[1].year is None
    assert parse_suggestion_payload({"d": "nope"}) == []
    assert parse_suggestion_payload(None) == []


def test_parse_rating_from_json_ld() -> None:
    html_text = """
    <html><head>
    <script type="application/ld+json">{"@type": "Movie", "name": "Harbor"}</script>
    <script type="application/ld+json">
      [{"@type": "Movie", "aggregateRating": {"ratingValue": "7.4", "ratingCount": "12,345"}}]
    </script>
    </head><body></body></html>
    """

    rating = parse_rating_from_html(html_text)

    assert rating is not None
    assert rating.rating_value == 7.4
    assert rating.rating_scale == 10.0
    assert rating.vote_count == 12345


def test_parse_rating_falls_back_to_inline_json() -> None:
    html_text = (
        '<script type="application/ld+json">{not json}</script>'
        '<div>{"aggregateRating":{"@type":"AggregateRating","ratingCount":1,234,'
        '"bestRating":10,"worstRating":1,"ratingValue":6.8}}</div>'
    )

    rating = parse_rating_from_html(html_text)

    assert rating is not None
    assert rating.rating_value == 6.8
    assert rating.rating_scale == 10.0
    assert rating.vote_count == 1234
    assert parse_rating_from_html("<html></html>") is None


class _SuggestionServer:
    def __init__(self, responses: dict[str, object]) -> None:
        self._responses = responses
        self.urls: list[str] = []

    def __call__(self, request: Request, timeout: float) -> FakeUrlopenResponse:
        url = request.full_url
        self.urls.append(url)
        for fragment, payload in self._responses.items():
            if fragment in url:
                if isinstance(payload, str):
                    return FakeUrlopenResponse(status=200, body=payload.encode("utf-8"))
                return json_response(payload)
        return json_response({"d": []})


def _imdb_client() -> ImdbClient:
    return ImdbClient(
        http_client=HttpClient(
            timeout_seconds=5.0,
            retries=0,
            user_agent="festival-ingest-tests",
            sleep=no_sleep,
        ),
        suggestion_base_url="https://suggest.example.org/suggestion",
        title_base_url="https://titles.example.org/title/",
    )


def test_matcher_pools_candidates_across_queries(monkeypatch: pytest.MonkeyPatch) -> None:
    server = _SuggestionServer(
        {
            "/o/Opening%20Night.json": {
                "d": [
                    {"id": "tt100", "l": "Opening Night", "y": 1977, "q": "feature"},
                    {"id": "tt200", "l": "Opening", "y": 2026},
                ]
            },
            "/o/Opening%20Night%202026.json": {
                "d": [{"id": "tt300", "l": "Opening Night", "y": 2026, "q": "feature"}]
            },
        }
    )
    monkeypatch.setattr("festival_ingest.services.http_client.urlopen", server)

    match = ImdbMatcher(client=_imdb_client(), min_score=66.0).match_film(
        title="Opening Night",
        original_title=None,
        year=2026,
    )

    assert match.queries == ["Opening Night", "Opening Night 2026"]
    assert len(server.urls) == 2
    assert match.best is not None
    assert match.best.candidate.id == "tt300"
    assert match.best.score == 120.0
    assert match.accepted is True


def test_matcher_rejects_scores_below_threshold(monkeypatch: pytest.MonkeyPatch) -> None:
    server = _SuggestionServer(
        {"/h/Harbor.json": {"d": [{"id": "tt1", "l": "Completely Different", "y": 1950}]}}
    )
    monkeypatch.setattr("festival_ingest.services.http_client.urlopen", server)

    match = ImdbMatcher(client=_imdb_client(), min_score=66.0).match_film(
        title="Harbor",
        original_title=None,
        year=None,
    )

    assert match.best is not None
    assert match.accepted is False


def test_client_fetches_rating_from_title_page(monkeypatch: pytest.MonkeyPatch) -> None:
    page = (
        '<script type="application/ld+json">'
        + json.dumps({"aggregateRating": {"ratingValue": 8.1, "bestRating": 10, "ratingCount": 99}})
        + "</script>"
    )
    server = _SuggestionServer({"/title/tt42/": page})
    monkeypatch.setattr("festival_ingest.services.http_client.urlopen", server)
    client = _imdb_client()

    rating = client.fetch_rating("tt42")

    assert client.title_url("tt42") == "https://titles.example.org/title/tt42/"
    assert rating is not None
    assert rating.rating_value == 8.1
    assert rating.vote_count == 99
