from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from dataclasses import asdict, dataclass
from html.parser import HTMLParser
from typing import Any, cast
from urllib.parse import quote

from festival_ingest.services.http_client import HttpClient

LOGGER = logging.getLogger("festival_ingest.imdb")

DEFAULT_RATING_SCALE = 10.0

_NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_SUGGESTION_PATH_CHAR = re.compile(r"[a-z0-9]")
_AGGREGATE_RATING_FALLBACK = re.compile(
    r'"aggregateRating":\{"@type":"AggregateRating","ratingCount":([0-9,]+),'
    r'"bestRating":([0-9.]+),"worstRating":[0-9.]+,"ratingValue":([0-9.]+)\}'
)

_FEATURE_TYPES = frozenset({"feature", "movie"})

_BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Upgrade-Insecure-Requests": "1",
}
_SUGGESTION_HEADERS = {
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True)
class ImdbCandidate:
    id: str
    title: str
    year: int | None
    type: str | None
    rank: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: ImdbCandidate
    score: float


@dataclass(frozen=True)
class ImdbRating:
    rating_value: float | None
    rating_scale: float
    vote_count: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FilmMatch:
    """Outcome of searching every query for one film."""

    queries: list[str]
    best: ScoredCandidate | None
    min_score: float

    @property
    def accepted(self) -> bool:
        return self.best is not None and self.best.score >= self.min_score


def normalize_title(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.lower())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    cleaned = _NON_ALNUM_PATTERN.sub(" ", stripped)
    return _WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def jaccard_similarity(left: str, right: str) -> float:
    left_tokens = set(normalize_title(left).split())
    right_tokens = set(normalize_title(right).split())
    if not left_tokens or not right_tokens:
        return 0.0
    intersection = len(left_tokens & right_tokens)
    return intersection / len(left_tokens | right_tokens)


def score_candidate(
    *,
    film_title: str,
    original_title: str | None,
    film_year: int | None,
    candidate: ImdbCandidate,
) -> float:
    """Heuristic match score; rounded half-up to one decimal.

    ``Good Luck, Have Fun, Don't Die`` (2025, feature, rank 160) against itself
    scores 123.4.
    """
    score = _title_score(film_title, original_title, candidate.title)

    if film_year is not None and candidate.year is not None:
        year_diff = abs(film_year - candidate.year)
        if year_diff == 0:
            score += 22
        elif year_diff == 1:
            score += 14
        elif year_diff == 2:
            score += 8
        elif year_diff <= 5:
            score += 2
        else:
            score -= 24

    if candidate.type in _FEATURE_TYPES:
        score += 8

    if candidate.rank is not None and candidate.rank >= 0:
        score += max(-6.0, 10 - math.log10(candidate.rank + 1) * 3)

    return math.floor(score * 10 + 0.5) / 10


def _title_score(film_title: str, original_title: str | None, candidate_title: str) -> float:
    normalized_candidate = normalize_title(candidate_title)
    if not normalized_candidate:
        return 0.0
    normalized_film = normalize_title(film_title)
    normalized_original = normalize_title(original_title) if original_title else ""

    similarity = jaccard_similarity(film_title, candidate_title)
    if original_title:
        similarity = max(similarity, jaccard_similarity(original_title, candidate_title))
    score = similarity * 65

    variants = [variant for variant in (normalized_film, normalized_original) if variant]
    if normalized_candidate in variants:
        score += 25
    elif any(
        variant in normalized_candidate or normalized_candidate in variant for variant in variants
    ):
        score += 12

    if len(normalized_film) <= 3 and normalized_candidate != normalized_film:
        score -= 20

    return score


def build_search_queries(*, title: str, original_title: str | None, year: int | None) -> list[str]:
    queries: list[str] = []

    def add(value: str) -> None:
        trimmed = value.strip()
        if trimmed and trimmed not in queries:
            queries.append(trimmed)

    add(title)
    if year is not None:
        add(f"{title} {year}")
    if original_title and normalize_title(original_title) != normalize_title(title):
        add(original_title)
        if year is not None:
            add(f"{original_title} {year}")
    return queries


def suggestion_url(base_url: str, query: str) -> str:
    normalized = normalize_title(query)
    first_char = normalized[:1]
    if not _SUGGESTION_PATH_CHAR.fullmatch(first_char):
        first_char = "a"
    return f"{base_url.rstrip('/')}/{first_char}/{quote(query.strip(), safe='')}.json"


def parse_suggestion_payload(payload: Any) -> list[ImdbCandidate]:
    if not isinstance(payload, dict):
        return []
    entries = cast(dict[str, Any], payload).get("d")
    if not isinstance(entries, list):
        return []

    candidates: list[ImdbCandidate] = []
    for entry in cast(list[Any], entries):
        if not isinstance(entry, dict):
            continue
        record = cast(dict[str, Any], entry)
        candidate_id = record.get("id")
        title = record.get("l")
        if not isinstance(candidate_id, str) or not candidate_id.startswith("tt"):
            continue
        if not isinstance(title, str) or not title:
            continue
        raw_type = record.get("q")
        candidates.append(
            ImdbCandidate(
                id=candidate_id,
                title=title,
                year=_finite_int(record.get("y")),
                type=raw_type.lower() if isinstance(raw_type, str) else None,
                rank=_finite_float(record.get("rank")),
            )
        )
    return candidates


def select_best_candidate(
    *,
    film_title: str,
    original_title: str | None,
    film_year: int | None,
    candidates: list[ImdbCandidate],
) -> ScoredCandidate | None:
    best: ScoredCandidate | None = None
    for candidate in candidates:
        score = score_candidate(
            film_title=film_title,
            original_title=original_title,
            film_year=film_year,
            candidate=candidate,
        )
        if best is None or score > best.score:
            best = ScoredCandidate(candidate=candidate, score=score)
    return best


class _JsonLdScriptParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=False)
        self.scripts: list[str] = []
        self._parts: list[str] | None = None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() != "script":
            return
        attrs_map = {name.lower(): (value or "").strip().lower() for name, value in attrs}
        if attrs_map.get("type") == "application/ld+json":
            self._parts = []

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() == "script" and self._parts is not None:
            self.scripts.append("".join(self._parts))
            self._parts = None

    def handle_data(self, data: str) -> None:
        if self._parts is not None:
            self._parts.append(data)


def parse_rating_from_html(html_text: str) -> ImdbRating | None:
    parser = _JsonLdScriptParser()
    parser.feed(html_text)
    parser.close()

    for script in parser.scripts:
        try:
            payload = json.loads(script)
        except json.JSONDecodeError:
            continue
        entries = cast(list[Any], payload) if isinstance(payload, list) else [payload]
        for entry in entries:
            rating = _rating_from_structured_data(entry)
            if rating is not None:
                return rating

    match = _AGGREGATE_RATING_FALLBACK.search(html_text)
    if match is None:
        return None
    rating_value = _finite_float(match.group(3))
    rating_scale = _finite_float(match.group(2))
    if rating_value is None or rating_scale is None:
        return None
    return ImdbRating(
        rating_value=rating_value,
        rating_scale=rating_scale,
        vote_count=_vote_count(match.group(1)),
    )


def _rating_from_structured_data(value: Any) -> ImdbRating | None:
    if not isinstance(value, dict):
        return None
    aggregate = cast(dict[str, Any], value).get("aggregateRating")
    if not isinstance(aggregate, dict):
        return None
    aggregate_record = cast(dict[str, Any], aggregate)
    rating_value = _finite_float(aggregate_record.get("ratingValue"))
    if rating_value is None:
        return None
    rating_scale = _finite_float(aggregate_record.get("bestRating"))
    return ImdbRating(
        rating_value=rating_value,
        rating_scale=rating_scale if rating_scale is not None else DEFAULT_RATING_SCALE,
        vote_count=_vote_count(aggregate_record.get("ratingCount")),
    )


class ImdbClient:
    def __init__(
        self,
        *,
        http_client: HttpClient,
        suggestion_base_url: str,
        title_base_url: str,
    ) -> None:
        self._http_client = http_client
        self._suggestion_base_url = suggestion_base_url.rstrip("/")
        self._title_base_url = title_base_url.rstrip("/")

    def title_url(self, imdb_id: str) -> str:
        return f"{self._title_base_url}/{imdb_id}/"

    def search(self, query: str) -> list[ImdbCandidate]:
        if not query.strip():
            return []
        url = suggestion_url(self._suggestion_base_url, query)
        response = self._http_client.get(url, headers=_SUGGESTION_HEADERS)
        return parse_suggestion_payload(response.json())

    def fetch_rating(self, imdb_id: str) -> ImdbRating | None:
        response = self._http_client.get(self.title_url(imdb_id), headers=_BROWSER_HEADERS)
        html_text = response.text()
        if not html_text:
            return None
        return parse_rating_from_html(html_text)


class ImdbMatcher:
    def __init__(self, *, client: ImdbClient, min_score: float) -> None:
        self._client = client
        self._min_score = min_score

    @property
    def client(self) -> ImdbClient:
        return self._client

    def match_film(
        self,
        *,
        title: str,
        original_title: str | None,
        year: int | None,
    ) -> FilmMatch:
        queries = build_search_queries(title=title, original_title=original_title, year=year)
        pool: dict[str, ScoredCandidate] = {}
        for query in queries:
            for candidate in self._client.search(query):
                scored = ScoredCandidate(
                    candidate=candidate,
                    score=score_candidate(
                        film_title=title,
                        original_title=original_title,
                        film_year=year,
                        candidate=candidate,
                    ),
                )
                current = pool.get(candidate.id)
                if current is None or scored.score > current.score:
                    pool[candidate.id] = scored

        best: ScoredCandidate | None = None
        for scored in pool.values():
            if best is None or scored.score > best.score:
                best = scored

        LOGGER.debug(
            "imdb match title=%s queries=%s pool=%s best=%s",
            title,
            len(queries),
            len(pool),
            best.score if best is not None else None,
        )
        return FilmMatch(queries=queries, best=best, min_score=self._min_score)


def _finite_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _finite_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _vote_count(value: Any) -> int | None:
    if isinstance(value, str):
        value = value.replace(",", "")
    number = _finite_float(value)
    return int(number) if number is not None else None
