"""
Mapping of raw festival-program JSON into canonical entities.

The feed is loosely shaped: the same field shows up under different key
spellings, on the item itself or on a nested ``film``/``movie`` object. Every
field is therefore read through an ordered list of extractors, first hit wins.

Everything here is a pure function of its input. Derived keys for records
without an upstream id are content hashes of canonical JSON, so identical
input produces identical keys across runs.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar, cast

from festival_ingest.repositories.common import content_hash

T = TypeVar("T")
Extractor = Callable[[dict[str, Any]], T | None]

DEFAULT_UNIX_TIME_ZONE = "Europe/Berlin"

_ITEM_ARRAY_KEYS = ("items", "Items", "results", "Results", "entries", "Entries", "data", "Data")
_NESTED_ITEM_ARRAY_KEYS = ("items", "results", "entries")
_HAS_NEXT_KEYS = ("hasNext", "HasNext", "has_next", "nextPage", "NextPage")
_TOTAL_PAGES_KEYS = ("totalPages", "TotalPages", "pageCount", "PageCount")
_PAGE_KEYS = ("page", "Page", "currentPage", "CurrentPage")

_ITEM_ID_KEYS = ("id", "Id", "uuid", "UUID", "slug", "Slug", "code", "Code")
_NESTED_FILM_ID_KEYS = ("id", "Id", "uuid", "slug")

_META_KEYS = ("meta", "metaCompact", "metaTile", "Meta", "MetaCompact", "MetaTile")
_RUNTIME_PATTERN = re.compile(r"(\d{1,3})\s*'")
_YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")
_TRAILING_SEPARATORS = re.compile(r"[\s,]+$")


@dataclass(frozen=True)
class ProgramPage:
    items: list[Any]
    has_next: bool | None = None
    page: int | None = None
    total_pages: int | None = None


@dataclass(frozen=True)
class NormalizedFilm:
    source_film_id: str
    title: str
    original_title: str | None
    synopsis: str | None
    runtime_minutes: int | None
    year: int | None
    country: str | None
    section: str | None


@dataclass(frozen=True)
class NormalizedPerson:
    source_person_id: str
    name: str


@dataclass(frozen=True)
class NormalizedCredit:
    source_person_id: str
    role_type: str
    role_name: str
    billing_order: int | None


@dataclass(frozen=True)
class NormalizedVenue:
    source_venue_id: str
    name: str
    address: str | None
    lat: float | None
    lng: float | None


@dataclass(frozen=True)
class NormalizedScreening:
    source_screening_id: str
    starts_at_utc: str
    local_tz: str | None
    format: str | None
    ticket_url: str | None
    source_venue_id: str | None


@dataclass(frozen=True)
class NormalizedProgramItem:
    film: NormalizedFilm
    people: list[NormalizedPerson]
    credits: list[NormalizedCredit]
    venues: list[NormalizedVenue]
    screenings: list[NormalizedScreening]


@dataclass(frozen=True)
class _CreditSource:
    keys: tuple[str, ...]
    role_type: str
    default_role_name: str


_CREDIT_SOURCES: tuple[_CreditSource, ...] = (
    _CreditSource(
        keys=("credits", "Credits", "persons", "Persons", "contributors", "Contributors"),
        role_type="credit",
        default_role_name="credit",
    ),
    _CreditSource(keys=("person",), role_type="person", default_role_name="person"),
    _CreditSource(keys=("castMembers",), role_type="cast", default_role_name="cast"),
    _CreditSource(keys=("reducedCastMembers",), role_type="cast", default_role_name="cast"),
    _CreditSource(keys=("crewMembers",), role_type="crew", default_role_name="crew"),
    _CreditSource(keys=("reducedCrewMembers",), role_type="crew", default_role_name="crew"),
)


def extract_page(payload: Any) -> ProgramPage:
    root = _as_record(payload)
    if root is None:
        return ProgramPage(items=[])

    items: list[Any] = []
    nested = _as_record(root.get("data")) or {}
    for candidate in (_pick_any(root, _ITEM_ARRAY_KEYS), _pick_any(nested, _NESTED_ITEM_ARRAY_KEYS)):
        if isinstance(candidate, list):
            items = cast(list[Any], candidate)
            break

    page = _as_number(_pick_any(root, _PAGE_KEYS))
    total_pages = _as_number(_pick_any(root, _TOTAL_PAGES_KEYS))
    return ProgramPage(
        items=items,
        has_next=_as_boolean(_pick_any(root, _HAS_NEXT_KEYS)),
        page=int(page) if page is not None else None,
        total_pages=int(total_pages) if total_pages is not None else None,
    )


def extract_source_id(item: Any) -> str:
    record = _as_record(item)
    if record is None:
        return f"hash:{content_hash(item)}"

    direct = _id_reader(_ITEM_ID_KEYS)(record)
    if direct is not None:
        return direct

    nested = _as_record(record.get("film")) or _as_record(record.get("movie"))
    if nested is not None:
        nested_id = _id_reader(_NESTED_FILM_ID_KEYS)(nested)
        if nested_id is not None:
            return nested_id

    return f"hash:{content_hash(item)}"


def normalize_program_item(item: Any) -> NormalizedProgramItem:
    root = _as_record(item) or {}
    source_film_id = extract_source_id(root)
    people, credits = _normalize_people(root)
    venues, screenings = _normalize_venues_and_screenings(root)
    return NormalizedProgramItem(
        film=_normalize_film(root, source_film_id),
        people=people,
        credits=credits,
        venues=venues,
        screenings=screenings,
    )


@dataclass(frozen=True)
class MetaInfo:
    runtime_minutes: int | None
    year: int | None
    country: str | None


def parse_meta_lines(meta: Any) -> MetaInfo:
    """Scan free-text lines such as ``["105'", "Serbien 2026"]``."""
    lines = [
        entry.strip()
        for entry in _as_list(meta)
        if isinstance(entry, str) and entry.strip()
    ]

    runtime_minutes: int | None = None
    year: int | None = None
    country: str | None = None
    for line in lines:
        if runtime_minutes is None:
            runtime_match = _RUNTIME_PATTERN.search(line)
            if runtime_match is not None:
                runtime_minutes = int(runtime_match.group(1))

        year_match = _YEAR_PATTERN.search(line)
        if year_match is None:
            continue
        if year is None:
            year = int(year_match.group(0))
        if country is None:
            leftover = line.replace(year_match.group(0), "", 1)
            leftover = _TRAILING_SEPARATORS.sub("", leftover).strip()
            if leftover:
                country = leftover

    return MetaInfo(runtime_minutes=runtime_minutes, year=year, country=country)


def _normalize_film(item: dict[str, Any], source_film_id: str) -> NormalizedFilm:
    film_node = _as_record(item.get("film")) or _as_record(item.get("movie")) or item
    section_node = _as_record(item.get("section"))
    if section_node is not None:
        section = _text_reader(("name", "Name"))(section_node)
    else:
        section = _text_reader(("section", "Section", "category", "Category"))(item)

    meta = parse_meta_lines(_pick_any(item, _META_KEYS))

    runtime = _first_match(
        film_node,
        (_int_reader(("runtime", "runtimeMinutes", "duration", "Duration")),),
    )
    year = _first_match(
        film_node,
        (_int_reader(("year", "Year", "productionYear", "ProductionYear")),),
    )
    country = _first_match(
        film_node,
        (
            _text_reader(("country", "Country", "countries", "Countries")),
            _text_list_reader(("countries", "Countries")),
        ),
    )
    synopsis = _first_match(
        film_node,
        (_text_reader(("synopsis", "description", "Description", "logline")),),
    )
    if synopsis is None:
        synopsis = _text_reader(("synopsis", "shortSynopsis"))(item)

    return NormalizedFilm(
        source_film_id=source_film_id,
        title=_text_reader(("title", "Title", "name", "Name"))(film_node) or source_film_id,
        original_title=_text_reader(("originalTitle", "OriginalTitle", "original_title"))(
            film_node
        ),
        synopsis=synopsis,
        runtime_minutes=runtime if runtime is not None else meta.runtime_minutes,
        year=year if year is not None else meta.year,
        country=country if country is not None else meta.country,
        section=section,
    )


def _normalize_people(
    item: dict[str, Any],
) -> tuple[list[NormalizedPerson], list[NormalizedCredit]]:
    people: dict[str, NormalizedPerson] = {}
    credits: list[NormalizedCredit] = []
    seen_credit_keys: set[tuple[str, str, str]] = set()

    name_reader = _text_reader(("name", "Name", "person", "Person"))
    id_reader = _id_reader(("personId", "person_id", "id", "Id", "uuid", "slug"))
    role_name_reader = _text_reader(("roleName", "job", "Job", "credit", "role", "Role"))
    role_type_reader = _text_reader(("roleType", "department", "group"))
    billing_reader = _int_reader(("order", "billingOrder", "position", "sort"))

    for source in _CREDIT_SOURCES:
        for index, node in enumerate(_as_list(_pick_any(item, source.keys))):
            record = _as_record(node)
            name: str | None = None
            explicit_id: str | None = None
            if record is not None:
                name = name_reader(record)
                explicit_id = id_reader(record)
            elif isinstance(node, str) and node.strip():
                name = node.strip()

            if name is None:
                continue

            # Same-named people without an upstream id collapse into one person.
            person_id = explicit_id or f"person:{content_hash(name.lower())}"
            if person_id not in people:
                people[person_id] = NormalizedPerson(source_person_id=person_id, name=name)

            if record is not None:
                role_name = role_name_reader(record) or source.default_role_name
                role_type = role_type_reader(record) or source.role_type
                billing_order = billing_reader(record)
            else:
                role_name = source.default_role_name
                role_type = source.role_type
                billing_order = index

            credit_key = (person_id, role_type, role_name)
            if credit_key in seen_credit_keys:
                continue
            seen_credit_keys.add(credit_key)
            credits.append(
                NormalizedCredit(
                    source_person_id=person_id,
                    role_type=role_type,
                    role_name=role_name,
                    billing_order=billing_order,
                )
            )

    return list(people.values()), credits


def _normalize_venues_and_screenings(
    item: dict[str, Any],
) -> tuple[list[NormalizedVenue], list[NormalizedScreening]]:
    nodes = _as_list(_pick_any(item, ("screenings", "Screenings", "events", "Events", "dates", "Dates")))
    venues: dict[str, NormalizedVenue] = {}
    screenings: list[NormalizedScreening] = []

    for index, node in enumerate(nodes):
        screening = _as_record(node)
        if screening is None:
            continue

        time_node = _as_record(screening.get("time"))
        unix_time = (
            _number_reader(("unixtime", "unixTime", "timestamp", "unix"))(time_node)
            if time_node is not None
            else None
        )
        starts_at = _from_unix_seconds(unix_time) if unix_time is not None else None
        if starts_at is None:
            starts_at = _parse_datetime_text(
                _text_reader(("startsAt", "start", "dateTime", "date", "Date"))(screening)
            )
        if starts_at is None:
            # Unplaceable on a calendar.
            continue

        source_screening_id = _id_reader(("extIdScreening", "id", "Id", "uuid", "slug"))(
            screening
        ) or f"screening-{index}-{content_hash(screening)}"

        venue = _resolve_venue(screening)
        if venue is not None:
            venues[venue.source_venue_id] = venue

        local_tz = _text_reader(("timezone", "timeZone", "tz"))(screening)
        if local_tz is None and unix_time is not None:
            local_tz = DEFAULT_UNIX_TIME_ZONE

        screenings.append(
            NormalizedScreening(
                source_screening_id=source_screening_id,
                starts_at_utc=starts_at.isoformat(),
                local_tz=local_tz,
                format=_text_reader(("format", "Format", "medium", "type"))(screening),
                ticket_url=_resolve_ticket_url(_pick_any(screening, ("ticketUrl", "ticket", "bookingUrl"))),
                source_venue_id=venue.source_venue_id if venue is not None else None,
            )
        )

    return list(venues.values()), screenings


def _resolve_venue(screening: dict[str, Any]) -> NormalizedVenue | None:
    venue_node = _as_record(screening.get("venue")) or _as_record(screening.get("location"))
    if venue_node is not None:
        name = _text_reader(("name", "Name"))(venue_node)
        venue_id = _id_reader(("id", "Id", "uuid", "slug"))(venue_node)
        if venue_id is None:
            hashed = content_hash(name.lower()) if name is not None else content_hash(venue_node)
            venue_id = f"venue:{hashed}"
        return NormalizedVenue(
            source_venue_id=venue_id,
            name=name or venue_id,
            address=_text_reader(("address", "Address"))(venue_node),
            lat=_number_reader(("lat", "latitude"))(venue_node),
            lng=_number_reader(("lng", "lon", "longitude"))(venue_node),
        )

    flat_venue = screening.get("venue")
    name = _text_reader(("venueHall", "venueName", "locationName"))(screening) or (
        flat_venue.strip() or None if isinstance(flat_venue, str) else None
    )
    if name is None:
        return None
    return NormalizedVenue(
        source_venue_id=f"venue:{content_hash(name.lower())}",
        name=name,
        address=None,
        lat=None,
        lng=None,
    )


def _resolve_ticket_url(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw.strip() or None
    ticket_node = _as_record(raw)
    if ticket_node is None:
        return None
    return _text_reader(("url", "link", "href"))(ticket_node)


def _from_unix_seconds(value: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(math.trunc(value), tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_datetime_text(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _first_match(record: dict[str, Any], extractors: Sequence[Extractor[T]]) -> T | None:
    for extractor in extractors:
        value = extractor(record)
        if value is not None:
            return value
    return None


def _key_reader(keys: Sequence[str], coerce: Callable[[Any], T | None]) -> Extractor[T]:
    def read(record: dict[str, Any]) -> T | None:
        for key in keys:
            value = coerce(record.get(key))
            if value is not None:
                return value
        return None

    return read


def _text_reader(keys: Sequence[str]) -> Extractor[str]:
    return _key_reader(keys, _as_text)


def _id_reader(keys: Sequence[str]) -> Extractor[str]:
    return _key_reader(keys, _as_id_text)


def _number_reader(keys: Sequence[str]) -> Extractor[float]:
    return _key_reader(keys, _as_number)


def _int_reader(keys: Sequence[str]) -> Extractor[int]:
    return _key_reader(keys, _as_int)


def _text_list_reader(keys: Sequence[str]) -> Extractor[str]:
    def join_texts(value: Any) -> str | None:
        texts = [text for text in (_as_text(entry) for entry in _as_list(value)) if text]
        return ", ".join(texts) if texts else None

    return _key_reader(keys, join_texts)


def _pick_any(record: dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in record:
            return record[key]
    return None


def _as_record(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_id_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def _as_number(value: Any) -> float | None:
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


def _as_int(value: Any) -> int | None:
    number = _as_number(value)
    return int(number) if number is not None else None


def _as_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value > 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return None
