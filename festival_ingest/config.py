from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".festival-ingest"
DEFAULT_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/144.0.0.0 Safari/537.36"
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("festival.sqlite")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)
_BASE_URL_FIELDS: tuple[str, ...] = (
    "program_origin",
    "imdb_suggestion_base_url",
    "imdb_title_base_url",
)
_REQUIRED_TEXT_FIELDS: tuple[str, ...] = (
    "program_user_agent",
    "program_source_label",
    "imdb_user_agent",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{FESTIVAL_INGEST_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


class AppSettings(BaseSettings):
    """
    Runtime configuration for ingestion and enrichment.

    Every option reads from `FESTIVAL_INGEST_*` (or `.env`); the field
    description is its documentation.
    """

    model_config = SettingsConfigDict(
        env_prefix="FESTIVAL_INGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths and logging.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("festival.sqlite")),
        description=f"SQLite database path. {_data_dir_default_note(Path('festival.sqlite'))}",
    )
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for JSON log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level. File logs always capture DEBUG.",
    )

    # Festival program feed.
    locale: str = Field(
        default="de",
        description="Feed locale; substituted into the endpoint template.",
    )
    program_endpoint_template: str = Field(
        default="https://www.berlinale.de/api/v1/{locale}/festival-program",
        description="Program endpoint URL. Must contain a `{locale}` placeholder.",
    )
    program_origin: str = Field(
        default="https://www.berlinale.de",
        description="Origin and Referer sent with program page requests.",
    )
    program_user_agent: str = Field(
        default="festival-ingest/0.1",
        description="User-Agent for program page requests.",
    )
    program_source_label: str = Field(
        default="berlinale festival-program",
        description="Source label recorded on every ingest run.",
    )
    program_max_pages: int = Field(
        default=500,
        ge=1,
        description="Safety cap on pages fetched per run, regardless of upstream hints.",
    )
    program_http_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Per-attempt timeout for program page requests.",
    )
    program_http_retries: int = Field(
        default=4,
        ge=0,
        description="Retries per program page request (attempts = retries + 1).",
    )

    # IMDb enrichment.
    imdb_suggestion_base_url: str = Field(
        default="https://v3.sg.media-imdb.com/suggestion",
        description="Base URL of the IMDb suggestion endpoint.",
    )
    imdb_title_base_url: str = Field(
        default="https://www.imdb.com/title",
        description="Base URL of IMDb title pages; also used for stored link URLs.",
    )
    imdb_min_score: float = Field(
        default=66.0,
        description="Minimum match score for a candidate to be linked.",
    )
    imdb_http_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Per-attempt timeout for IMDb requests.",
    )
    imdb_http_retries: int = Field(
        default=3,
        ge=0,
        description="Retries per IMDb request (attempts = retries + 1).",
    )
    imdb_delay_seconds: float = Field(
        default=0.12,
        ge=0,
        description="Politeness delay after each film during enrichment.",
    )
    imdb_limit: int = Field(
        default=0,
        ge=0,
        description="Maximum films per enrichment batch. 0 means no limit.",
    )
    imdb_user_agent: str = Field(
        default=DEFAULT_BROWSER_USER_AGENT,
        description="User-Agent for IMDb requests.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Emit structured telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink. `log` writes to the telemetry log file.",
    )

    @field_validator("locale", mode="before")
    @classmethod
    def _normalize_locale(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FESTIVAL_INGEST_LOCALE must be a string.")
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("FESTIVAL_INGEST_LOCALE must not be empty.")
        return normalized

    @field_validator("program_endpoint_template", mode="before")
    @classmethod
    def _normalize_endpoint_template(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FESTIVAL_INGEST_PROGRAM_ENDPOINT_TEMPLATE must be a string.")
        normalized = value.strip()
        if "{locale}" not in normalized:
            raise ValueError(
                "FESTIVAL_INGEST_PROGRAM_ENDPOINT_TEMPLATE must contain a {locale} placeholder."
            )
        return normalized

    @field_validator(*_BASE_URL_FIELDS, mode="before")
    @classmethod
    def _normalize_base_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"FESTIVAL_INGEST_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator(*_REQUIRED_TEXT_FIELDS, mode="before")
    @classmethod
    def _normalize_required_text(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"FESTIVAL_INGEST_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FESTIVAL_INGEST_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("FESTIVAL_INGEST_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(**overrides: Any) -> AppSettings:
    settings = AppSettings(**overrides)
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
