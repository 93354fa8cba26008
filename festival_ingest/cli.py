"""Command-line entry point for festival-ingest."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from festival_ingest.config import AppSettings, load_settings
from festival_ingest.dependencies import (
    build_database,
    build_enrichment_service,
    build_program_ingest_service,
    build_telemetry,
)
from festival_ingest.logging_config import configure_application_logging
from festival_ingest.repositories.database import Database
from festival_ingest.repositories.program_repository import ProgramRepository

console = Console()

db_option = click.option(
    "--db",
    "db_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="SQLite database path (overrides FESTIVAL_INGEST_DB_PATH).",
)


def _settings(db_path: Path | None, **overrides: Any) -> AppSettings:
    values = {key: value for key, value in overrides.items() if value is not None}
    if db_path is not None:
        values["db_path"] = db_path
    settings = load_settings(**values)
    configure_application_logging(settings)
    return settings


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """Festival program ingestion and IMDb enrichment."""


@main.command("init-db")
@db_option
def init_db(db_path: Path | None) -> None:
    """Apply pending schema migrations."""
    settings = _settings(db_path)
    database = Database(settings.db_path)
    applied = database.initialize()
    console.print(f"[green]Migrations applied:[/green] {applied} ({settings.db_path})")


@main.command("ingest-program")
@db_option
@click.option("--locale", default=None, help="Feed locale, e.g. de or en.")
@click.option("--max-pages", type=int, default=None, help="Safety cap on pages fetched.")
@click.option("--retries", type=int, default=None, help="HTTP retries per page.")
@click.option("--timeout-seconds", type=float, default=None, help="Per-attempt HTTP timeout.")
def ingest_program(
    db_path: Path | None,
    locale: str | None,
    max_pages: int | None,
    retries: int | None,
    timeout_seconds: float | None,
) -> None:
    """Fetch every program page and upsert it into the database."""
    settings = _settings(
        db_path,
        locale=locale,
        program_max_pages=max_pages,
        program_http_retries=retries,
        program_http_timeout_seconds=timeout_seconds,
    )
    database = build_database(settings)
    service = build_program_ingest_service(
        settings,
        database=database,
        telemetry=build_telemetry(settings),
    )
    console.print(f"Ingesting [cyan]{service.endpoint}[/cyan]")
    try:
        result = service.run()
    except Exception as exc:
        raise click.ClickException(f"Ingest run failed: {exc}") from exc

    console.print("[bold green]Ingest finished[/bold green]")
    console.print(f"  run_id: {result.run_id}")
    console.print(f"  pages_fetched: {result.pages_fetched}")
    console.print(f"  items_seen: {result.items_seen}")
    console.print(f"  finished_at: {result.finished_at}")


@main.command("enrich-imdb")
@db_option
@click.option("--min-score", type=float, default=None, help="Minimum match score.")
@click.option("--retries", type=int, default=None, help="HTTP retries per IMDb request.")
@click.option("--timeout-seconds", type=float, default=None, help="Per-attempt HTTP timeout.")
@click.option("--delay-seconds", type=float, default=None, help="Delay after each film.")
@click.option("--limit", type=int, default=None, help="Maximum films to process (0 = all).")
@click.option("--force", is_flag=True, help="Re-match films that already have a link.")
def enrich_imdb(
    db_path: Path | None,
    min_score: float | None,
    retries: int | None,
    timeout_seconds: float | None,
    delay_seconds: float | None,
    limit: int | None,
    force: bool,
) -> None:
    """Link active films to IMDb titles and snapshot their ratings."""
    settings = _settings(
        db_path,
        imdb_min_score=min_score,
        imdb_http_retries=retries,
        imdb_http_timeout_seconds=timeout_seconds,
        imdb_delay_seconds=delay_seconds,
        imdb_limit=limit,
    )
    database = build_database(settings)
    service = build_enrichment_service(
        settings,
        database=database,
        telemetry=build_telemetry(settings),
    )
    stats = service.run(limit=settings.imdb_limit or None, force=force)

    table = Table(title="IMDb enrichment")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for key, value in stats.as_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@main.command("verify-db")
@db_option
@click.pass_context
def verify_db(ctx: click.Context, db_path: Path | None) -> None:
    """Print row counts and check screening references."""
    settings = _settings(db_path)
    repository = ProgramRepository(build_database(settings))

    table = Table(title=str(settings.db_path))
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    for name, count in repository.count_rows().items():
        table.add_row(name, str(count))
    console.print(table)

    orphans = repository.count_orphan_screenings()
    if orphans:
        console.print(f"[red]Screenings referencing missing films: {orphans}[/red]")
        ctx.exit(1)
    console.print("[green]All screenings reference existing films.[/green]")


if __name__ == "__main__":
    main()
