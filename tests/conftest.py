from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from festival_ingest.repositories.database import Database


@pytest.fixture(autouse=True)
def _reset_app_loggers() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    yield
    for name in ("festival_ingest", "festival_ingest.telemetry"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


@pytest.fixture(autouse=True)
def _isolated_data_dir(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FESTIVAL_INGEST_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "festival.sqlite")
    db.initialize()
    return db
