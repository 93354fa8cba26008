from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from festival_ingest.repositories.database import Database

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_program_fixture(name: str) -> dict[str, Any]:
    payload = json.loads((FIXTURES_DIR / "program" / name).read_text(encoding="utf-8"))
    assert isinstance(payload, dict)
    return payload


class FakeUrlopenResponse:
    def __init__(
        self,
        *,
        status: int = 200,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status = status
        self._body = body
        self.headers = headers or {}

    def __enter__(self) -> FakeUrlopenResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def json_response(payload: Any, *, status: int = 200) -> FakeUrlopenResponse:
    return FakeUrlopenResponse(
        status=status,
        body=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )


def count_rows(db: Database, table: str, where: str = "", params: tuple[Any, ...] = ()) -> int:
    query = f"SELECT COUNT(*) AS count FROM {table}"
    if where:
        query += f" WHERE {where}"
    with db.connection() as conn:
        row = conn.execute(query, params).fetchone()
    return int(row["count"])


def no_sleep(_seconds: float) -> None:
    return None
