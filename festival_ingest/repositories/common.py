from __future__ import annotations

import json
from datetime import UTC, datetime
from hashlib import sha256
from typing import Any


class SchemaInvariantViolation(RuntimeError):
    """A row the schema guarantees is missing or unresolvable."""


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(value: Any) -> str:
    return sha256(canonical_json(value).encode("utf-8")).hexdigest()
