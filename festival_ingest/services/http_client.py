from __future__ import annotations

import json
import logging
import math
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.message import Message
from email.utils import parsedate_to_datetime
from http.client import HTTPException
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("festival_ingest.http")

BACKOFF_BASE_SECONDS = 0.5
BACKOFF_CAP_SECONDS = 10.0
DEFAULT_JITTER_SECONDS = 0.25


class RequestFailed(RuntimeError):
    def __init__(self, message: str, *, status_code: int, url: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Seconds to wait from a ``Retry-After`` value (delta seconds or HTTP date)."""
    if value is None or not value.strip():
        return None
    stripped = value.strip()
    try:
        seconds = float(stripped)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max(0.0, (retry_at - reference).total_seconds())


def backoff_seconds(
    attempt: int,
    *,
    jitter_seconds: float = DEFAULT_JITTER_SECONDS,
    random_fn: Callable[[], float] = random.random,
) -> float:
    exponential = min(BACKOFF_CAP_SECONDS, BACKOFF_BASE_SECONDS * 2 ** (attempt - 1))
    return exponential + random_fn() * jitter_seconds


class HttpClient:
    """Blocking HTTP with a bounded retry budget.

    Attempts = ``retries + 1``. 429/5xx responses and network errors are
    retried with Retry-After or exponential backoff; on the final attempt a
    bad status raises ``RequestFailed`` and a network error propagates as is.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float,
        retries: int,
        user_agent: str,
        default_headers: Mapping[str, str] | None = None,
        jitter_seconds: float = DEFAULT_JITTER_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._retries = max(0, retries)
        self._headers = {"User-Agent": user_agent, **dict(default_headers or {})}
        self._jitter_seconds = jitter_seconds
        self._sleep = sleep
        self._random_fn = random_fn

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self.request("GET", url, headers=headers)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        return self.request("POST", url, json_body=payload, headers=headers)

    def request(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        request_headers = {**self._headers, **dict(headers or {})}
        body: bytes | None = None
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            request_headers.setdefault("Content-Type", "application/json")

        max_attempts = self._retries + 1
        for attempt in range(1, max_attempts + 1):
            is_last_attempt = attempt == max_attempts
            request = Request(url=url, data=body, headers=request_headers, method=method)
            try:
                response = self._send(request)
            except (URLError, TimeoutError, OSError, HTTPException) as exc:
                if is_last_attempt:
                    raise
                delay = self._backoff(attempt)
                LOGGER.warning(
                    "http request error attempt=%s/%s url=%s error=%s delay=%.2f",
                    attempt,
                    max_attempts,
                    url,
                    exc,
                    delay,
                )
                self._sleep(delay)
                continue

            if 200 <= response.status_code < 300:
                return response

            if is_retryable_status(response.status_code) and not is_last_attempt:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                delay = retry_after if retry_after is not None else self._backoff(attempt)
                LOGGER.warning(
                    "http request retry attempt=%s/%s url=%s status=%s delay=%.2f",
                    attempt,
                    max_attempts,
                    url,
                    response.status_code,
                    delay,
                )
                self._sleep(delay)
                continue

            raise RequestFailed(
                f"Request failed with status {response.status_code}: {method} {url}",
                status_code=response.status_code,
                url=url,
            )

        raise RuntimeError("Retry loop exited without a response.")

    def _send(self, request: Request) -> HttpResponse:
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                return HttpResponse(
                    status_code=int(response.status),
                    body=response.read(),
                    headers=_lower_headers(response.headers),
                )
        except HTTPError as exc:
            # Non-2xx statuses arrive as HTTPError; treat them as responses.
            return HttpResponse(
                status_code=int(exc.code),
                body=exc.read() if exc.fp is not None else b"",
                headers=_lower_headers(exc.headers),
            )

    def _backoff(self, attempt: int) -> float:
        return backoff_seconds(
            attempt,
            jitter_seconds=self._jitter_seconds,
            random_fn=self._random_fn,
        )


def _lower_headers(headers: Message | Mapping[str, str] | None) -> dict[str, str]:
    if headers is None:
        return {}
    return {str(key).lower(): str(value) for key, value in headers.items()}
