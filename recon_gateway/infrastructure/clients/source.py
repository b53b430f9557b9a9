"""Bookkeeping source API client with exponential backoff retry logic"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from recon_gateway.config import settings
from recon_gateway.domain.exceptions import FetchError
from recon_gateway.infrastructure.observability.metrics import (
    source_fetch_failures_counter,
    source_fetch_latency_histogram,
)

logger = logging.getLogger(__name__)


@dataclass
class SourcePage:
    """One page of raw records plus pagination metadata"""

    page: int
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_page: Optional[int] = None
    total_pages: Optional[int] = None

    @property
    def is_last(self) -> bool:
        if self.next_page is None:
            return True
        return self.total_pages is not None and self.page >= self.total_pages


def _optional_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def parse_page(page: int, payload: Any) -> SourcePage:
    """
    Read a records response body.

    Raises:
        FetchError: When the body is not {data: [...], meta: {...}}
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise FetchError(f"invalid records payload on page {page}", retryable=False)

    meta = payload.get("meta") or {}
    try:
        next_page = _optional_int(meta.get("nextPage", meta.get("proxima_pagina")))
        total_pages = _optional_int(meta.get("totalPages", meta.get("total_paginas")))
    except (TypeError, ValueError) as e:
        raise FetchError(f"invalid pagination meta on page {page}: {e}", retryable=False) from e

    records = [r for r in payload["data"] if isinstance(r, dict)]
    return SourcePage(page=page, records=records, next_page=next_page, total_pages=total_pages)


class SourceClient:
    """Client for the external bookkeeping records API"""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        secret_token: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.source_api_base).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.source_access_token
        self.secret_token = secret_token if secret_token is not None else settings.source_secret_token
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_attempts = max_attempts or settings.fetch_max_attempts
        self.backoff_base = settings.fetch_backoff_base if backoff_base is None else backoff_base
        self.backoff_factor = settings.fetch_backoff_factor
        self.backoff_cap = settings.fetch_backoff_cap
        self.transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "access-token": self.access_token,
            "secret-access-token": self.secret_token,
            "Accept": "application/json",
        }

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt: base * factor^(attempt-1), capped"""
        return min(self.backoff_cap, self.backoff_base * (self.backoff_factor ** (attempt - 1)))

    async def fetch_page(
        self,
        since: Optional[date],
        until: Optional[date],
        page: int,
        page_size: int | None = None,
    ) -> SourcePage:
        """
        Fetch one page of records with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s ... capped at fetch_backoff_cap
        - Retries on timeouts, network failures, 429 and 5xx
        - Other 4xx and malformed bodies fail immediately

        Raises:
            FetchError: After the last attempt, or on a non-retryable error
        """
        params: Dict[str, Any] = {"page": page, "pageSize": page_size or settings.page_size}
        if since:
            params["since"] = since.isoformat()
        if until:
            params["until"] = until.isoformat()

        attempt = 0
        async with httpx.AsyncClient(
            timeout=self.timeout, headers=self.headers, transport=self.transport
        ) as client:
            while True:
                try:
                    with source_fetch_latency_histogram.time():
                        response = await client.get(f"{self.base_url}/records", params=params)
                        response.raise_for_status()
                    return parse_page(page, response.json())

                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    error = FetchError(
                        f"source API error {status} on page {page}",
                        retryable=status == 429 or status >= 500,
                    )
                except httpx.TimeoutException:
                    error = FetchError(f"source API timeout after {self.timeout}s on page {page}")
                except httpx.RequestError as e:
                    error = FetchError(f"source API unreachable on page {page}: {e}")
                except ValueError as e:
                    error = FetchError(f"invalid JSON on page {page}: {e}", retryable=False)

                attempt += 1
                source_fetch_failures_counter.inc()
                logger.warning(
                    "Source fetch failed",
                    extra={"page": page, "attempt": attempt, "error": str(error), "retryable": error.retryable},
                )
                if not error.retryable or attempt >= self.max_attempts:
                    raise error

                await asyncio.sleep(self.backoff(attempt))
