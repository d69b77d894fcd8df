"""JSON-over-HTTP session for the marketplace REST API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import aiohttp
from loguru import logger

RETRYABLE_STATUSES = frozenset({0, 408, 429})


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    """Rejected request. ``status`` is 0 when no response arrived at all."""

    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"

    @property
    def transient(self) -> bool:
        return self.status in RETRYABLE_STATUSES or self.status >= 500


class HttpClient:
    """Lazily opened ``aiohttp`` session bound to one base URL and bearer token."""

    def __init__(self, base_url: str, token: str | None = None, *, timeout: float = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _open(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and decode the JSON reply (``None`` for an empty body)."""
        url = self.base_url + path
        self._log.debug("{method} {url}", method=method, url=url)
        try:
            async with self._open().request(method, url, json=json, params=params) as resp:
                raw = await resp.read()
                if resp.status >= 400:
                    text = raw.decode(errors="replace")
                    self._log.warning("{method} {url} -> {status}", method=method, url=url, status=resp.status)
                    raise HttpError(resp.status, text[:2000])
                if not raw:
                    return None
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    self._log.warning("{method} {url} returned a non-JSON body", method=method, url=url)
                    raise HttpError(0, f"malformed response body: {raw[:200]!r}") from e
        except aiohttp.ClientError as e:
            raise HttpError(0, f"{type(e).__name__}: {e}") from e
        except TimeoutError as e:
            raise HttpError(0, f"no response within {self._timeout}s") from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpClient:
        self._open()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()


__all__ = ["HttpClient", "HttpError"]
