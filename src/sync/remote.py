"""HTTP client for the remote CRUD services.

Only two calls are needed: ``GET /api/health`` to probe an endpoint and
``POST /api/<kind>`` to submit a record. Timeouts are applied by the
callers with ``asyncio.wait_for`` so every call can be cancelled.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from src import __version__
from src.sync.errors import RemoteRejected, RemoteUnreachable
from src.sync.models import EndpointCandidate, RecordKind

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/health"


def _decode_body(raw: bytes, charset: str | None) -> str:
    """Decode a response body; undecodable bytes become U+FFFD."""
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


class RemoteClient:
    """Thin aiohttp wrapper translating HTTP outcomes into sync errors."""

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": f"job-sync/{__version__}",
            **(headers or {}),
        }
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def check_health(self, endpoint: EndpointCandidate) -> dict[str, Any]:
        """Return the health body of an endpoint.

        Raises:
            RemoteUnreachable: On transport errors.
            RemoteRejected: If the endpoint did not answer 200.
        """
        url = endpoint.url(HEALTH_PATH)
        try:
            async with self._get_session().get(url) as response:
                body = _decode_body(await response.read(), response.charset)
                if response.status != 200:
                    raise RemoteRejected(response.status, body)
        except aiohttp.ClientError as exc:
            raise RemoteUnreachable(f"{url}: {exc}") from exc

        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError:
            parsed = {}
        return parsed if isinstance(parsed, dict) else {"status": parsed}

    async def submit(
        self,
        endpoint: EndpointCandidate,
        kind: RecordKind,
        payload: dict[str, Any],
    ) -> Any:
        """POST a record payload; returns the parsed JSON response.

        Raises:
            RemoteUnreachable: On transport errors.
            RemoteRejected: On non-2xx responses or a body that is not JSON.
        """
        url = endpoint.url(kind.resource_path)
        try:
            async with self._get_session().post(url, json=payload) as response:
                body = _decode_body(await response.read(), response.charset)
                status = response.status
        except aiohttp.ClientError as exc:
            raise RemoteUnreachable(f"{url}: {exc}") from exc

        if not 200 <= status < 300:
            raise RemoteRejected(status, body)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise RemoteRejected(status, f"response is not JSON: {exc}") from exc


def extract_remote_id(response: Any) -> str | None:
    """Pull the server-side identifier out of a create response.

    The CRUD services answer either with the created document or with a
    ``{"data": {...}}`` envelope.
    """
    if not isinstance(response, dict):
        return None
    data = response.get("data")
    document = data if isinstance(data, dict) else response
    for key in ("_id", "id"):
        value = document.get(key)
        if value is not None:
            return str(value)
    return None
