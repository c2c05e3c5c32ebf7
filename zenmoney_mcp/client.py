"""Async HTTP client for the ZenMoney ``/v8/diff/`` and ``/v8/suggest/`` API."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from .errors import RemoteRejected, StaleCursor, TransportError
from .models import Delta

logger = logging.getLogger(__name__)

BASE_URL = "https://api.zenmoney.ru"
TOKEN_HELP = "Get a new token from https://budgera.com/settings/export"
# Statuses the diff endpoint uses when it no longer has history for a cursor.
STALE_STATUSES = (409, 410)


def _now_ts() -> int:
    return int(time.time())


def _reason(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict):
        for key in ("error", "message", "reason"):
            if body.get(key):
                val = body[key]
                return val if isinstance(val, str) else str(val)
    return str(body)


class ZenMoneyClient:
    """Thin wrapper over :class:`httpx.AsyncClient` mapping failures to our taxonomy."""

    def __init__(
        self,
        token: str,
        base_url: str = BASE_URL,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ZenMoneyClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _post(self, endpoint: str, body: dict) -> httpx.Response:
        if not self.token:
            raise TransportError("ZENMONEY_TOKEN is not set. Set env var or add to config.json", kind="auth")
        try:
            resp = await self._get_client().post(
                f"{self.base_url}{endpoint}",
                json=body,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.token}",
                },
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out calling {endpoint}: {e}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error calling {endpoint}: {e}", kind="network") from e
        if resp.status_code in (401, 403):
            raise TransportError(
                f"Token expired or invalid ({resp.status_code}). {TOKEN_HELP}",
                kind="auth", status_code=resp.status_code,
            )
        if resp.status_code >= 500:
            raise TransportError(
                f"ZenMoney server error {resp.status_code}: {_reason(resp)}",
                kind="server", status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response, endpoint: str) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"Malformed response from {endpoint}", kind="server",
                                 status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response shape from {endpoint}", kind="server",
                                 status_code=resp.status_code)
        return data

    # -- diff ---------------------------------------------------------------

    async def full_fetch(self) -> Delta:
        """Download the complete dataset. The returned delta holds every live record."""
        body = {"currentClientTimestamp": _now_ts(), "serverTimestamp": 0}
        resp = await self._post("/v8/diff/", body)
        if resp.status_code >= 400:
            raise TransportError(f"Full fetch failed ({resp.status_code}): {_reason(resp)}",
                                 kind="server", status_code=resp.status_code)
        delta = Delta.from_diff(self._json(resp, "/v8/diff/"))
        logger.debug("Full fetch returned %s at %d", delta.counts(), delta.cursor)
        return delta

    async def delta_fetch(self, cursor: int) -> Delta:
        """Fetch changes since *cursor*.

        Raises :class:`StaleCursor` when the server cannot serve that baseline.
        """
        body = {"currentClientTimestamp": _now_ts(), "serverTimestamp": cursor}
        resp = await self._post("/v8/diff/", body)
        if resp.status_code in STALE_STATUSES:
            raise StaleCursor(cursor, f"Server refused cursor {cursor}: {_reason(resp)}")
        if resp.status_code >= 400:
            raise TransportError(f"Delta fetch failed ({resp.status_code}): {_reason(resp)}",
                                 kind="server", status_code=resp.status_code)
        delta = Delta.from_diff(self._json(resp, "/v8/diff/"))
        if delta.cursor < cursor:
            raise StaleCursor(cursor, f"Server returned cursor {delta.cursor} older than {cursor}")
        return delta

    async def push(self, changes: dict[str, Any], cursor: int) -> Delta:
        """Send entity changes through the diff endpoint.

        The response is a diff against *cursor* that includes the confirmed
        entities. A 4xx answer is a rejection of this write.
        """
        body: dict[str, Any] = {"currentClientTimestamp": _now_ts(), "serverTimestamp": cursor}
        body.update(changes)
        resp = await self._post("/v8/diff/", body)
        if resp.status_code in STALE_STATUSES:
            raise StaleCursor(cursor, f"Server refused cursor {cursor}: {_reason(resp)}")
        if resp.status_code >= 400:
            raise RemoteRejected(_reason(resp), operation=changes, status_code=resp.status_code)
        return Delta.from_diff(self._json(resp, "/v8/diff/"))

    async def suggest(self, payee: str | None = None, comment: str | None = None) -> dict:
        body: dict[str, Any] = {}
        if payee:
            body["payee"] = payee
        if comment:
            body["comment"] = comment
        resp = await self._post("/v8/suggest/", body)
        if resp.status_code >= 400:
            raise TransportError(f"Suggest failed ({resp.status_code}): {_reason(resp)}",
                                 kind="server", status_code=resp.status_code)
        return self._json(resp, "/v8/suggest/")
