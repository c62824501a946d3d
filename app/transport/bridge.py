"""Transport adapter for a protocol bridge sidecar.

The bridge owns the WhatsApp socket and crypto. This side opens a session with the
stored credentials, then follows ``GET /sessions/{tenant}/events``, a stream of
newline-delimited JSON events. Credential updates carry an ``ack_id``; the ack is posted
only after every handler for the event has returned.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence
from urllib.parse import quote

import httpx

from app.logging_config import get_logger
from app.services.auth_state import CredentialBundle, decode_buffers
from app.transport.base import (
    Connection,
    ConnectionUpdate,
    CredentialsUpdate,
    DisconnectReason,
    MessagesUpsert,
    Transport,
    TransportError,
    TransportEvent,
)

logger = get_logger("transport.bridge")


@dataclass
class BridgeEvent:
    event: TransportEvent
    payload: Any
    ack_id: Optional[str] = None
    user_id: Optional[str] = None


def parse_event(raw: str | dict) -> Optional[BridgeEvent]:
    """Decode one line of the event stream. Unknown event types yield None."""
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        raise ValueError("event must be a JSON object")

    try:
        event = TransportEvent(data.get("type"))
    except ValueError:
        return None

    user_id = None
    if event is TransportEvent.CONNECTION_UPDATE:
        user = data.get("user") or {}
        user_id = user.get("id") if isinstance(user, dict) else None
        status_code = data.get("status_code")
        payload: Any = ConnectionUpdate(
            connection=data.get("connection"),
            qr=data.get("qr"),
            status_code=int(status_code) if status_code is not None else None,
            error=data.get("error"),
        )
    elif event is TransportEvent.CREDS_UPDATE:
        payload = CredentialsUpdate(
            creds=decode_buffers(data.get("creds") or {}),
            keys=decode_buffers(data.get("keys") or {}),
        )
    else:
        payload = MessagesUpsert(messages=list(data.get("messages") or []), type=data.get("upsert_type") or "notify")

    return BridgeEvent(event=event, payload=payload, ack_id=data.get("ack_id"), user_id=user_id)


class BridgeConnection(Connection):
    def __init__(
        self,
        client: httpx.AsyncClient,
        tenant_id: str,
        credentials: CredentialBundle,
        *,
        connect_timeout_ms: int,
        browser: Sequence[str],
    ):
        super().__init__(tenant_id)
        self._client = client
        self._credentials = credentials
        self._connect_timeout_ms = connect_timeout_ms
        self._browser = list(browser)
        self._path = f"/sessions/{quote(tenant_id, safe='')}"
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    async def start(self) -> None:
        await self._post(
            "/open",
            {
                "auth_state": self._credentials.to_json(),
                "connect_timeout_ms": self._connect_timeout_ms,
                "browser": self._browser,
            },
        )
        if self._closing:
            logger.debug(f"Connection closed during open, not following events: tenant_id={self.tenant_id}")
            return
        self._reader = asyncio.create_task(self._read_events(), name=f"bridge-events:{self.tenant_id}")

    async def send_text(self, jid: str, text: str) -> None:
        await self._post("/messages", {"jid": jid, "text": text})

    async def logout(self) -> None:
        await self._post("/logout", {})

    async def close(self) -> None:
        self._closing = True
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        try:
            await self._post("/close", {})
        except TransportError as exc:
            logger.debug(f"Bridge close failed: tenant_id={self.tenant_id}, error={exc}")

    async def wait_closed(self) -> None:
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)

    async def _post(self, suffix: str, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post(f"{self._path}{suffix}", json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"bridge request {suffix} failed: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(f"bridge request {suffix} returned {response.status_code}: {response.text[:200]}")
        return response

    async def _read_events(self) -> None:
        closed = False
        error: Optional[str] = None
        timeout = httpx.Timeout(None, connect=self._connect_timeout_ms / 1000)
        try:
            async with self._client.stream("GET", f"{self._path}/events", timeout=timeout) as response:
                if response.status_code != 200:
                    raise TransportError(f"event stream returned {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        bridge_event = parse_event(line)
                    except ValueError as exc:
                        logger.warning(f"Skipping undecodable bridge event: tenant_id={self.tenant_id}, error={exc}")
                        continue
                    if bridge_event is None:
                        continue
                    if bridge_event.user_id:
                        self.user_id = bridge_event.user_id

                    await self._dispatch_safely(bridge_event.event, bridge_event.payload)
                    if bridge_event.ack_id:
                        await self._ack(bridge_event.ack_id)

                    if (
                        bridge_event.event is TransportEvent.CONNECTION_UPDATE
                        and bridge_event.payload.connection == "close"
                    ):
                        closed = True
                        break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc)
            logger.warning(
                "Bridge event stream failed",
                extra={"context": {"tenant_id": self.tenant_id, "error": error}},
            )

        if not closed and not self._closing:
            await self._dispatch_safely(
                TransportEvent.CONNECTION_UPDATE,
                ConnectionUpdate(
                    connection="close",
                    status_code=DisconnectReason.CONNECTION_LOST,
                    error=error or "event stream ended",
                ),
            )

    async def _dispatch_safely(self, event: TransportEvent, payload: Any) -> None:
        try:
            await self.dispatch(event, payload)
        except Exception:
            logger.exception(f"Handler for {event.value} failed: tenant_id={self.tenant_id}")

    async def _ack(self, ack_id: str) -> None:
        try:
            await self._post(f"/events/{quote(str(ack_id), safe='')}/ack", {})
        except TransportError as exc:
            logger.warning(f"Bridge ack failed: tenant_id={self.tenant_id}, ack_id={ack_id}, error={exc}")


class BridgeTransport(Transport):
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        connect_timeout_ms: int = 60000,
        browser: Sequence[str] = ("Ubuntu", "Chrome", "20.0.04"),
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.connect_timeout_ms = connect_timeout_ms
        self.browser = tuple(browser)
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(30.0, connect=connect_timeout_ms / 1000),
        )

    def create_connection(self, tenant_id: str, credentials: CredentialBundle) -> BridgeConnection:
        if not tenant_id or not tenant_id.strip():
            raise TransportError("tenant_id is required")
        return BridgeConnection(
            self._client,
            tenant_id,
            credentials,
            connect_timeout_ms=self.connect_timeout_ms,
            browser=self.browser,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
