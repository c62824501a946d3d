"""Subscription interface to the messaging transport.

A :class:`Connection` is one tenant's live link. Handlers registered with :meth:`on`
are awaited one at a time in the order the transport emits events.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Optional

from app.services.auth_state import CredentialBundle


class TransportEvent(str, Enum):
    CONNECTION_UPDATE = "connection.update"
    CREDS_UPDATE = "creds.update"
    MESSAGES_UPSERT = "messages.upsert"


class DisconnectReason(IntEnum):
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class TransportError(Exception):
    pass


@dataclass
class ConnectionUpdate:
    connection: Optional[str] = None
    qr: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_logged_out(self) -> bool:
        return self.status_code == DisconnectReason.LOGGED_OUT


@dataclass
class CredentialsUpdate:
    creds: dict[str, Any] = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class MessagesUpsert:
    messages: list[Any] = field(default_factory=list)
    type: str = "notify"


EventHandler = Callable[[Any], Awaitable[None]]


class Connection(ABC):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self.user_id: Optional[str] = None
        self._handlers: dict[TransportEvent, list[EventHandler]] = defaultdict(list)

    def on(self, event: TransportEvent, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    async def dispatch(self, event: TransportEvent, payload: Any) -> None:
        for handler in list(self._handlers[event]):
            await handler(payload)

    @abstractmethod
    async def start(self) -> None:
        """Open the connection and begin delivering events."""

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> None:
        """Send a plain text message; raises TransportError on failure."""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device; the transport answers with a logged-out close."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering events without logging out."""


class Transport(ABC):
    @abstractmethod
    def create_connection(self, tenant_id: str, credentials: CredentialBundle) -> Connection:
        """Build (but do not start) a connection for ``tenant_id``."""

    async def aclose(self) -> None:
        return None
