import asyncio
from typing import Any, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from app.services.auth_state import CredentialBundle
from app.services.llm import LLMResponse
from app.services.reply_service import ReplyEngine
from app.services.session_manager import SessionManager
from app.services.session_store import PersistedSession, TenantProfile
from app.transport.base import (
    Connection,
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
    Transport,
    TransportError,
    TransportEvent,
)


class FakeConnection(Connection):
    """In-process connection; tests push events with the ``emit_*`` helpers."""

    def __init__(self, tenant_id: str, credentials: CredentialBundle, fail_start: bool = False):
        super().__init__(tenant_id)
        self.credentials = credentials
        self.fail_start = fail_start
        self.started = False
        self.logged_out = False
        self.closed = False
        self.sent: list[tuple[str, str]] = []
        self.fail_send = False

    async def start(self) -> None:
        # Yield so concurrent callers get a chance to interleave.
        await asyncio.sleep(0)
        if self.fail_start:
            raise TransportError("bridge unreachable")
        self.started = True

    async def send_text(self, jid: str, text: str) -> None:
        if self.fail_send:
            raise TransportError("socket closed")
        self.sent.append((jid, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    async def emit_qr(self, qr: str) -> None:
        await self.dispatch(TransportEvent.CONNECTION_UPDATE, ConnectionUpdate(qr=qr))

    async def emit_open(self, user_id: str = "18095551234:7@s.whatsapp.net") -> None:
        self.user_id = user_id
        await self.dispatch(TransportEvent.CONNECTION_UPDATE, ConnectionUpdate(connection="open"))

    async def emit_close(self, status_code: Optional[int], error: Optional[str] = None) -> None:
        await self.dispatch(
            TransportEvent.CONNECTION_UPDATE,
            ConnectionUpdate(connection="close", status_code=status_code, error=error),
        )

    async def emit_creds(self, creds: dict, keys: Optional[dict] = None) -> None:
        await self.dispatch(TransportEvent.CREDS_UPDATE, CredentialsUpdate(creds=creds, keys=keys or {}))

    async def emit_messages(self, messages: list[Any]) -> None:
        await self.dispatch(TransportEvent.MESSAGES_UPSERT, MessagesUpsert(messages=messages))


class FakeTransport(Transport):
    def __init__(self):
        self.connections: list[FakeConnection] = []
        self.fail_start = False
        self.refuse = False

    def create_connection(self, tenant_id: str, credentials: CredentialBundle) -> FakeConnection:
        if self.refuse:
            raise TransportError("transport refused")
        connection = FakeConnection(tenant_id, credentials, fail_start=self.fail_start)
        self.connections.append(connection)
        return connection

    def connections_for(self, tenant_id: str) -> list[FakeConnection]:
        return [c for c in self.connections if c.tenant_id == tenant_id]


class InMemoryStore:
    """Stands in for SessionStore; records every write."""

    def __init__(self):
        self.sessions: dict[str, dict[str, Any]] = {}
        self.session_updates: list[tuple[str, dict[str, Any]]] = []
        self.tenant_updates: list[tuple[str, dict[str, Any]]] = []
        self.auth_states: dict[str, dict[str, Any]] = {}
        self.templates: dict[tuple[str, str], str] = {}
        self.profiles: dict[str, TenantProfile] = {}

    async def load_auth_state(self, tenant_id: str) -> CredentialBundle:
        self.sessions.setdefault(tenant_id, {"status": "disconnected"})
        return CredentialBundle.from_json(self.auth_states.get(tenant_id))

    async def save_auth_state(self, tenant_id: str, bundle: CredentialBundle) -> None:
        await self.update_session(tenant_id, auth_state=bundle.to_json())

    async def update_session(self, tenant_id: str, **fields: Any) -> None:
        self.session_updates.append((tenant_id, fields))
        self.sessions.setdefault(tenant_id, {}).update(fields)
        if "auth_state" in fields:
            if fields["auth_state"] is None:
                self.auth_states.pop(tenant_id, None)
            else:
                self.auth_states[tenant_id] = fields["auth_state"]

    async def mark_tenant_status(self, tenant_id: str, *, connected: bool, phone: Optional[str] = None) -> None:
        self.tenant_updates.append((tenant_id, {"connected": connected, "phone": phone}))

    async def get_session(self, tenant_id: str) -> Optional[PersistedSession]:
        row = self.sessions.get(tenant_id)
        if row is None:
            return None
        return PersistedSession(status=row.get("status"), qr=row.get("qr_data"), phone=row.get("phone_number"))

    async def get_tenant_profile(self, tenant_id: str) -> Optional[TenantProfile]:
        return self.profiles.get(tenant_id)

    async def find_active_template(self, tenant_id: str, event: str) -> Optional[str]:
        return self.templates.get((tenant_id, event))


def make_llm(content: str = "Hola, ¿en qué te puedo ayudar?") -> Mock:
    llm = Mock()
    llm.generate = AsyncMock(return_value=LLMResponse(content=content, model="gpt-4o-mini"))
    return llm


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def llm():
    return make_llm()


@pytest.fixture
def manager(transport, store, llm):
    return SessionManager(transport, store, ReplyEngine(store, llm))


@pytest.fixture(autouse=True)
def silence_alerts(monkeypatch):
    """Alerts never leave the process during tests."""
    monkeypatch.setattr("app.services.alert_service.ALERT_BOT_TOKEN", None)
    monkeypatch.setattr("app.services.alert_service.ALERT_CHAT_ID", None)
