"""Per-tenant WhatsApp session lifecycle.

The manager owns the registry of live sessions (at most one per tenant), reacts to the
transport's connection/credential/message events and mirrors every transition to the
store. The registry is authoritative; store writes are best-effort.
"""

from __future__ import annotations

import asyncio
import io
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import qrcode

from app.logging_config import TenantLoggerAdapter, get_logger
from app.services import alert_service
from app.services.auth_state import CredentialBundle
from app.services.message_service import extract_text, parse_upsert, skip_reason
from app.services.reply_service import ReplyEngine
from app.services.session_store import SessionStore
from app.services.state_machine import (
    InvalidTransitionError,
    SessionStatus,
    challenge_received,
    connection_closed,
    connection_opened,
    is_live,
    start_connecting,
)
from app.schemas.inbound import InboundMessage
from app.transport.base import (
    Connection,
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
    Transport,
    TransportEvent,
)

logger = get_logger("session_manager")

# Statuses written by older deployments.
LEGACY_STATUSES = {"qrcode": SessionStatus.AWAITING_SCAN}


class SessionCreationError(Exception):
    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Could not start session for tenant {tenant_id}: {reason}")


@dataclass(frozen=True)
class SessionInfo:
    tenant_id: str
    status: SessionStatus
    qr: Optional[str] = None
    phone: Optional[str] = None
    last_connected_at: Optional[datetime] = None


@dataclass
class TenantSession:
    tenant_id: str
    connection: Optional[Connection]
    credentials: CredentialBundle = field(default_factory=CredentialBundle.empty)
    status: SessionStatus = SessionStatus.CONNECTING
    pending_challenge: Optional[str] = None
    linked_phone: Optional[str] = None
    last_connected_at: Optional[datetime] = None

    def info(self) -> SessionInfo:
        return SessionInfo(
            tenant_id=self.tenant_id,
            status=self.status,
            qr=self.pending_challenge,
            phone=self.linked_phone,
            last_connected_at=self.last_connected_at,
        )


def phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """``"18095551234:12@s.whatsapp.net"`` -> ``"18095551234"``."""
    if not jid:
        return None
    raw = jid.split("@", 1)[0].split(":", 1)[0]
    return raw or None


def print_qr(data: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    sys.stdout.write(buffer.getvalue())
    sys.stdout.flush()


class SessionManager:
    def __init__(
        self,
        transport: Transport,
        store: SessionStore,
        reply_engine: ReplyEngine,
        *,
        print_qr_in_terminal: bool = False,
    ):
        self.transport = transport
        self.store = store
        self.reply_engine = reply_engine
        self.print_qr_in_terminal = print_qr_in_terminal
        self._sessions: dict[str, TenantSession] = {}
        self._creation_locks: dict[str, asyncio.Lock] = {}
        self._creation_pending: dict[str, int] = {}

    # --- registry ---------------------------------------------------------

    def session_count(self) -> int:
        return len(self._sessions)

    def get_live_session(self, tenant_id: str) -> Optional[TenantSession]:
        session = self._sessions.get(tenant_id)
        if session is not None and session.connection is not None and is_live(session.status):
            return session
        return None

    def is_connected(self, tenant_id: str) -> bool:
        session = self.get_live_session(tenant_id)
        return session is not None and session.status is SessionStatus.CONNECTED

    def _is_current(self, session: TenantSession) -> bool:
        return self._sessions.get(session.tenant_id) is session

    # --- public operations ------------------------------------------------

    async def ensure_session(self, tenant_id: str) -> SessionInfo:
        """Return the tenant's live session, creating one when there is none."""
        if not tenant_id:
            raise ValueError("tenant_id is required")

        existing = self.get_live_session(tenant_id)
        if existing is not None:
            return existing.info()

        lock = self._creation_locks.setdefault(tenant_id, asyncio.Lock())
        self._creation_pending[tenant_id] = self._creation_pending.get(tenant_id, 0) + 1
        try:
            async with lock:
                existing = self.get_live_session(tenant_id)
                if existing is not None:
                    return existing.info()
                return await self._create_session(tenant_id)
        finally:
            # Last holder or waiter out drops the lock.
            self._creation_pending[tenant_id] -= 1
            if not self._creation_pending[tenant_id]:
                del self._creation_pending[tenant_id]
                self._creation_locks.pop(tenant_id, None)

    async def get_session_info(self, tenant_id: str) -> SessionInfo:
        """In-memory state, else the last persisted row. Never connects."""
        session = self._sessions.get(tenant_id)
        if session is not None:
            return session.info()

        try:
            persisted = await self.store.get_session(tenant_id)
        except Exception as exc:
            logger.warning(f"Persisted session lookup failed: tenant_id={tenant_id}, error={exc}")
            persisted = None

        if persisted is None:
            return SessionInfo(tenant_id=tenant_id, status=SessionStatus.DISCONNECTED)

        status = LEGACY_STATUSES.get(persisted.status)
        if status is None:
            try:
                status = SessionStatus(persisted.status)
            except ValueError:
                status = SessionStatus.DISCONNECTED
        return SessionInfo(tenant_id=tenant_id, status=status, qr=persisted.qr, phone=persisted.phone)

    async def disconnect(self, tenant_id: str) -> None:
        """Log the tenant out and wipe its credentials. Never raises."""
        log = TenantLoggerAdapter(logger, {"tenant_id": tenant_id})
        session = self._sessions.pop(tenant_id, None)
        if session is not None and session.connection is not None:
            connection = session.connection
            self._leave(session)
            try:
                await connection.logout()
            except Exception as exc:
                log.warning("Logout failed, dropping session anyway", context={"error": str(exc)})
            try:
                await connection.close()
            except Exception as exc:
                log.warning("Closing connection failed", context={"error": str(exc)})

        await self.store.update_session(
            tenant_id,
            status=SessionStatus.DISCONNECTED.value,
            auth_state=None,
            qr_data=None,
            phone_number=None,
        )
        await self.store.mark_tenant_status(tenant_id, connected=False)
        log.info("Session disconnected")

    async def send_text(self, tenant_id: str, jid: str, text: str) -> None:
        session = self.get_live_session(tenant_id)
        if session is None or session.status is not SessionStatus.CONNECTED:
            raise RuntimeError(f"tenant {tenant_id} is not connected")
        await session.connection.send_text(jid, text)

    async def close_all(self) -> None:
        """Shutdown hook: stop every connection but keep credentials for the next start."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            connection = session.connection
            self._leave(session)
            if connection is None:
                continue
            try:
                await connection.close()
            except Exception as exc:
                logger.warning(f"Closing connection failed: tenant_id={session.tenant_id}, error={exc}")

    # --- creation ---------------------------------------------------------

    async def _create_session(self, tenant_id: str) -> SessionInfo:
        log = TenantLoggerAdapter(logger, {"tenant_id": tenant_id})
        log.info("Starting session")

        credentials = await self.store.load_auth_state(tenant_id)

        # Construction and registration happen with no await in between.
        try:
            connection = self.transport.create_connection(tenant_id, credentials)
        except Exception as exc:
            log.error("Transport refused to build a connection", context={"error": str(exc)})
            raise SessionCreationError(tenant_id, str(exc)) from exc

        session = TenantSession(
            tenant_id=tenant_id,
            connection=connection,
            credentials=credentials,
            status=start_connecting(SessionStatus.DISCONNECTED),
        )
        connection.on(TransportEvent.CONNECTION_UPDATE, partial(self._on_connection_update, session))
        connection.on(TransportEvent.CREDS_UPDATE, partial(self.on_credential_update, session))
        connection.on(TransportEvent.MESSAGES_UPSERT, partial(self.on_inbound_message, session))
        self._sessions[tenant_id] = session

        await self.store.update_session(
            tenant_id,
            status=SessionStatus.CONNECTING.value,
            qr_data=None,
            last_error=None,
        )

        try:
            await connection.start()
        except Exception as exc:
            log.error("Transport failed to start", context={"error": str(exc)})
            if self._is_current(session):
                del self._sessions[tenant_id]
            self._leave(session)
            await self.store.update_session(
                tenant_id,
                status=SessionStatus.DISCONNECTED.value,
                last_error=str(exc),
            )
            await self.store.mark_tenant_status(tenant_id, connected=False)
            raise SessionCreationError(tenant_id, str(exc)) from exc

        if not self._is_current(session):
            # disconnect() or close_all() ran while the transport was starting.
            log.warning("Session closed while starting")
            try:
                await connection.close()
            except Exception as exc:
                log.warning("Closing connection failed", context={"error": str(exc)})
            raise SessionCreationError(tenant_id, "session was closed while starting")

        return session.info()

    # --- transport events -------------------------------------------------

    async def _on_connection_update(self, session: TenantSession, update: ConnectionUpdate) -> None:
        if not self._is_current(session):
            logger.debug(f"Ignoring update from a replaced connection: tenant_id={session.tenant_id}")
            return

        logger.info(
            "Connection update",
            extra={
                "context": {
                    "tenant_id": session.tenant_id,
                    "connection": update.connection,
                    "qr": bool(update.qr),
                    "status_code": update.status_code,
                }
            },
        )

        if update.qr:
            await self._on_challenge(session, update.qr)

        if update.connection == "open":
            await self._on_open(session)
        elif update.connection == "close":
            await self._on_close(session, update)
        elif update.connection == "connecting" and session.status is SessionStatus.AWAITING_SCAN:
            session.status = start_connecting(session.status)
            session.pending_challenge = None
            await self.store.update_session(session.tenant_id, status=session.status.value, qr_data=None)

    async def _on_challenge(self, session: TenantSession, qr: str) -> None:
        try:
            session.status = challenge_received(session.status)
        except InvalidTransitionError as exc:
            logger.warning(f"Ignoring pairing challenge: tenant_id={session.tenant_id}, {exc}")
            return
        session.pending_challenge = qr
        if self.print_qr_in_terminal:
            print_qr(qr)
        await self.store.update_session(session.tenant_id, status=session.status.value, qr_data=qr)

    async def _on_open(self, session: TenantSession) -> None:
        try:
            session.status = connection_opened(session.status)
        except InvalidTransitionError as exc:
            logger.warning(f"Ignoring open event: tenant_id={session.tenant_id}, {exc}")
            return

        now = datetime.now(timezone.utc)
        session.pending_challenge = None
        session.linked_phone = phone_from_jid(session.connection.user_id if session.connection else None)
        session.last_connected_at = now

        await self.store.update_session(
            session.tenant_id,
            status=session.status.value,
            qr_data=None,
            phone_number=session.linked_phone,
            last_connected_at=now,
            last_error=None,
        )
        await self.store.mark_tenant_status(
            session.tenant_id,
            connected=True,
            phone=f"whatsapp:+{session.linked_phone}" if session.linked_phone else None,
        )
        logger.info(f"Session connected: tenant_id={session.tenant_id}, phone={session.linked_phone}")

    async def _on_close(self, session: TenantSession, update: ConnectionUpdate) -> None:
        if not self._is_current(session):
            return
        tenant_id = session.tenant_id
        should_reconnect = not update.is_logged_out
        logger.warning(
            "Connection closed",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "status_code": update.status_code,
                    "error": update.error,
                    "should_reconnect": should_reconnect,
                }
            },
        )

        del self._sessions[tenant_id]
        self._leave(session)

        if should_reconnect:
            # Immediate retry, no backoff.
            await self._reconnect(tenant_id)
            return

        logger.warning(f"Session logged out: tenant_id={tenant_id}")
        await self.store.update_session(
            tenant_id,
            status=SessionStatus.DISCONNECTED.value,
            auth_state=None,
            qr_data=None,
            phone_number=None,
            last_error=update.error,
        )
        await self.store.mark_tenant_status(tenant_id, connected=False)
        await alert_service.alert_warning("WhatsApp session logged out", {"tenant_id": tenant_id})

    async def _reconnect(self, tenant_id: str) -> None:
        logger.info(f"Reconnecting: tenant_id={tenant_id}")
        try:
            await self.ensure_session(tenant_id)
        except Exception as exc:
            logger.error(
                "Reconnection failed",
                exc_info=True,
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )
            await alert_service.alert_critical(
                "WhatsApp reconnection failed",
                {"tenant_id": tenant_id, "error": str(exc)},
            )

    async def on_credential_update(self, session: TenantSession, update: CredentialsUpdate) -> None:
        """Merge rotated key material and persist the whole bundle before returning."""
        if not self._is_current(session):
            return
        session.credentials.merge_creds(update.creds)
        session.credentials.merge_keys(update.keys)
        await self.store.save_auth_state(session.tenant_id, session.credentials)

    async def on_inbound_message(self, session: TenantSession, batch: MessagesUpsert) -> None:
        if not self._is_current(session):
            return
        try:
            messages = parse_upsert(batch.messages)
        except Exception:
            logger.exception(f"Failed to parse inbound batch: tenant_id={session.tenant_id}")
            return

        for message in messages:
            try:
                await self._handle_message(session, message)
            except Exception:
                logger.exception(f"Error processing inbound message: tenant_id={session.tenant_id}")

    async def _handle_message(self, session: TenantSession, message: InboundMessage) -> None:
        reason = skip_reason(message)
        if reason:
            logger.debug(f"Skipping inbound message: tenant_id={session.tenant_id}, reason={reason}")
            return

        text = extract_text(message.message)
        if not text:
            return

        remote_jid = message.key.remote_jid
        logger.info(
            "Inbound message",
            extra={"context": {"tenant_id": session.tenant_id, "from": remote_jid, "chars": len(text)}},
        )

        reply = await self.reply_engine.decide(session.tenant_id, text)
        if not reply:
            return
        if session.connection is None:
            logger.warning(f"Reply dropped, connection is gone: tenant_id={session.tenant_id}")
            return
        await session.connection.send_text(remote_jid, reply)

    # --- helpers ----------------------------------------------------------

    @staticmethod
    def _leave(session: TenantSession) -> None:
        if session.status is not SessionStatus.DISCONNECTED:
            session.status = connection_closed(session.status)
        session.connection = None
        session.pending_challenge = None
        session.linked_phone = None
