"""Persistence for session rows, tenant mirrors and message templates.

Writes are best-effort mirrors of the in-memory registry: every write logs and swallows
its own failure so a slow or broken database never blocks a state transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.logging_config import get_logger
from app.models import MessageTemplate, Tenant, WhatsAppSession
from app.services.auth_state import CredentialBundle

logger = get_logger("session_store")


@dataclass(frozen=True)
class PersistedSession:
    status: str
    qr: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class TenantProfile:
    name: str
    category: str
    description: str


class SessionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_auth_state(self, tenant_id: str) -> CredentialBundle:
        """Load the tenant's credential bundle, creating the session row on first use."""
        try:
            async with self.session_factory() as db:
                row = (
                    await db.execute(select(WhatsAppSession).where(WhatsAppSession.tenant_id == tenant_id))
                ).scalars().first()
                if row is None:
                    db.add(WhatsAppSession(tenant_id=tenant_id, status="disconnected"))
                    await db.commit()
                    return CredentialBundle.empty()
                return CredentialBundle.from_json(row.auth_state)
        except Exception as exc:
            logger.error(
                "Failed to load auth state, starting with empty credentials",
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )
            return CredentialBundle.empty()

    async def save_auth_state(self, tenant_id: str, bundle: CredentialBundle) -> None:
        await self.update_session(tenant_id, auth_state=bundle.to_json())

    async def update_session(self, tenant_id: str, **fields: Any) -> None:
        """Upsert the whatsapp_sessions row; ``last_seen_at`` is always refreshed."""
        values = {**fields, "last_seen_at": datetime.now(timezone.utc)}
        stmt = (
            insert(WhatsAppSession)
            .values(tenant_id=tenant_id, **values)
            .on_conflict_do_update(index_elements=["tenant_id"], set_=values)
        )
        try:
            async with self.session_factory() as db:
                await db.execute(stmt)
                await db.commit()
        except Exception as exc:
            logger.error(
                "Failed to persist session row",
                extra={"context": {"tenant_id": tenant_id, "fields": sorted(fields), "error": str(exc)}},
            )

    async def mark_tenant_status(self, tenant_id: str, *, connected: bool, phone: str | None = None) -> None:
        values: dict[str, Any] = {
            "wa_connected": connected,
            "wa_last_connected_at": datetime.now(timezone.utc),
        }
        if phone:
            values["wa_phone"] = phone
        if connected:
            values["last_error"] = None
        try:
            async with self.session_factory() as db:
                await db.execute(update(Tenant).where(Tenant.id == tenant_id).values(**values))
                await db.commit()
        except Exception as exc:
            logger.error(
                "Failed to update tenant mirror",
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )

    async def get_session(self, tenant_id: str) -> PersistedSession | None:
        async with self.session_factory() as db:
            row = (
                await db.execute(select(WhatsAppSession).where(WhatsAppSession.tenant_id == tenant_id))
            ).scalars().first()
        if row is None:
            return None
        return PersistedSession(status=row.status, qr=row.qr_data, phone=row.phone_number)

    async def get_tenant_profile(self, tenant_id: str) -> TenantProfile | None:
        async with self.session_factory() as db:
            tenant = (await db.execute(select(Tenant).where(Tenant.id == tenant_id))).scalars().first()
        if tenant is None:
            return None
        return TenantProfile(
            name=tenant.name or "",
            category=tenant.business_category or "",
            description=tenant.description or "",
        )

    async def find_active_template(self, tenant_id: str, event: str) -> str | None:
        async with self.session_factory() as db:
            template = (
                await db.execute(
                    select(MessageTemplate)
                    .where(
                        MessageTemplate.tenant_id == tenant_id,
                        MessageTemplate.event == event,
                        MessageTemplate.is_active.is_(True),
                    )
                    .order_by(MessageTemplate.created_at)
                    .limit(1)
                )
            ).scalars().first()
        return template.body if template else None
