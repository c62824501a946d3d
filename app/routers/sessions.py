"""Control surface for per-tenant WhatsApp sessions."""

from fastapi import APIRouter, Depends, HTTPException, status

from app.config import settings
from app.dependencies import get_session_manager
from app.logging_config import get_logger
from app.schemas.session import (
    ConnectResponse,
    DisconnectResponse,
    SendTemplateRequest,
    SendTemplateResponse,
    SessionResponse,
)
from app.services.outbound_service import send_template
from app.services.session_manager import SessionCreationError, SessionManager

logger = get_logger("routers.sessions")

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _require_tenant_id(tenant_id: str) -> str:
    tenant_id = (tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tenantId is required")
    return tenant_id


@router.get("/{tenant_id}", response_model=SessionResponse)
async def get_session(tenant_id: str, manager: SessionManager = Depends(get_session_manager)):
    """Current status without creating a session."""
    tenant_id = _require_tenant_id(tenant_id)
    info = await manager.get_session_info(tenant_id)
    return SessionResponse(tenant_id=tenant_id, status=info.status.value, qr=info.qr, phone=info.phone)


@router.post("/{tenant_id}/connect", response_model=ConnectResponse)
async def connect_session(tenant_id: str, manager: SessionManager = Depends(get_session_manager)):
    tenant_id = _require_tenant_id(tenant_id)
    try:
        info = await manager.ensure_session(tenant_id)
    except SessionCreationError as exc:
        logger.error(f"Connect failed: tenant_id={tenant_id}, error={exc.reason}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason)
    return ConnectResponse(status=info.status.value, qr=info.qr)


@router.post("/{tenant_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_session(tenant_id: str, manager: SessionManager = Depends(get_session_manager)):
    tenant_id = _require_tenant_id(tenant_id)
    await manager.disconnect(tenant_id)
    return DisconnectResponse()


@router.post("/{tenant_id}/send-template", response_model=SendTemplateResponse)
async def send_template_message(
    tenant_id: str,
    payload: SendTemplateRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Push a rendered template (e.g. booking_confirmed) to a customer."""
    tenant_id = _require_tenant_id(tenant_id)
    result = await send_template(
        manager,
        tenant_id,
        event=payload.event,
        phone=payload.phone,
        variables=payload.variables,
        suffix=settings.messaging_suffix,
    )
    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.error)
    return SendTemplateResponse(to=result.value["to"], message=result.value["message"])
