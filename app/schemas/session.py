from typing import Any, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    ok: bool = True
    sessions: int


class SessionResponse(BaseModel):
    ok: bool = True
    tenant_id: str
    status: str
    qr: Optional[str] = None
    phone: Optional[str] = None


class ConnectResponse(BaseModel):
    ok: bool = True
    status: str
    qr: Optional[str] = None


class DisconnectResponse(BaseModel):
    ok: bool = True
    status: str = "disconnected"


class SendTemplateRequest(BaseModel):
    event: Optional[str] = None
    phone: Optional[str] = None
    variables: Optional[dict[str, Any]] = None


class SendTemplateResponse(BaseModel):
    ok: bool = True
    to: str
    message: str
