from app.schemas.inbound import InboundMessage, MessageContent, MessageKey
from app.schemas.session import (
    ConnectResponse,
    DisconnectResponse,
    HealthResponse,
    SendTemplateRequest,
    SendTemplateResponse,
    SessionResponse,
)

__all__ = [
    "InboundMessage",
    "MessageContent",
    "MessageKey",
    "ConnectResponse",
    "DisconnectResponse",
    "HealthResponse",
    "SendTemplateRequest",
    "SendTemplateResponse",
    "SessionResponse",
]
