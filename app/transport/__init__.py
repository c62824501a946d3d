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
from app.transport.bridge import BridgeConnection, BridgeTransport

__all__ = [
    "BridgeConnection",
    "BridgeTransport",
    "Connection",
    "ConnectionUpdate",
    "CredentialsUpdate",
    "DisconnectReason",
    "MessagesUpsert",
    "Transport",
    "TransportError",
    "TransportEvent",
]
