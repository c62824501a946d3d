from enum import Enum


class SessionStatus(str, Enum):
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


LIVE_STATUSES = frozenset({SessionStatus.CONNECTING, SessionStatus.AWAITING_SCAN, SessionStatus.CONNECTED})

# A refreshed pairing challenge keeps the session in awaiting_scan.
VALID_TRANSITIONS = {
    SessionStatus.DISCONNECTED: [SessionStatus.CONNECTING],
    SessionStatus.CONNECTING: [
        SessionStatus.AWAITING_SCAN,
        SessionStatus.CONNECTED,
        SessionStatus.DISCONNECTED,
    ],
    SessionStatus.AWAITING_SCAN: [
        SessionStatus.AWAITING_SCAN,
        SessionStatus.CONNECTING,
        SessionStatus.CONNECTED,
        SessionStatus.DISCONNECTED,
    ],
    SessionStatus.CONNECTED: [SessionStatus.CONNECTING, SessionStatus.DISCONNECTED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionStatus, to_state: SessionStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def is_live(status: SessionStatus) -> bool:
    return status in LIVE_STATUSES


def can_transition(from_state: SessionStatus, to_state: SessionStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionStatus, to_state: SessionStatus) -> SessionStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def start_connecting(current_state: SessionStatus) -> SessionStatus:
    """Open (or reopen) the transport connection."""
    return transition(current_state, SessionStatus.CONNECTING)


def challenge_received(current_state: SessionStatus) -> SessionStatus:
    """Transport asked for a QR scan."""
    return transition(current_state, SessionStatus.AWAITING_SCAN)


def connection_opened(current_state: SessionStatus) -> SessionStatus:
    """Transport reported a successful open."""
    return transition(current_state, SessionStatus.CONNECTED)


def connection_closed(current_state: SessionStatus) -> SessionStatus:
    """Connection is gone, either logged out or replaced by a reconnect."""
    return transition(current_state, SessionStatus.DISCONNECTED)
