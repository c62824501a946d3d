from app.services.result import ErrorCode, Result
from app.services.state_machine import (
    InvalidTransitionError,
    SessionStatus,
    can_transition,
    challenge_received,
    connection_closed,
    connection_opened,
    is_live,
    start_connecting,
    transition,
)
