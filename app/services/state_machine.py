from enum import Enum


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    QR = "qr"
    READY = "ready"
    DISCONNECTED = "disconnected"


# auth_failure is a disconnect reason, not a status
AUTH_FAILURE = "auth_failure"

VALID_TRANSITIONS = {
    SessionStatus.INITIALIZING: [SessionStatus.QR, SessionStatus.READY, SessionStatus.DISCONNECTED],
    SessionStatus.QR: [SessionStatus.QR, SessionStatus.READY, SessionStatus.DISCONNECTED],
    SessionStatus.READY: [SessionStatus.DISCONNECTED],
    SessionStatus.DISCONNECTED: [SessionStatus.INITIALIZING],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionStatus, to_state: SessionStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SessionStatus, to_state: SessionStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionStatus, to_state: SessionStatus) -> SessionStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def start(current_state: SessionStatus) -> SessionStatus:
    """Begin (re)initializing a disconnected session."""
    return transition(current_state, SessionStatus.INITIALIZING)


def show_qr(current_state: SessionStatus) -> SessionStatus:
    """Gateway produced a QR code that must be scanned."""
    return transition(current_state, SessionStatus.QR)


def mark_ready(current_state: SessionStatus) -> SessionStatus:
    """Linked device is authenticated and ready to send."""
    return transition(current_state, SessionStatus.READY)


def disconnect(current_state: SessionStatus) -> SessionStatus:
    """Session dropped. Always accepted, including repeated disconnects."""
    if current_state == SessionStatus.DISCONNECTED:
        return current_state
    return transition(current_state, SessionStatus.DISCONNECTED)


def fold_reason(reason: str | None) -> str:
    """Normalize a disconnect reason reported by the gateway."""
    if not reason:
        return "unknown"
    return str(reason).strip() or "unknown"
