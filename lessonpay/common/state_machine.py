"""Payment attempt state machine transitions enforced by the flow controller."""

INITIATED = "INITIATED"
AWAITING_GATEWAY_RESULT = "AWAITING_GATEWAY_RESULT"
AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
GRANTED = "GRANTED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INITIATED: {AWAITING_GATEWAY_RESULT, FAILED},
    AWAITING_GATEWAY_RESULT: {AWAITING_VERIFICATION, CANCELLED, FAILED},
    AWAITING_VERIFICATION: {GRANTED, FAILED},
    GRANTED: set(),
    FAILED: set(),
    CANCELLED: set(),
}

TERMINAL_STATES = frozenset({GRANTED, FAILED, CANCELLED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
