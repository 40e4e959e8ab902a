"""Purchase and generation state machines enforced by their services."""

from creditflow.common.errors import InvalidTransition

PURCHASE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": set(),
    "rejected": set(),
}

GENERATION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "failed"},
    "completed": set(),
    # Operator retry resets a failed job; re-reservation happens on the next start.
    "failed": {"pending"},
}

PURCHASE_TERMINAL = frozenset({"approved", "rejected"})
GENERATION_TERMINAL = frozenset({"completed", "failed"})


def validate_transition(transitions: dict[str, set[str]], current: str, new: str) -> None:
    """Raise when a transition is not allowed by the given state machine."""

    if new not in transitions.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
