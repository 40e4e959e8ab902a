"""Unit tests for purchase and generation state-machine guardrails."""

import pytest

from creditflow.common.errors import InvalidTransition
from creditflow.common.state_machine import GENERATION_TRANSITIONS, PURCHASE_TRANSITIONS, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition(PURCHASE_TRANSITIONS, "pending", "approved")
    validate_transition(GENERATION_TRANSITIONS, "processing", "failed")
    validate_transition(GENERATION_TRANSITIONS, "failed", "pending")


def test_invalid_transition():
    """Illegal transition must raise to protect ledger correctness."""

    with pytest.raises(InvalidTransition):
        validate_transition(PURCHASE_TRANSITIONS, "rejected", "approved")


@pytest.mark.parametrize(
    "current,new",
    [
        ("pending", "completed"),
        ("completed", "failed"),
        ("completed", "pending"),
        ("failed", "completed"),
    ],
)
def test_generation_terminal_states_are_guarded(current, new):
    with pytest.raises(InvalidTransition):
        validate_transition(GENERATION_TRANSITIONS, current, new)
