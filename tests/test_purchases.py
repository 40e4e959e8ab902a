"""Purchase state machine driven by payment notifications."""

import logging

import pytest
from sqlalchemy import update

from creditflow.common.errors import NotFoundError, ValidationError
from creditflow.services.ledger import schemas
from creditflow.services.purchases import service as purchase_service
from creditflow.services.purchases.models import Purchase


def test_approval_credits_the_account(services, transactions):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)

    outcome = services.purchases.handle_payment_status(purchase.id, "approved", "pay-1")

    stored = services.purchases.get_purchase(purchase.id)
    assert outcome == schemas.APPLIED
    assert stored.status == "approved"
    assert stored.provider_payment_id == "pay-1"
    assert stored.applied_at is not None
    assert services.ledger.get_balance("acc-1") == 50
    assert len(transactions("acc-1", "purchase")) == 1


def test_replayed_approval_is_short_circuited(services, transactions):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)
    services.purchases.handle_payment_status(purchase.id, "approved", "pay-1")

    outcome = services.purchases.handle_payment_status(purchase.id, "approved", "pay-1")

    assert outcome == schemas.ALREADY_APPLIED
    assert services.ledger.get_balance("acc-1") == 50
    assert len(transactions("acc-1", "purchase")) == 1


def test_rejection_is_terminal_and_never_credits(services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)

    assert services.purchases.handle_payment_status(purchase.id, "rejected", "pay-1") == purchase_service.REJECTED
    assert (
        services.purchases.handle_payment_status(purchase.id, "approved", "pay-1")
        == purchase_service.STATUS_CONFLICT
    )
    assert services.purchases.get_purchase(purchase.id).status == "rejected"
    assert services.ledger.get_balance("acc-1") == 0


def test_intermediate_status_is_ignored(services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)

    assert services.purchases.handle_payment_status(purchase.id, None, "pay-1") == purchase_service.STATUS_IGNORED
    assert services.purchases.get_purchase(purchase.id).status == "pending"


def test_unknown_purchase_is_reported_not_raised(services):
    assert services.purchases.handle_payment_status("missing", "approved", "pay-1") == purchase_service.UNKNOWN_PURCHASE


def test_create_purchase_validates_input(services):
    services.ledger.open_account("acc-1")

    with pytest.raises(NotFoundError):
        services.purchases.create_purchase("nobody", 10)
    with pytest.raises(ValidationError):
        services.purchases.create_purchase("acc-1", 0)


def test_unapplied_sweep_heals_crash_between_transition_and_credit(services, session_factory):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 30)
    with session_factory() as db:
        db.execute(update(Purchase).where(Purchase.id == purchase.id).values(status="approved"))
        db.commit()

    assert services.purchases.apply_unapplied() == [purchase.id]
    assert services.purchases.apply_unapplied() == []
    assert services.ledger.get_balance("acc-1") == 30


def test_transition_log_names_the_previous_status(services, caplog):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 5)

    with caplog.at_level(logging.INFO, logger="creditflow"):
        services.purchases.handle_payment_status(purchase.id, "approved", "pay-1")

    transitions = [r.getMessage() for r in caplog.records if r.getMessage().startswith("purchase_transition")]
    assert transitions == [f"purchase_transition purchase_id={purchase.id} from=pending to=approved"]
