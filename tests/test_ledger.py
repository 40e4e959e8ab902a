"""Credit ledger: exactly-once apply, fail-closed consume, idempotent refund."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import update

from creditflow.common.errors import NotFoundError, ValidationError
from creditflow.services.generations.models import Generation
from creditflow.services.ledger import schemas
from creditflow.services.purchases.models import Purchase


def _approved_purchase(services, session_factory, account_id: str, credits: int) -> str:
    purchase = services.purchases.create_purchase(account_id, credits)
    with session_factory() as db:
        db.execute(update(Purchase).where(Purchase.id == purchase.id).values(status="approved"))
        db.commit()
    return purchase.id


def test_apply_purchase_credits_exactly_once(services, session_factory, transactions):
    services.ledger.open_account("acc-1")
    purchase_id = _approved_purchase(services, session_factory, "acc-1", 50)

    results = [services.ledger.apply_purchase(purchase_id, "acc-1", 50) for _ in range(5)]

    assert [r.outcome for r in results] == [schemas.APPLIED] + [schemas.ALREADY_APPLIED] * 4
    assert all(r.new_balance == 50 for r in results)
    assert services.ledger.get_balance("acc-1") == 50
    assert len(transactions("acc-1", "purchase")) == 1
    assert services.purchases.get_purchase(purchase_id).applied_at is not None


def test_apply_purchase_requires_approved_status(services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 10)

    result = services.ledger.apply_purchase(purchase.id, "acc-1", 10)

    assert result.outcome == schemas.NOT_APPROVED
    assert services.ledger.get_balance("acc-1") == 0


def test_apply_purchase_unknown_purchase(services):
    services.ledger.open_account("acc-1")

    assert services.ledger.apply_purchase("missing", "acc-1", 10).outcome == schemas.NOT_FOUND


def test_apply_purchase_rejects_mismatched_amount(services, session_factory):
    services.ledger.open_account("acc-1")
    purchase_id = _approved_purchase(services, session_factory, "acc-1", 10)

    with pytest.raises(ValidationError):
        services.ledger.apply_purchase(purchase_id, "acc-1", 100)
    assert services.ledger.get_balance("acc-1") == 0


def test_consume_never_drives_balance_negative(services, fund):
    fund("acc-1", 5)
    generations = [services.generations.create_generation("acc-1", credits=2) for _ in range(3)]

    outcomes = [services.ledger.consume_credits("acc-1", g.id, 2).outcome for g in generations]

    assert outcomes == [schemas.CONSUMED, schemas.CONSUMED, schemas.INSUFFICIENT_BALANCE]
    assert services.ledger.get_balance("acc-1") == 1
    assert services.generations.get_generation(generations[2].id).credits_used == 0
    assert services.ledger.balance_mismatches() == []


def test_consume_does_not_reserve_twice_for_one_generation(services, fund, transactions):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=3)

    first = services.ledger.consume_credits("acc-1", generation.id, 3)
    second = services.ledger.consume_credits("acc-1", generation.id, 3)

    assert first.outcome == schemas.CONSUMED
    assert second.outcome == schemas.ALREADY_RESERVED
    assert services.ledger.get_balance("acc-1") == 7
    assert len(transactions("acc-1", "consumption")) == 1


def test_consume_rejects_non_positive_amount(services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1")

    with pytest.raises(ValidationError):
        services.ledger.consume_credits("acc-1", generation.id, 0)


def test_consume_for_someone_elses_generation_is_not_found(services, fund):
    fund("acc-1", 10)
    fund("acc-2", 10)
    generation = services.generations.create_generation("acc-2")

    result = services.ledger.consume_credits("acc-1", generation.id, 1)

    assert result.outcome == schemas.NOT_FOUND
    assert services.ledger.get_balance("acc-1") == 10


def test_refund_is_idempotent(services, fund, transactions):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=2)
    services.ledger.consume_credits("acc-1", generation.id, 2)

    first = services.ledger.refund_for_failure(generation.id)
    second = services.ledger.refund_for_failure(generation.id)

    assert first.outcome == schemas.REFUNDED
    assert first.new_balance == 10
    assert second.outcome == schemas.ALREADY_REFUNDED
    assert second.new_balance == 10
    assert len(transactions("acc-1", "refund")) == 1
    assert services.generations.get_generation(generation.id).credits_used == 0


def test_refund_without_reservation_is_already_refunded(services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1")

    assert services.ledger.refund_for_failure(generation.id).outcome == schemas.ALREADY_REFUNDED
    assert services.ledger.refund_for_failure("missing").outcome == schemas.NOT_FOUND


def test_refund_goes_to_the_account_that_paid(services, fund, session_factory):
    fund("acc-a", 10)
    services.ledger.open_account("acc-b")
    generation = services.generations.create_generation("acc-a", credits=4)
    services.ledger.consume_credits("acc-a", generation.id, 4)
    with session_factory() as db:
        db.execute(update(Generation).where(Generation.id == generation.id).values(account_id="acc-b"))
        db.commit()

    result = services.ledger.refund_for_failure(generation.id)

    assert result.account_id == "acc-a"
    assert services.ledger.get_balance("acc-a") == 10
    assert services.ledger.get_balance("acc-b") == 0


def test_balance_equals_sum_of_committed_transactions(services, fund, transactions):
    fund("acc-1", 20)
    fund("acc-1", 5)
    keep = services.generations.create_generation("acc-1", credits=3)
    refunded = services.generations.create_generation("acc-1", credits=4)
    services.ledger.consume_credits("acc-1", keep.id, 3)
    services.ledger.consume_credits("acc-1", refunded.id, 4)
    services.ledger.refund_for_failure(refunded.id)

    balance = services.ledger.get_balance("acc-1")

    assert balance == 22
    assert balance == sum(txn.amount for txn in transactions("acc-1"))
    assert services.ledger.balance_mismatches() == []


def test_open_account_is_idempotent_and_balance_requires_account(services, fund):
    fund("acc-1", 3)

    assert services.ledger.open_account("acc-1") == 3
    with pytest.raises(NotFoundError):
        services.ledger.get_balance("nobody")


def _in_parallel(fn, items) -> list:
    with ThreadPoolExecutor(max_workers=8) as pool:
        return list(pool.map(fn, items))


def test_concurrent_apply_purchase_credits_once(services, session_factory, transactions):
    services.ledger.open_account("acc-1")
    purchase_id = _approved_purchase(services, session_factory, "acc-1", 50)

    results = _in_parallel(lambda _: services.ledger.apply_purchase(purchase_id, "acc-1", 50), range(16))

    assert sorted(r.outcome for r in results) == [schemas.ALREADY_APPLIED] * 15 + [schemas.APPLIED]
    assert services.ledger.get_balance("acc-1") == 50
    assert len(transactions("acc-1", "purchase")) == 1


def test_concurrent_consume_never_overdraws(services, fund, transactions):
    fund("acc-1", 5)
    generations = [services.generations.create_generation("acc-1", credits=2) for _ in range(8)]

    results = _in_parallel(lambda g: services.ledger.consume_credits("acc-1", g.id, 2), generations)

    assert sorted(r.outcome for r in results) == [schemas.CONSUMED] * 2 + [schemas.INSUFFICIENT_BALANCE] * 6
    assert services.ledger.get_balance("acc-1") == 1
    assert len(transactions("acc-1", "consumption")) == 2
    assert services.ledger.balance_mismatches() == []


def test_concurrent_consume_of_one_generation_debits_once(services, fund, transactions):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=3)

    results = _in_parallel(lambda _: services.ledger.consume_credits("acc-1", generation.id, 3), range(8))

    assert sorted(r.outcome for r in results) == [schemas.ALREADY_RESERVED] * 7 + [schemas.CONSUMED]
    assert services.ledger.get_balance("acc-1") == 7
    assert len(transactions("acc-1", "consumption")) == 1


def test_concurrent_refunds_return_credits_once(services, fund, transactions):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=4)
    services.ledger.consume_credits("acc-1", generation.id, 4)

    results = _in_parallel(lambda _: services.ledger.refund_for_failure(generation.id), range(8))

    assert sorted(r.outcome for r in results) == [schemas.ALREADY_REFUNDED] * 7 + [schemas.REFUNDED]
    assert services.ledger.get_balance("acc-1") == 10
    assert len(transactions("acc-1", "refund")) == 1
