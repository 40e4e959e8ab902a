"""Event log dedup and dispatch of provider events to the state machines."""

import pytest

from creditflow.common.errors import PayloadError
from creditflow.services.webhooks import schemas
from creditflow.services.webhooks import service as webhook_service


def _payment(event_id, purchase_id: str, status: str = "approved") -> dict:
    return {
        "id": event_id,
        "type": "payment",
        "data": {"id": 987654, "status": status, "external_reference": purchase_id},
    }


def _generation(task_id: str, state: str, **extra) -> dict:
    body = {"id": task_id, "state": state}
    body.update(extra)
    return body


def test_event_log_detects_duplicates(services):
    log = services.event_log

    first = log.record("payments", "evt-1", {"id": "evt-1"})
    second = log.record("payments", "evt-1", {"id": "evt-1"})
    other_provider = log.record("generations", "evt-1", {"id": "evt-1"})

    assert first.is_new and not first.processed
    assert not second.is_new and not second.processed
    assert other_provider.is_new
    assert log.mark_processed("payments", "evt-1") is True
    assert log.mark_processed("payments", "evt-1") is False
    assert log.record("payments", "evt-1", {"id": "evt-1"}).processed is True


def test_duplicate_purchase_webhook_credits_once(services, transactions):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)
    body = _payment(1001, purchase.id)

    first = services.webhooks.handle_payment(body, signature_timestamp=1_760_000_000)
    second = services.webhooks.handle_payment(body, signature_timestamp=1_760_000_000)

    assert first.outcome == "applied"
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.outcome == webhook_service.ALREADY_PROCESSED
    assert services.ledger.get_balance("acc-1") == 50
    assert len(transactions("acc-1", "purchase")) == 1


def test_distinct_notifications_for_one_purchase_still_credit_once(services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)

    services.webhooks.handle_payment(_payment("n-1", purchase.id))
    ack = services.webhooks.handle_payment(_payment("n-2", purchase.id))

    assert ack.duplicate is False
    assert ack.outcome == "already_applied"
    assert services.ledger.get_balance("acc-1") == 50


def test_non_payment_topics_are_acknowledged_without_effect(services):
    ack = services.webhooks.handle_payment({"id": "mo-1", "type": "merchant_order", "data": {}})

    assert ack.outcome == webhook_service.IGNORED


def test_generation_failure_scenario(services, fund, transactions):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=2)
    services.generations.start(generation.id)
    services.generations.attach_task(generation.id, "task-42")
    assert services.ledger.get_balance("acc-1") == 8

    body = _generation("task-42", "failed", err_code="ProviderTimeout")
    first = services.webhooks.handle_generation(body)
    again = services.webhooks.handle_generation(body)

    assert first.outcome == "refunded"
    assert again.duplicate is True
    assert services.ledger.get_balance("acc-1") == 10
    assert services.generations.get_generation(generation.id).status == "failed"
    assert [txn.amount for txn in transactions("acc-1", "refund")] == [2]


def test_generation_success_and_progress_states(services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=1)
    services.generations.start(generation.id)
    services.generations.attach_task(generation.id, "task-7")

    progress = services.webhooks.handle_generation(_generation("task-7", "queueing"))
    done = services.webhooks.handle_generation(
        _generation(
            "task-7",
            "success",
            creations=[{"id": 55, "url": "https://cdn.example/v.mp4", "video": {"duration": 4, "fps": 24}}],
        )
    )

    stored = services.generations.get_generation(generation.id)
    assert progress.outcome == webhook_service.IGNORED
    assert done.outcome == "completed"
    assert stored.status == "completed"
    assert stored.provider_creation_id == "55"
    assert stored.video_duration == 4
    assert services.ledger.get_balance("acc-1") == 9


def test_unknown_task_is_acknowledged_not_retried(services):
    ack = services.webhooks.handle_generation(
        _generation("ghost", "success", creations=[{"id": "c", "url": "https://cdn.example/v.mp4"}])
    )

    assert ack.outcome == webhook_service.NOT_FOUND
    assert services.event_log.record("generations", "ghost:success", {}).processed is True


def test_conflicting_late_event_is_acknowledged(services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=1)
    services.generations.start(generation.id)
    services.generations.attach_task(generation.id, "task-9")
    services.webhooks.handle_generation(
        _generation("task-9", "success", creations=[{"id": "c", "url": "https://cdn.example/v.mp4"}])
    )

    ack = services.webhooks.handle_generation(_generation("task-9", "failed", error="late"))

    assert ack.outcome == webhook_service.CONFLICT
    assert services.ledger.get_balance("acc-1") == 9


def test_unprocessed_events_are_replayed(services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 20)
    body = _payment("n-9", purchase.id)
    services.event_log.record(schemas.PAYMENT_PROVIDER, "n-9", body)

    assert services.webhooks.replay_unprocessed(older_than_seconds=0) == 1
    assert services.webhooks.replay_unprocessed(older_than_seconds=0) == 0
    assert services.ledger.get_balance("acc-1") == 20


def test_parsing_rejects_shape_mismatch():
    with pytest.raises(PayloadError):
        schemas.parse_payment_event({"id": "x", "type": "payment", "data": {"status": "approved"}})
    with pytest.raises(PayloadError):
        schemas.parse_generation_event({"state": "success"})
    with pytest.raises(PayloadError):
        schemas.parse_generation_event({"id": "task", "state": "success", "creations": []})
    with pytest.raises(PayloadError):
        schemas.parse_generation_event(["not", "an", "object"])


def test_parsing_builds_tagged_variants():
    payment = schemas.parse_payment_event(_payment(12, "purchase-1", status="Approved"))
    failed = schemas.parse_generation_event(_generation(99, "failed", error="Inappropriate image"))

    assert isinstance(payment, schemas.PaymentNotification)
    assert payment.event_id == "12"
    assert payment.provider_payment_id == "987654"
    assert payment.target_status == "approved"
    assert isinstance(failed, schemas.GenerationFailed)
    assert failed.event_key == "99:failed"
    assert failed.error_code == "NSFW_CONTENT"
