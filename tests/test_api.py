"""HTTP surface of the webhook and ledger apps."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from creditflow.common.config import settings
from creditflow.common.signature import build_signature_header
from creditflow.services.ledger import main as ledger_main
from creditflow.services.webhooks import main as webhooks_main

from conftest import API_HEADERS
from test_reconciliation import _insert_consumption


class _Unlimited:
    def check(self, client_key: str) -> None:
        return None


@pytest.fixture
def webhook_client(services):
    webhooks_main.app.dependency_overrides[webhooks_main.get_services] = lambda: services
    yield TestClient(webhooks_main.app)
    webhooks_main.app.dependency_overrides.clear()


@pytest.fixture
def ledger_client(services):
    ledger_main.app.dependency_overrides[ledger_main.get_services] = lambda: services
    ledger_main.app.dependency_overrides[ledger_main.get_limiter] = lambda: _Unlimited()
    yield TestClient(ledger_main.app)
    ledger_main.app.dependency_overrides.clear()


def _signed(body: dict, secret: str, timestamp: int | None = None) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode("utf-8")
    return raw, {"x-signature": build_signature_header(raw, secret.encode("utf-8"), timestamp)}


def test_payment_webhook_applies_purchase_once(webhook_client, services):
    services.ledger.open_account("acc-1")
    purchase = services.purchases.create_purchase("acc-1", 50)
    body = {
        "id": "n-1",
        "type": "payment",
        "data": {"id": "p-1", "status": "approved", "external_reference": purchase.id},
    }
    raw, headers = _signed(body, "payment-secret")

    first = webhook_client.post("/webhooks/payments", content=raw, headers=headers)
    second = webhook_client.post("/webhooks/payments", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert services.ledger.get_balance("acc-1") == 50


def test_bad_signature_is_rejected(webhook_client, services):
    body = {"id": "task-1", "state": "failed"}
    raw, headers = _signed(body, "wrong-secret")

    resp = webhook_client.post("/webhooks/generations", content=raw, headers=headers)

    assert resp.status_code == 401
    assert services.event_log.record("generations", "task-1:failed", body).is_new is True


def test_stale_signature_is_rejected(webhook_client):
    raw, headers = _signed({"id": "task-1", "state": "failed"}, "generation-secret", int(time.time()) - 3600)

    assert webhook_client.post("/webhooks/generations", content=raw, headers=headers).status_code == 401


def test_missing_signature_is_rejected(webhook_client):
    resp = webhook_client.post("/webhooks/generations", content=b'{"id": "t", "state": "failed"}')

    assert resp.status_code == 401


def test_malformed_payloads_are_rejected(webhook_client):
    raw = b"{not json"
    headers = {"x-signature": build_signature_header(raw, b"generation-secret")}
    assert webhook_client.post("/webhooks/generations", content=raw, headers=headers).status_code == 400

    raw, headers = _signed({"state": "success"}, "generation-secret")
    assert webhook_client.post("/webhooks/generations", content=raw, headers=headers).status_code == 400


def test_unknown_task_is_acknowledged(webhook_client):
    body = {"id": "ghost", "state": "success", "creations": [{"id": "c", "url": "https://cdn.example/v.mp4"}]}
    raw, headers = _signed(body, "generation-secret")

    resp = webhook_client.post("/webhooks/generations", content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "not_found"


def test_unconfigured_secret_passes_through_outside_production(webhook_client, monkeypatch):
    monkeypatch.setattr(settings, "generation_webhook_secret", None)

    resp = webhook_client.post("/webhooks/generations", content=b'{"id": "t", "state": "queueing"}')

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


def test_unconfigured_secret_fails_closed_in_production(webhook_client, monkeypatch):
    monkeypatch.setattr(settings, "generation_webhook_secret", None)
    monkeypatch.setattr(settings, "environment", "production")

    resp = webhook_client.post("/webhooks/generations", content=b'{"id": "t", "state": "queueing"}')

    assert resp.status_code == 401


def test_ledger_api_requires_api_key(ledger_client):
    assert ledger_client.get("/accounts/acc-1/balance").status_code == 401


def test_balance_query(ledger_client, fund):
    fund("acc-1", 7)

    assert ledger_client.get("/accounts/acc-1/balance", headers=API_HEADERS).json() == {"balance": 7}
    assert ledger_client.get("/accounts/nobody/balance", headers=API_HEADERS).status_code == 404


def test_checkout_and_transactions_over_http(ledger_client, services):
    ledger_client.post("/accounts", json={"account_id": "acc-1"}, headers=API_HEADERS)

    created = ledger_client.post("/purchases", json={"account_id": "acc-1", "amount_credits": 20}, headers=API_HEADERS)
    purchase_id = created.json()["purchase_id"]
    services.purchases.handle_payment_status(purchase_id, "approved", "pay-1")
    fetched = ledger_client.get(f"/purchases/{purchase_id}", headers=API_HEADERS).json()
    history = ledger_client.get("/accounts/acc-1/transactions", headers=API_HEADERS).json()

    assert created.json()["status"] == "pending"
    assert fetched["status"] == "approved"
    assert fetched["applied_at"] is not None
    assert [(t["kind"], t["amount"], t["related_purchase_id"]) for t in history] == [("purchase", 20, purchase_id)]
    assert ledger_client.get("/purchases/missing", headers=API_HEADERS).status_code == 404
    unknown = ledger_client.post("/purchases", json={"account_id": "nobody", "amount_credits": 5}, headers=API_HEADERS)
    assert unknown.status_code == 404


def test_generation_lifecycle_over_http(ledger_client, fund):
    ledger_client.post("/accounts", json={"account_id": "acc-1"}, headers=API_HEADERS)
    fund("acc-1", 3)

    created = ledger_client.post("/generations", json={"account_id": "acc-1", "credits": 2}, headers=API_HEADERS)
    generation_id = created.json()["generation_id"]
    started = ledger_client.post(f"/generations/{generation_id}/start", headers=API_HEADERS)
    task = ledger_client.post(
        f"/generations/{generation_id}/task", json={"provider_task_id": "task-1"}, headers=API_HEADERS
    )

    assert started.status_code == 200
    assert started.json()["newBalance"] == 1
    assert task.json()["status"] == "processing"

    second = ledger_client.post("/generations", json={"account_id": "acc-1", "credits": 2}, headers=API_HEADERS)
    insufficient = ledger_client.post(f"/generations/{second.json()['generation_id']}/start", headers=API_HEADERS)
    assert insufficient.status_code == 402


def test_refund_endpoint_is_redundant_safe(ledger_client, services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=2)
    services.generations.start(generation.id)

    first = ledger_client.post("/credits/refund", json={"generation_id": generation.id}, headers=API_HEADERS)
    second = ledger_client.post("/credits/refund", json={"generation_id": generation.id}, headers=API_HEADERS)
    missing = ledger_client.post("/credits/refund", json={"generation_id": "nope"}, headers=API_HEADERS)

    assert first.json() == {"success": True, "outcome": "refunded", "newBalance": 10}
    assert second.json() == {"success": True, "outcome": "already_refunded", "newBalance": 10}
    assert missing.status_code == 404


def test_retry_command(ledger_client, services, fund):
    fund("acc-1", 10)
    generation = services.generations.create_generation("acc-1", credits=2)

    conflict = ledger_client.post("/generations/retry", json={"generation_id": generation.id}, headers=API_HEADERS)
    services.generations.start(generation.id)
    retried = ledger_client.post("/generations/retry", json={"generation_id": generation.id}, headers=API_HEADERS)

    assert conflict.status_code == 409
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"
    assert retried.json()["retry_count"] == 1


def test_reconciliation_and_review_endpoints(ledger_client, services, fund, session_factory):
    fund("acc-1", 10)
    txn_id = _insert_consumption(session_factory, "acc-1", "deleted-generation")

    report = ledger_client.post("/reconciliation/runs", headers=API_HEADERS).json()
    reviews = ledger_client.get("/ops/reviews", headers=API_HEADERS).json()
    resolved = ledger_client.post(
        f"/ops/reviews/{reviews[0]['review_id']}/resolve",
        json={"resolved_by": "ops@example.com"},
        headers=API_HEADERS,
    )
    again = ledger_client.post(
        f"/ops/reviews/{reviews[0]['review_id']}/resolve",
        json={"resolved_by": "ops@example.com"},
        headers=API_HEADERS,
    )

    assert report["unresolved_ids"] == [txn_id]
    assert resolved.json()["status"] == "RESOLVED"
    assert again.status_code == 409
    assert ledger_client.get("/reconciliation/balances", headers=API_HEADERS).json()[0]["account_id"] == "acc-1"


def test_probes(ledger_client, webhook_client):
    assert ledger_client.get("/health").json() == {"ok": True}
    assert webhook_client.get("/metrics").status_code == 200
