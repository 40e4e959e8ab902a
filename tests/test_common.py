"""Event routing, log correlation scoping and startup redaction."""

import logging

import pytest

from creditflow.common import events
from creditflow.common.config import settings
from creditflow.common.logging import account_id_ctx, event_id_ctx, log_context
from creditflow.common.startup import _redacted, log_startup_config


def test_balance_events_share_one_topic():
    topics = {
        events.topic_for(events.CREDITS_PURCHASE_APPLIED),
        events.topic_for(events.CREDITS_CONSUMED),
        events.topic_for(events.CREDITS_REFUNDED),
    }
    assert topics == {"creditflow.credits"}


def test_unknown_event_type_has_no_topic():
    with pytest.raises(ValueError):
        events.topic_for("credits.minted")


def test_envelope_defaults():
    envelope = events.EventEnvelope(
        event_type=events.CREDITS_CONSUMED,
        aggregate_type="account",
        aggregate_id="acct-1",
        payload={"amount": -1},
    )
    assert envelope.event_id
    assert envelope.trace_id
    assert envelope.occurred_at.endswith("+00:00")


def test_log_context_restores_previous_values():
    event_id_ctx.set("outer")
    previous_account = account_id_ctx.get()
    with log_context(event_id="inner", account_id="acct-1"):
        assert event_id_ctx.get() == "inner"
        assert account_id_ctx.get() == "acct-1"
    assert event_id_ctx.get() == "outer"
    assert account_id_ctx.get() == previous_account


def test_secrets_are_redacted():
    assert _redacted("payment_webhook_secret", "s3cr3t") == "<redacted>"
    assert _redacted("postgres_dsn", "postgresql://u:p@db/x") == "<redacted>"
    assert _redacted("rate_limit_per_minute", 60) == "60"
    assert _redacted("redis_url", None) == "<unset>"


def test_startup_logs_configured_keys(caplog):
    with caplog.at_level(logging.INFO, logger="creditflow"):
        log_startup_config(settings, ["environment", "payment_webhook_secret"])
    messages = " ".join(record.getMessage() for record in caplog.records)
    assert "startup_config=" in messages
    assert "payment-secret" not in messages
