"""Event log and dispatch of verified provider webhooks to the state machines.

A delivery is recorded first; only then are side effects attempted. Once the
row is durable the provider always gets a 2xx, whatever the downstream
outcome: unprocessed rows are picked up again by the replay sweep.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from creditflow.common.db import run_with_retry, utcnow
from creditflow.common.errors import ConflictError, NotFoundError, PayloadError
from creditflow.common.logging import log_context, logger
from creditflow.common.metrics import duplicate_events_skipped_total, webhook_events_total
from creditflow.common.tracing import traced
from creditflow.services.generations.service import GenerationService
from creditflow.services.purchases.service import PurchaseService
from creditflow.services.webhooks import schemas
from creditflow.services.webhooks.models import InboundEvent
from creditflow.services.webhooks.schemas import (
    GenerationFailed,
    GenerationProgress,
    GenerationSucceeded,
    PaymentNotification,
    WebhookAck,
)

IGNORED = "ignored"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
DEFERRED = "deferred"
ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class RecordResult:
    is_new: bool
    processed: bool


class EventLog:
    """Append-only record of inbound deliveries keyed by `(provider, provider_event_id)`."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record(
        self,
        provider: str,
        provider_event_id: str,
        payload: dict[str, Any],
        signature_timestamp: int | None = None,
    ) -> RecordResult:
        """Insert the delivery; a duplicate key is reported as `is_new=False`, not raised."""

        def _record() -> RecordResult:
            with self.session_factory() as db:
                db.add(
                    InboundEvent(
                        provider=provider,
                        provider_event_id=provider_event_id,
                        payload=payload,
                        signature_timestamp=signature_timestamp,
                    )
                )
                try:
                    db.commit()
                    return RecordResult(is_new=True, processed=False)
                except IntegrityError:
                    db.rollback()
                key = (InboundEvent.provider == provider, InboundEvent.provider_event_id == provider_event_id)
                db.execute(
                    update(InboundEvent).where(*key).values(delivery_count=InboundEvent.delivery_count + 1)
                )
                processed = db.execute(select(InboundEvent.processed).where(*key)).scalar_one()
                db.commit()
                return RecordResult(is_new=False, processed=bool(processed))

        return run_with_retry(_record)

    def mark_processed(self, provider: str, provider_event_id: str) -> bool:
        """Flag the delivery as handled; returns False when it already was."""

        def _mark() -> bool:
            with self.session_factory() as db:
                result = db.execute(
                    update(InboundEvent)
                    .where(
                        InboundEvent.provider == provider,
                        InboundEvent.provider_event_id == provider_event_id,
                        InboundEvent.processed.is_(False),
                    )
                    .values(processed=True, processed_at=utcnow(), last_error=None)
                )
                db.commit()
                return result.rowcount == 1

        return run_with_retry(_mark)

    def mark_failed(self, provider: str, provider_event_id: str, error: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(InboundEvent)
                .where(InboundEvent.provider == provider, InboundEvent.provider_event_id == provider_event_id)
                .values(last_error=error[:1000])
            )
            db.commit()

    def list_unprocessed(self, older_than: datetime, limit: int = 100) -> list[InboundEvent]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(InboundEvent)
                    .where(InboundEvent.processed.is_(False), InboundEvent.received_at < older_than)
                    .order_by(InboundEvent.received_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )


class WebhookProcessor:
    """Routes parsed provider events to the purchase and generation state machines."""

    def __init__(
        self,
        event_log: EventLog,
        purchases: PurchaseService,
        generations: GenerationService,
        service_name: str = "webhooks",
    ) -> None:
        self.event_log = event_log
        self.purchases = purchases
        self.generations = generations
        self.service_name = service_name

    def _count(self, provider: str, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()

    def handle_payment(self, payload: dict[str, Any], signature_timestamp: int | None = None) -> WebhookAck:
        event = schemas.parse_payment_event(payload)
        return self._process(schemas.PAYMENT_PROVIDER, event.event_id, payload, signature_timestamp, event)

    def handle_generation(self, payload: dict[str, Any], signature_timestamp: int | None = None) -> WebhookAck:
        event = schemas.parse_generation_event(payload)
        return self._process(schemas.GENERATION_PROVIDER, event.event_key, payload, signature_timestamp, event)

    def _process(
        self,
        provider: str,
        event_key: str,
        payload: dict[str, Any],
        signature_timestamp: int | None,
        event: Any,
    ) -> WebhookAck:
        with log_context(event_id=event_key), traced("webhook.process", provider=provider, event_key=event_key):
            return self._record_and_dispatch(provider, event_key, payload, signature_timestamp, event)

    def _record_and_dispatch(
        self,
        provider: str,
        event_key: str,
        payload: dict[str, Any],
        signature_timestamp: int | None,
        event: Any,
    ) -> WebhookAck:
        recorded = self.event_log.record(provider, event_key, payload, signature_timestamp)
        if not recorded.is_new and recorded.processed:
            duplicate_events_skipped_total.labels(service=self.service_name, provider=provider).inc()
            self._count(provider, ALREADY_PROCESSED)
            logger.info("webhook_duplicate_skipped provider=%s event_key=%s", provider, event_key)
            return WebhookAck(provider=provider, event_id=event_key, outcome=ALREADY_PROCESSED, duplicate=True)
        if not recorded.is_new:
            # Recorded earlier but never finished; the state machines are idempotent.
            logger.info("webhook_redelivery_reprocessing provider=%s event_key=%s", provider, event_key)

        outcome = self._dispatch(provider, event_key, event)
        self._count(provider, outcome)
        return WebhookAck(provider=provider, event_id=event_key, outcome=outcome, duplicate=not recorded.is_new)

    def _dispatch(self, provider: str, event_key: str, event: Any) -> str:
        """Apply the event; returns the outcome label, marking the log row processed when settled."""

        try:
            outcome = self._apply(event)
        except NotFoundError as exc:
            logger.error("webhook_target_not_found provider=%s event_key=%s error=%s", provider, event_key, exc)
            outcome = NOT_FOUND
        except ConflictError as exc:
            logger.warning("webhook_state_conflict provider=%s event_key=%s error=%s", provider, event_key, exc)
            outcome = CONFLICT
        except Exception as exc:
            logger.exception("webhook_processing_deferred provider=%s event_key=%s", provider, event_key)
            try:
                self.event_log.mark_failed(provider, event_key, str(exc))
            except Exception:
                logger.exception("webhook_mark_failed_error provider=%s event_key=%s", provider, event_key)
            return DEFERRED

        self.event_log.mark_processed(provider, event_key)
        logger.info("webhook_processed provider=%s event_key=%s outcome=%s", provider, event_key, outcome)
        return outcome

    def _apply(self, event: Any) -> str:
        if isinstance(event, PaymentNotification):
            return self.purchases.handle_payment_status(
                event.purchase_id, event.target_status, event.provider_payment_id
            )
        if isinstance(event, GenerationSucceeded):
            return self.generations.complete(event)
        if isinstance(event, GenerationFailed):
            return self.generations.fail_by_task(event).outcome
        if isinstance(event, GenerationProgress):
            logger.info("generation_progress task_id=%s state=%s", event.task_id, event.state)
            return IGNORED
        logger.info("payment_event_ignored event_id=%s event_type=%s", event.event_id, event.event_type)
        return IGNORED

    def replay_unprocessed(self, older_than_seconds: int, limit: int = 100) -> int:
        """Re-dispatch recorded deliveries that never reached `processed`, oldest first."""

        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        replayed = 0
        for row in self.event_log.list_unprocessed(cutoff, limit=limit):
            with log_context(event_id=row.provider_event_id):
                try:
                    if row.provider == schemas.PAYMENT_PROVIDER:
                        event = schemas.parse_payment_event(row.payload)
                    else:
                        event = schemas.parse_generation_event(row.payload)
                except PayloadError as exc:
                    logger.error("replay_payload_invalid event_key=%s error=%s", row.provider_event_id, exc)
                    self.event_log.mark_failed(row.provider, row.provider_event_id, str(exc))
                    continue
                logger.info(
                    "webhook_replay provider=%s event_key=%s deliveries=%s last_error=%s",
                    row.provider,
                    row.provider_event_id,
                    row.delivery_count,
                    row.last_error,
                )
                outcome = self._dispatch(row.provider, row.provider_event_id, event)
            self._count(row.provider, f"replayed_{outcome}")
            if outcome != DEFERRED:
                replayed += 1
        return replayed
