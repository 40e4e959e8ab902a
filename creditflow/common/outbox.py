"""Transactional outbox: rows written alongside ledger mutations, published later.

Writers call `enqueue_event` inside their own DB transaction, so an event
exists exactly when the state change it describes was committed. The
publisher claims rows with `FOR UPDATE SKIP LOCKED`, so several publisher
processes can run side by side.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, String, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.common.db import Base, JSONType
from creditflow.common.events import EventEnvelope, KafkaBus, topic_for
from creditflow.common.logging import logger
from creditflow.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxEvent(Base):
    """Domain events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def enqueue_event(db, aggregate_type: str, aggregate_id: str, event_type: str, payload: dict[str, Any]) -> None:
    """Add one outbox row to the caller's open transaction."""

    db.add(
        OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=topic_for(event_type),
            payload=EventEnvelope(
                event_type=event_type,
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                payload=payload,
            ).model_dump(),
        )
    )


def claim_outbox_batch(db, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = OutboxEvent.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = db.execute(
        select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status.in_(pending_statuses))
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(OutboxEvent.created_at)).where(OutboxEvent.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Continuously publishes outbox rows to Kafka."""

    def __init__(self, session_factory, service_name: str, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.kafka = bus or KafkaBus()

    async def publish_once(self) -> int:
        with self.session_factory() as db:
            rows = claim_outbox_batch(db, limit=100)
            update_outbox_backlog_metrics(db, self.service_name)
            db.commit()
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, row["id"])
                    db.commit()
            except Exception as exc:
                logger.exception("outbox_publish_failed event_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, row["id"])
                    db.commit()
        return len(rows)

    async def run_forever(self) -> None:
        while True:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_publisher_loop_error error=%s", exc)
            await asyncio.sleep(0.5)

    async def close(self) -> None:
        await self.kafka.close()
