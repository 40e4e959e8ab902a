"""Domain events leaving the ledger: envelope, topic routing, Kafka producer."""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from creditflow.common.config import settings
from creditflow.common.logging import trace_id_ctx

CREDITS_PURCHASE_APPLIED = "credits.purchase_applied"
CREDITS_CONSUMED = "credits.consumed"
CREDITS_REFUNDED = "credits.refunded"
GENERATIONS_COMPLETED = "generations.completed"
GENERATIONS_FAILED = "generations.failed"
OWNERSHIP_CORRECTED = "reconciliation.ownership_corrected"

# Balance changes share one topic so consumers see them in per-account order.
EVENT_TOPICS: dict[str, str] = {
    CREDITS_PURCHASE_APPLIED: "creditflow.credits",
    CREDITS_CONSUMED: "creditflow.credits",
    CREDITS_REFUNDED: "creditflow.credits",
    GENERATIONS_COMPLETED: "creditflow.generations",
    GENERATIONS_FAILED: "creditflow.generations",
    OWNERSHIP_CORRECTED: "creditflow.reconciliation",
}


def topic_for(event_type: str) -> str:
    try:
        return EVENT_TOPICS[event_type]
    except KeyError:
        raise ValueError(f"unknown event type {event_type}") from None


class EventEnvelope(BaseModel):
    """Canonical event shape published for downstream consumers (realtime UI, analytics)."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: trace_id_ctx.get() or str(uuid4()))
    payload: dict[str, Any]


class KafkaBus:
    """Lazy Kafka producer; messages are keyed by aggregate id."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None
