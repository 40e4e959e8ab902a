"""Event log of every inbound webhook delivery."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.common.db import Base, JSONType, utcnow


class InboundEvent(Base):
    """One provider notification, keyed uniquely per `(provider, provider_event_id)`."""

    __tablename__ = "inbound_events"
    __table_args__ = (UniqueConstraint("provider", "provider_event_id", name="uq_inbound_events_provider_event"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String, index=True)
    provider_event_id: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    signature_timestamp: Mapped[int | None] = mapped_column(Integer, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, default=1)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
