"""Purchase records created at checkout and settled by payment webhooks."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.common.db import Base


class Purchase(Base):
    """A batch of credits bought through the payment processor.

    `applied_at` is the idempotency guard: it is set exactly once, in the same
    transaction that inserts the matching purchase transaction.
    """

    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(String, index=True)
    amount_credits: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    provider_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
