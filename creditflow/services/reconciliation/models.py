"""Reconciliation audit trail and manual review queue."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.common.db import Base, JSONType


class OwnershipCorrection(Base):
    """Immutable record of one generation owner rewrite."""

    __tablename__ = "ownership_corrections"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(String, index=True)
    generation_id: Mapped[str] = mapped_column(String, index=True)
    transaction_id: Mapped[str] = mapped_column(String, index=True)
    account_before: Mapped[str] = mapped_column(String)
    account_after: Mapped[str] = mapped_column(String)
    corrected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ReconciliationReview(Base):
    """Discrepancy the job refused to auto-repair, waiting for an operator."""

    __tablename__ = "reconciliation_reviews"
    __table_args__ = (UniqueConstraint("transaction_id", "reason", name="uq_reconciliation_reviews_case"),)

    review_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_id: Mapped[str] = mapped_column(String, index=True)
    generation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    reason: Mapped[str] = mapped_column(String)
    details: Mapped[dict] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, index=True, default="PENDING")
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_run_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
