"""Structured output of a reconciliation run and review-queue payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from creditflow.services.ledger.schemas import BalanceMismatch


class ReconciliationReport(BaseModel):
    run_id: str
    discrepancies_found: int = 0
    corrected_ids: list[str] = Field(default_factory=list)
    unresolved_ids: list[str] = Field(default_factory=list)
    stale_generations_failed: list[str] = Field(default_factory=list)
    refunds_healed: list[str] = Field(default_factory=list)
    purchases_applied: list[str] = Field(default_factory=list)
    events_replayed: int = 0
    balance_mismatches: list[BalanceMismatch] = Field(default_factory=list)


class ReviewView(BaseModel):
    review_id: str
    transaction_id: str
    generation_id: str | None = None
    reason: str
    details: dict[str, Any]
    status: str
    resolved_by: str | None = None
    resolution_note: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, review) -> "ReviewView":
        return cls(
            review_id=review.review_id,
            transaction_id=review.transaction_id,
            generation_id=review.generation_id,
            reason=review.reason,
            details=review.details or {},
            status=review.status,
            resolved_by=review.resolved_by,
            resolution_note=review.resolution_note,
            resolved_at=review.resolved_at,
            created_at=review.created_at,
        )


class ResolveReviewRequest(BaseModel):
    resolved_by: str = Field(min_length=1)
    note: str | None = None
