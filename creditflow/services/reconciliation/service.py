"""Reconciliation job: detect and repair divergence between ledger and generations.

Ownership policy: a committed consumption transaction is authoritative
(money already moved against its account), so a generation owned by a
different account is reassigned to the transaction's account, with an
`OwnershipCorrection` audit row. This rule is a business assumption, not an
invariant derived from the data; confirm it with the product owner before
extending it. Cases that cannot be decided from the ledger alone go to the
manual review queue.
"""

import asyncio
from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from creditflow.common.config import settings
from creditflow.common.db import utcnow
from creditflow.common.errors import ConflictError, NotFoundError
from creditflow.common.events import OWNERSHIP_CORRECTED
from creditflow.common.logging import logger
from creditflow.common.metrics import reconciliation_discrepancies_total, reconciliation_runs_total
from creditflow.common.outbox import enqueue_event
from creditflow.common.tracing import traced
from creditflow.services.generations.models import Generation
from creditflow.services.generations.service import GenerationService
from creditflow.services.ledger.models import CreditTransaction
from creditflow.services.ledger.service import LedgerService
from creditflow.services.purchases.service import PurchaseService
from creditflow.services.reconciliation.models import OwnershipCorrection, ReconciliationReview
from creditflow.services.reconciliation.schemas import ReconciliationReport
from creditflow.services.webhooks.service import WebhookProcessor

GENERATION_MISSING = "generation_missing"
AMBIGUOUS_OWNERSHIP = "ambiguous_ownership"


class ReconciliationJob:
    """Idempotent, schedulable repair routine with a structured report."""

    def __init__(
        self,
        session_factory,
        ledger: LedgerService,
        purchases: PurchaseService,
        generations: GenerationService,
        webhooks: WebhookProcessor,
        service_name: str = "ledger",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.purchases = purchases
        self.generations = generations
        self.webhooks = webhooks
        self.service_name = service_name

    def _discrepancy(self, resolution: str) -> None:
        reconciliation_discrepancies_total.labels(service=self.service_name, resolution=resolution).inc()

    def _queue_review(
        self,
        run_id: str,
        transaction_id: str,
        generation_id: str | None,
        reason: str,
        details: dict,
    ) -> bool:
        """Queue one case for an operator; returns False when it already has a review."""

        with self.session_factory() as db:
            existing = db.execute(
                select(ReconciliationReview).where(
                    ReconciliationReview.transaction_id == transaction_id,
                    ReconciliationReview.reason == reason,
                )
            ).scalar_one_or_none()
            if existing is not None:
                return False
            db.add(
                ReconciliationReview(
                    transaction_id=transaction_id,
                    generation_id=generation_id,
                    reason=reason,
                    details=details,
                    first_run_id=run_id,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent run queued the same case.
                db.rollback()
                return False
            logger.warning(
                "reconciliation_review_queued transaction_id=%s generation_id=%s reason=%s",
                transaction_id,
                generation_id,
                reason,
            )
            return True

    def _correct_owner(self, run_id: str, transaction_id: str, generation_id: str, before: str, after: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(Generation)
                .where(Generation.id == generation_id, Generation.account_id == before)
                .values(account_id=after, version=Generation.version + 1, updated_at=utcnow())
            )
            if result.rowcount != 1:
                db.rollback()
                logger.info("ownership_correction_skipped generation_id=%s reason=changed_concurrently", generation_id)
                return False
            correction = OwnershipCorrection(
                run_id=run_id,
                generation_id=generation_id,
                transaction_id=transaction_id,
                account_before=before,
                account_after=after,
            )
            db.add(correction)
            db.flush()
            enqueue_event(
                db,
                "generation",
                generation_id,
                OWNERSHIP_CORRECTED,
                {
                    "correction_id": correction.id,
                    "transaction_id": transaction_id,
                    "account_before": before,
                    "account_after": after,
                },
            )
            db.commit()
        logger.warning(
            "generation_owner_corrected generation_id=%s transaction_id=%s before=%s after=%s",
            generation_id,
            transaction_id,
            before,
            after,
        )
        return True

    def _report_pending_reviews(self, report: ReconciliationReport) -> None:
        """Carry cases still waiting for an operator into this run's report."""

        with self.session_factory() as db:
            pending = (
                db.execute(
                    select(ReconciliationReview.transaction_id)
                    .where(ReconciliationReview.status == "PENDING")
                    .order_by(ReconciliationReview.created_at, ReconciliationReview.review_id)
                )
                .scalars()
                .all()
            )
        for txn_id in pending:
            report.discrepancies_found += 1
            report.unresolved_ids.append(txn_id)
            self._discrepancy("still_pending")

    def reconcile_ownership(self, report: ReconciliationReport, limit: int = 1000) -> None:
        """Find consumption transactions whose generation is missing or owned by someone else.

        Transactions already under review (pending or resolved) are left out of
        the scan so they cannot crowd newer drift out of the `limit` window;
        pending ones are reported from the review queue instead.
        """

        self._report_pending_reviews(report)
        reviewed = select(ReconciliationReview.review_id).where(
            or_(
                ReconciliationReview.transaction_id == CreditTransaction.id,
                and_(
                    ReconciliationReview.reason == AMBIGUOUS_OWNERSHIP,
                    ReconciliationReview.generation_id == CreditTransaction.related_generation_id,
                ),
            )
        )
        with self.session_factory() as db:
            rows = db.execute(
                select(
                    CreditTransaction.id,
                    CreditTransaction.account_id,
                    CreditTransaction.related_generation_id,
                    Generation.id,
                    Generation.account_id,
                )
                .outerjoin(Generation, Generation.id == CreditTransaction.related_generation_id)
                .where(
                    CreditTransaction.kind == "consumption",
                    CreditTransaction.status == "committed",
                    or_(Generation.id.is_(None), Generation.account_id != CreditTransaction.account_id),
                    ~reviewed.exists(),
                )
                .order_by(CreditTransaction.created_at, CreditTransaction.id)
                .limit(limit)
            ).all()

        seen: set[str] = set()
        for txn_id, txn_account, related_generation_id, generation_id, generation_account in rows:
            if generation_id is None:
                if self._queue_review(
                    report.run_id,
                    txn_id,
                    related_generation_id,
                    GENERATION_MISSING,
                    {"account_id": txn_account, "related_generation_id": related_generation_id},
                ):
                    report.discrepancies_found += 1
                    report.unresolved_ids.append(txn_id)
                    self._discrepancy("queued")
                continue
            if generation_id in seen:
                continue
            seen.add(generation_id)

            with self.session_factory() as db:
                owners = (
                    db.execute(
                        select(CreditTransaction.account_id)
                        .where(
                            CreditTransaction.related_generation_id == generation_id,
                            CreditTransaction.kind == "consumption",
                            CreditTransaction.status == "committed",
                        )
                        .distinct()
                    )
                    .scalars()
                    .all()
                )
            if len(owners) > 1:
                if self._queue_review(
                    report.run_id,
                    txn_id,
                    generation_id,
                    AMBIGUOUS_OWNERSHIP,
                    {"generation_account_id": generation_account, "transaction_accounts": sorted(owners)},
                ):
                    report.discrepancies_found += 1
                    report.unresolved_ids.append(txn_id)
                    self._discrepancy("queued")
                continue

            report.discrepancies_found += 1
            if self._correct_owner(report.run_id, txn_id, generation_id, generation_account, txn_account):
                report.corrected_ids.append(generation_id)
                self._discrepancy("corrected")

    def run(self, now: datetime | None = None) -> ReconciliationReport:
        """One full pass: ownership drift, event replay, stale jobs, missing refunds and credits, balance audit."""

        report = ReconciliationReport(run_id=str(uuid4()))
        logger.info("reconciliation_run_started run_id=%s", report.run_id)
        with traced("reconciliation.run", run_id=report.run_id):
            self.reconcile_ownership(report)
            report.events_replayed = self.webhooks.replay_unprocessed(settings.event_replay_after_seconds)
            report.stale_generations_failed = self.generations.fail_stale(now)
            report.refunds_healed = self.generations.refund_unrefunded_failures()
            report.purchases_applied = self.purchases.apply_unapplied()
            report.balance_mismatches = self.ledger.balance_mismatches()
        for mismatch in report.balance_mismatches:
            logger.error(
                "balance_mismatch account_id=%s balance=%s ledger_sum=%s",
                mismatch.account_id,
                mismatch.balance,
                mismatch.ledger_sum,
            )
        reconciliation_runs_total.labels(service=self.service_name).inc()
        logger.info(
            "reconciliation_run_finished run_id=%s discrepancies=%s corrected=%s unresolved=%s stale=%s "
            "refunds_healed=%s purchases_applied=%s events_replayed=%s balance_mismatches=%s",
            report.run_id,
            report.discrepancies_found,
            len(report.corrected_ids),
            len(report.unresolved_ids),
            len(report.stale_generations_failed),
            len(report.refunds_healed),
            len(report.purchases_applied),
            report.events_replayed,
            len(report.balance_mismatches),
        )
        return report

    def list_reviews(self, status: str = "PENDING", limit: int = 100) -> list[ReconciliationReview]:
        """Return review queue rows for ops tooling."""

        with self.session_factory() as db:
            return (
                db.execute(
                    select(ReconciliationReview)
                    .where(ReconciliationReview.status == status)
                    .order_by(ReconciliationReview.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def resolve_review(self, review_id: str, resolved_by: str, note: str | None = None) -> ReconciliationReview:
        """Close one review row after an operator handled the case by hand."""

        with self.session_factory() as db:
            review = db.get(ReconciliationReview, review_id)
            if review is None:
                raise NotFoundError(f"review {review_id} not found")
            if review.status != "PENDING":
                raise ConflictError(f"review already finalized with status={review.status}")
            review.status = "RESOLVED"
            review.resolved_by = resolved_by
            review.resolution_note = note
            review.resolved_at = utcnow()
            db.commit()
            db.refresh(review)
            logger.info("reconciliation_review_resolved review_id=%s resolved_by=%s", review_id, resolved_by)
            return review

    async def run_forever(self, interval_seconds: int) -> None:
        while True:
            try:
                await asyncio.to_thread(self.run)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("reconciliation_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)
