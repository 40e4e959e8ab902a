"""Purchase state machine: `pending -> approved -> (credited)` or `pending -> rejected`.

The status transition and the ledger call are separate commits; the ledger's
`applied_at` guard makes the pair idempotent end to end, and the unapplied
sweep heals a crash between the two.
"""

from sqlalchemy import select, update

from creditflow.common.db import run_with_retry, utcnow
from creditflow.common.errors import ConcurrencyConflict, NotFoundError, ValidationError
from creditflow.common.logging import account_id_ctx, logger
from creditflow.common.state_machine import PURCHASE_TRANSITIONS, validate_transition
from creditflow.services.ledger import schemas as ledger_schemas
from creditflow.services.ledger.models import Account
from creditflow.services.ledger.schemas import LedgerResult
from creditflow.services.ledger.service import LedgerService
from creditflow.services.purchases.models import Purchase

UNKNOWN_PURCHASE = "unknown_purchase"
STATUS_IGNORED = "status_ignored"
STATUS_CONFLICT = "status_conflict"
REJECTED = "rejected"


class PurchaseService:
    """Drives purchases from checkout to credit application."""

    def __init__(self, session_factory, ledger: LedgerService) -> None:
        self.session_factory = session_factory
        self.ledger = ledger

    def create_purchase(self, account_id: str, amount_credits: int) -> Purchase:
        if amount_credits <= 0:
            raise ValidationError("amount_credits must be positive")
        with self.session_factory() as db:
            if db.get(Account, account_id) is None:
                raise NotFoundError(f"account {account_id} not found")
            purchase = Purchase(account_id=account_id, amount_credits=amount_credits, status="pending")
            db.add(purchase)
            db.commit()
            logger.info(
                "purchase_created purchase_id=%s account_id=%s credits=%s",
                purchase.id,
                account_id,
                amount_credits,
            )
            return purchase

    def get_purchase(self, purchase_id: str) -> Purchase:
        with self.session_factory() as db:
            purchase = db.get(Purchase, purchase_id)
        if purchase is None:
            raise NotFoundError(f"purchase {purchase_id} not found")
        return purchase

    def _transition(self, db, purchase: Purchase, new_status: str, **values) -> None:
        """Apply one validated transition guarded by `(id, status, version)`."""

        previous_status, expected_version = purchase.status, purchase.version
        validate_transition(PURCHASE_TRANSITIONS, previous_status, new_status)
        result = db.execute(
            update(Purchase)
            .where(
                Purchase.id == purchase.id,
                Purchase.status == previous_status,
                Purchase.version == expected_version,
            )
            .values(status=new_status, version=expected_version + 1, updated_at=utcnow(), **values)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"optimistic concurrency conflict for purchase {purchase.id} (expected version {expected_version})"
            )
        logger.info("purchase_transition purchase_id=%s from=%s to=%s", purchase.id, previous_status, new_status)

    def _settle(self, purchase_id: str, target: str, provider_payment_id: str) -> Purchase | None:
        """Move a pending purchase to `target`; return the purchase as it stands afterwards."""

        with self.session_factory() as db:
            purchase = db.get(Purchase, purchase_id)
            if purchase is None:
                return None
            if purchase.status == "pending":
                try:
                    self._transition(db, purchase, target, provider_payment_id=provider_payment_id)
                    db.commit()
                except ConcurrencyConflict:
                    # A concurrent delivery settled it first; re-read its decision.
                    db.rollback()
            else:
                db.rollback()
            db.expire_all()
            return db.get(Purchase, purchase_id)

    def handle_payment_status(self, purchase_id: str, status: str | None, provider_payment_id: str) -> str:
        """Apply one payment notification; returns a short outcome label for the ack.

        `status` is the normalized target (`approved`, `rejected`) or None for
        intermediate processor states, which are acknowledged without effect.
        """

        if status is None:
            logger.info("payment_status_ignored purchase_id=%s", purchase_id)
            return STATUS_IGNORED

        purchase = run_with_retry(lambda: self._settle(purchase_id, status, provider_payment_id))
        if purchase is None:
            logger.error("payment_for_unknown_purchase purchase_id=%s payment_id=%s", purchase_id, provider_payment_id)
            return UNKNOWN_PURCHASE
        account_id_ctx.set(purchase.account_id)

        if purchase.status != status:
            # Terminal already, with the opposite decision: never flip a settled purchase.
            logger.warning(
                "payment_status_conflict purchase_id=%s current=%s notified=%s payment_id=%s",
                purchase_id,
                purchase.status,
                status,
                provider_payment_id,
            )
            return STATUS_CONFLICT
        if purchase.provider_payment_id and purchase.provider_payment_id != provider_payment_id:
            logger.warning(
                "payment_id_mismatch purchase_id=%s stored=%s notified=%s",
                purchase_id,
                purchase.provider_payment_id,
                provider_payment_id,
            )

        if status == "rejected":
            return REJECTED
        result = self.ledger.apply_purchase(purchase.id, purchase.account_id, purchase.amount_credits)
        return result.outcome

    def apply_unapplied(self, limit: int = 100) -> list[str]:
        """Credit approved purchases whose ledger step never committed."""

        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(Purchase)
                    .where(Purchase.status == "approved", Purchase.applied_at.is_(None))
                    .order_by(Purchase.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        applied: list[str] = []
        for purchase in rows:
            result: LedgerResult = self.ledger.apply_purchase(purchase.id, purchase.account_id, purchase.amount_credits)
            if result.outcome == ledger_schemas.APPLIED:
                logger.warning("unapplied_purchase_healed purchase_id=%s", purchase.id)
                applied.append(purchase.id)
        return applied
