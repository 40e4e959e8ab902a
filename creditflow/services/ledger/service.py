"""Credit ledger: the only code allowed to move an account balance.

Every mutation is one DB transaction built from conditional updates whose
affected-row count decides the outcome, so concurrent duplicate deliveries
cannot double-apply, double-spend, or double-refund. No in-process locking is
involved.
"""

from sqlalchemy import func, select, update

from creditflow.common import events
from creditflow.common.db import run_with_retry, utcnow
from creditflow.common.errors import NotFoundError, ValidationError
from creditflow.common.logging import logger
from creditflow.common.metrics import ledger_credits_moved_total, ledger_operations_total
from creditflow.common.outbox import enqueue_event
from creditflow.services.generations.models import Generation
from creditflow.services.ledger import schemas
from creditflow.services.ledger.models import Account, CreditTransaction
from creditflow.services.ledger.schemas import BalanceMismatch, LedgerResult
from creditflow.services.purchases.models import Purchase


class _AccountMissing(Exception):
    pass


class _InsufficientBalance(Exception):
    pass


class LedgerService:
    """Apply / consume / refund credits with exactly-once effect."""

    def __init__(self, session_factory, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _record(self, operation: str, result: LedgerResult) -> LedgerResult:
        ledger_operations_total.labels(
            service=self.service_name,
            operation=operation,
            outcome=result.outcome,
        ).inc()
        return result

    def _current_balance(self, db, account_id: str) -> int | None:
        return db.execute(select(Account.credits_balance).where(Account.id == account_id)).scalar_one_or_none()

    def _post(
        self,
        db,
        account_id: str,
        kind: str,
        amount: int,
        related_purchase_id: str | None = None,
        related_generation_id: str | None = None,
    ) -> CreditTransaction:
        """Move the balance by `amount` and append the matching transaction.

        Debits are guarded by `credits_balance >= -amount` in the same UPDATE,
        so the balance can never go negative regardless of interleaving.
        """

        stmt = update(Account).where(Account.id == account_id)
        if amount < 0:
            stmt = stmt.where(Account.credits_balance >= -amount)
        result = db.execute(stmt.values(credits_balance=Account.credits_balance + amount, updated_at=utcnow()))
        if result.rowcount != 1:
            if self._current_balance(db, account_id) is None:
                raise _AccountMissing(account_id)
            raise _InsufficientBalance(account_id)

        balance_after = self._current_balance(db, account_id)
        txn = CreditTransaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            status="committed",
            related_purchase_id=related_purchase_id,
            related_generation_id=related_generation_id,
        )
        db.add(txn)
        db.flush()
        ledger_credits_moved_total.labels(service=self.service_name, kind=kind).inc(abs(amount))
        return txn

    def open_account(self, account_id: str) -> int:
        """Create a zero-balance account if missing; return the current balance."""

        def _open() -> int:
            with self.session_factory() as db:
                balance = self._current_balance(db, account_id)
                if balance is not None:
                    return balance
                db.add(Account(id=account_id, credits_balance=0))
                db.commit()
                logger.info("account_opened account_id=%s", account_id)
                return 0

        return run_with_retry(_open)

    def get_balance(self, account_id: str) -> int:
        """Read-only balance lookup; not linearizable with in-flight writes."""

        def _read() -> int:
            with self.session_factory() as db:
                balance = self._current_balance(db, account_id)
            if balance is None:
                raise NotFoundError(f"account {account_id} not found")
            return balance

        return run_with_retry(_read)

    def list_transactions(self, account_id: str, limit: int = 100) -> list[CreditTransaction]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.account_id == account_id)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def apply_purchase(self, purchase_id: str, account_id: str, amount_credits: int) -> LedgerResult:
        """Credit an approved purchase exactly once.

        The `applied_at IS NULL` guard and the transaction insert commit
        together; a replay finds `applied_at` set and gets `already_applied`
        with the current balance.
        """

        if amount_credits <= 0:
            raise ValidationError("amount_credits must be positive")

        def _apply() -> LedgerResult:
            with self.session_factory() as db:
                claimed = db.execute(
                    update(Purchase)
                    .where(
                        Purchase.id == purchase_id,
                        Purchase.status == "approved",
                        Purchase.applied_at.is_(None),
                        Purchase.account_id == account_id,
                        Purchase.amount_credits == amount_credits,
                    )
                    .values(applied_at=utcnow(), version=Purchase.version + 1)
                )
                if claimed.rowcount != 1:
                    db.rollback()
                    return self._classify_unapplied(db, purchase_id, account_id, amount_credits)

                try:
                    txn = self._post(db, account_id, "purchase", amount_credits, related_purchase_id=purchase_id)
                except _AccountMissing:
                    db.rollback()
                    logger.error("purchase_account_missing purchase_id=%s account_id=%s", purchase_id, account_id)
                    return LedgerResult(outcome=schemas.NOT_FOUND, account_id=account_id)
                enqueue_event(
                    db,
                    "account",
                    account_id,
                    events.CREDITS_PURCHASE_APPLIED,
                    {
                        "purchase_id": purchase_id,
                        "transaction_id": txn.id,
                        "amount": amount_credits,
                        "balance_after": txn.balance_after,
                    },
                )
                db.commit()
                logger.info(
                    "purchase_applied purchase_id=%s account_id=%s credits=%s balance=%s",
                    purchase_id,
                    account_id,
                    amount_credits,
                    txn.balance_after,
                )
                return LedgerResult(
                    outcome=schemas.APPLIED,
                    new_balance=txn.balance_after,
                    transaction_id=txn.id,
                    account_id=account_id,
                )

        return self._record("apply_purchase", run_with_retry(_apply))

    def _classify_unapplied(self, db, purchase_id: str, account_id: str, amount_credits: int) -> LedgerResult:
        purchase = db.get(Purchase, purchase_id)
        if purchase is None:
            return LedgerResult(outcome=schemas.NOT_FOUND)
        if purchase.account_id != account_id or purchase.amount_credits != amount_credits:
            raise ValidationError(
                f"purchase {purchase_id} does not match account/amount "
                f"(expected {purchase.account_id}/{purchase.amount_credits})"
            )
        balance = self._current_balance(db, purchase.account_id)
        if purchase.applied_at is not None:
            logger.info("purchase_already_applied purchase_id=%s", purchase_id)
            return LedgerResult(outcome=schemas.ALREADY_APPLIED, new_balance=balance, account_id=account_id)
        return LedgerResult(outcome=schemas.NOT_APPROVED, new_balance=balance, account_id=account_id)

    def consume_credits(self, account_id: str, generation_id: str, amount: int) -> LedgerResult:
        """Reserve `amount` credits against a pending generation.

        Fails closed: on `insufficient_balance` nothing is written and the job
        must not be dispatched. A generation already holding credits is
        reported as `already_reserved` instead of being debited twice.
        """

        if amount <= 0:
            raise ValidationError("amount must be positive")

        def _consume() -> LedgerResult:
            with self.session_factory() as db:
                reserved = db.execute(
                    update(Generation)
                    .where(
                        Generation.id == generation_id,
                        Generation.account_id == account_id,
                        Generation.status == "pending",
                        Generation.credits_used == 0,
                    )
                    .values(credits_reserved=amount, credits_used=amount, version=Generation.version + 1)
                )
                if reserved.rowcount != 1:
                    db.rollback()
                    generation = db.get(Generation, generation_id)
                    balance = self._current_balance(db, account_id)
                    if generation is None or generation.account_id != account_id:
                        return LedgerResult(outcome=schemas.NOT_FOUND, new_balance=balance)
                    return LedgerResult(outcome=schemas.ALREADY_RESERVED, new_balance=balance, account_id=account_id)

                try:
                    txn = self._post(db, account_id, "consumption", -amount, related_generation_id=generation_id)
                except _AccountMissing:
                    db.rollback()
                    return LedgerResult(outcome=schemas.NOT_FOUND)
                except _InsufficientBalance:
                    db.rollback()
                    balance = self._current_balance(db, account_id)
                    logger.info(
                        "consume_rejected_insufficient account_id=%s generation_id=%s amount=%s balance=%s",
                        account_id,
                        generation_id,
                        amount,
                        balance,
                    )
                    return LedgerResult(
                        outcome=schemas.INSUFFICIENT_BALANCE, new_balance=balance, account_id=account_id
                    )
                enqueue_event(
                    db,
                    "account",
                    account_id,
                    events.CREDITS_CONSUMED,
                    {
                        "generation_id": generation_id,
                        "transaction_id": txn.id,
                        "amount": amount,
                        "balance_after": txn.balance_after,
                    },
                )
                db.commit()
                logger.info(
                    "credits_consumed account_id=%s generation_id=%s amount=%s balance=%s",
                    account_id,
                    generation_id,
                    amount,
                    txn.balance_after,
                )
                return LedgerResult(
                    outcome=schemas.CONSUMED,
                    new_balance=txn.balance_after,
                    transaction_id=txn.id,
                    account_id=account_id,
                )

        return self._record("consume_credits", run_with_retry(_consume))

    def _refund_account(self, db, generation: Generation) -> str:
        """Refund goes where the money came from: the latest consumption's account."""

        account_id = db.execute(
            select(CreditTransaction.account_id)
            .where(
                CreditTransaction.related_generation_id == generation.id,
                CreditTransaction.kind == "consumption",
                CreditTransaction.status == "committed",
            )
            .order_by(CreditTransaction.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return account_id or generation.account_id

    def refund_for_failure(self, generation_id: str) -> LedgerResult:
        """Return the credits held by a generation; safe to call any number of times."""

        def _refund() -> LedgerResult:
            with self.session_factory() as db:
                generation = db.get(Generation, generation_id)
                if generation is None:
                    return LedgerResult(outcome=schemas.NOT_FOUND)
                held = generation.credits_used
                account_id = self._refund_account(db, generation)
                if held <= 0:
                    return LedgerResult(
                        outcome=schemas.ALREADY_REFUNDED,
                        new_balance=self._current_balance(db, account_id),
                        account_id=account_id,
                    )

                released = db.execute(
                    update(Generation)
                    .where(Generation.id == generation_id, Generation.credits_used == held)
                    .values(credits_used=0, version=Generation.version + 1)
                )
                if released.rowcount != 1:
                    # A concurrent refund won the compare-and-swap.
                    db.rollback()
                    return LedgerResult(
                        outcome=schemas.ALREADY_REFUNDED,
                        new_balance=self._current_balance(db, account_id),
                        account_id=account_id,
                    )

                try:
                    txn = self._post(db, account_id, "refund", held, related_generation_id=generation_id)
                except _AccountMissing:
                    db.rollback()
                    logger.error("refund_account_missing generation_id=%s account_id=%s", generation_id, account_id)
                    return LedgerResult(outcome=schemas.NOT_FOUND, account_id=account_id)
                enqueue_event(
                    db,
                    "account",
                    account_id,
                    events.CREDITS_REFUNDED,
                    {
                        "generation_id": generation_id,
                        "transaction_id": txn.id,
                        "amount": held,
                        "balance_after": txn.balance_after,
                    },
                )
                db.commit()
                logger.info(
                    "credits_refunded account_id=%s generation_id=%s amount=%s balance=%s",
                    account_id,
                    generation_id,
                    held,
                    txn.balance_after,
                )
                return LedgerResult(
                    outcome=schemas.REFUNDED,
                    new_balance=txn.balance_after,
                    transaction_id=txn.id,
                    account_id=account_id,
                )

        return self._record("refund_for_failure", run_with_retry(_refund))

    def balance_mismatches(self, limit: int = 1000) -> list[BalanceMismatch]:
        """Accounts whose balance differs from the sum of their committed transactions."""

        with self.session_factory() as db:
            ledger_sums = (
                select(
                    CreditTransaction.account_id.label("account_id"),
                    func.sum(CreditTransaction.amount).label("ledger_sum"),
                )
                .where(CreditTransaction.status == "committed")
                .group_by(CreditTransaction.account_id)
                .subquery()
            )
            rows = db.execute(
                select(Account.id, Account.credits_balance, func.coalesce(ledger_sums.c.ledger_sum, 0))
                .outerjoin(ledger_sums, ledger_sums.c.account_id == Account.id)
                .order_by(Account.id)
                .limit(limit)
            ).all()
        return [
            BalanceMismatch(account_id=account_id, balance=balance, ledger_sum=int(ledger_sum))
            for account_id, balance, ledger_sum in rows
            if int(ledger_sum) != balance
        ]
