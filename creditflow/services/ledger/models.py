"""Ledger database models: accounts and the append-only transaction history."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.common.db import Base

TRANSACTION_KINDS = ("purchase", "consumption", "refund")


class Account(Base):
    """Credit balance holder; balance is only moved by ledger operations."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("credits_balance >= 0", name="ck_accounts_balance_non_negative"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CreditTransaction(Base):
    """Immutable signed balance movement for one account."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        # A purchase can be credited at most once, whatever the application path.
        UniqueConstraint("related_purchase_id", name="uq_credit_transactions_purchase"),
        CheckConstraint(
            "(kind = 'consumption' AND amount < 0) OR (kind IN ('purchase', 'refund') AND amount > 0)",
            name="ck_credit_transactions_sign",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    kind: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="committed", index=True)
    related_purchase_id: Mapped[str | None] = mapped_column(String, nullable=True)
    related_generation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
