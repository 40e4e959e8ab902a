"""Result and request/response schemas for ledger operations and endpoints."""

from pydantic import BaseModel, Field

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
NOT_APPROVED = "not_approved"
CONSUMED = "consumed"
INSUFFICIENT_BALANCE = "insufficient_balance"
ALREADY_RESERVED = "already_reserved"
REFUNDED = "refunded"
ALREADY_REFUNDED = "already_refunded"
NOT_FOUND = "not_found"

SUCCESS_OUTCOMES = frozenset({APPLIED, CONSUMED, REFUNDED})


class LedgerResult(BaseModel):
    """Outcome of one ledger operation.

    Expected conflicts (already applied/refunded, insufficient balance) are
    ordinary outcomes, not exceptions.
    """

    outcome: str
    new_balance: int | None = None
    transaction_id: str | None = None
    account_id: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES


class AccountCreateRequest(BaseModel):
    account_id: str = Field(min_length=1)


class BalanceResponse(BaseModel):
    balance: int


class RefundRequest(BaseModel):
    generation_id: str = Field(min_length=1)


class RefundResponse(BaseModel):
    success: bool
    outcome: str
    newBalance: int | None = None


class TransactionView(BaseModel):
    id: str
    kind: str
    amount: int
    balance_after: int
    related_purchase_id: str | None
    related_generation_id: str | None


class BalanceMismatch(BaseModel):
    account_id: str
    balance: int
    ledger_sum: int
