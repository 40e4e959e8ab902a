"""Ledger API + lifecycle.

Balance queries, checkout and generation intake, administrative refund/retry
commands, reconciliation runs, and the manual review queue. Background tasks
publish the outbox and run reconciliation on an interval.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from creditflow.common.config import settings
from creditflow.common.db import SessionLocal
from creditflow.common.errors import CreditflowError
from creditflow.common.http import enforce_api_key, http_error, install_metrics_middleware
from creditflow.common.logging import configure_logging, log_context, trace_id_ctx
from creditflow.common.metrics import metrics_response
from creditflow.common.outbox import OutboxPublisher
from creditflow.common.rate_limit import TokenBucketLimiter, build_limiter
from creditflow.common.startup import log_startup_config
from creditflow.common.tracing import instrument_app, setup_tracing
from creditflow.services.container import Services, build_services
from creditflow.services.generations.schemas import (
    AttachTaskRequest,
    GenerationCreateRequest,
    GenerationResponse,
    RetryRequest,
)
from creditflow.services.ledger import schemas as ledger_schemas
from creditflow.services.ledger.schemas import (
    AccountCreateRequest,
    BalanceMismatch,
    BalanceResponse,
    RefundRequest,
    RefundResponse,
    TransactionView,
)
from creditflow.services.purchases.schemas import PurchaseCreateRequest, PurchaseResponse
from creditflow.services.reconciliation.schemas import ReconciliationReport, ResolveReviewRequest, ReviewView

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "environment",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "rate_limit_per_minute",
        "max_generation_retries",
        "generation_stale_after_seconds",
        "reconciliation_interval_seconds",
    ],
)
services = build_services(SessionLocal)
limiter = build_limiter()
publisher = OutboxPublisher(SessionLocal, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + reconciliation loop with application lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    reconciliation_task = asyncio.create_task(
        services.reconciliation.run_forever(settings.reconciliation_interval_seconds)
    )
    yield
    publisher_task.cancel()
    reconciliation_task.cancel()
    await publisher.close()


app = FastAPI(title="Creditflow Ledger", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app)


def get_services() -> Services:
    return services


def get_limiter() -> TokenBucketLimiter:
    return limiter


def authorized(
    request: Request,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
    rate_limiter: TokenBucketLimiter = Depends(get_limiter),
) -> None:
    """API key gate + per-client token bucket for every non-probe endpoint."""

    enforce_api_key(x_api_key)
    trace_id_ctx.set(x_trace_id or str(uuid4()))
    client = request.client.host if request.client else "unknown"
    rate_limiter.check(client)


def _purchase_response(purchase) -> PurchaseResponse:
    return PurchaseResponse(
        purchase_id=purchase.id,
        account_id=purchase.account_id,
        amount_credits=purchase.amount_credits,
        status=purchase.status,
        provider_payment_id=purchase.provider_payment_id,
        applied_at=purchase.applied_at,
    )


@app.post("/accounts", response_model=BalanceResponse, dependencies=[Depends(authorized)])
def open_account(req: AccountCreateRequest, svc: Services = Depends(get_services)):
    """Create a zero-balance account (signup hook); idempotent."""

    with log_context(account_id=req.account_id):
        return BalanceResponse(balance=svc.ledger.open_account(req.account_id))


@app.get("/accounts/{account_id}/balance", response_model=BalanceResponse, dependencies=[Depends(authorized)])
def get_balance(account_id: str, svc: Services = Depends(get_services)):
    """Current balance of one account."""

    try:
        return BalanceResponse(balance=svc.ledger.get_balance(account_id))
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.get(
    "/accounts/{account_id}/transactions",
    response_model=list[TransactionView],
    dependencies=[Depends(authorized)],
)
def list_transactions(account_id: str, limit: int = 100, svc: Services = Depends(get_services)):
    """Most recent ledger entries for one account."""

    return [
        TransactionView(
            id=txn.id,
            kind=txn.kind,
            amount=txn.amount,
            balance_after=txn.balance_after,
            related_purchase_id=txn.related_purchase_id,
            related_generation_id=txn.related_generation_id,
        )
        for txn in svc.ledger.list_transactions(account_id, limit=limit)
    ]


@app.post("/purchases", response_model=PurchaseResponse, dependencies=[Depends(authorized)])
def create_purchase(req: PurchaseCreateRequest, svc: Services = Depends(get_services)):
    """Register a checkout intent in `pending`; credits follow the approved payment webhook."""

    try:
        purchase = svc.purchases.create_purchase(req.account_id, req.amount_credits)
    except CreditflowError as exc:
        raise http_error(exc) from exc
    return _purchase_response(purchase)


@app.get("/purchases/{purchase_id}", response_model=PurchaseResponse, dependencies=[Depends(authorized)])
def get_purchase(purchase_id: str, svc: Services = Depends(get_services)):
    try:
        return _purchase_response(svc.purchases.get_purchase(purchase_id))
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.post("/generations", response_model=GenerationResponse, dependencies=[Depends(authorized)])
def create_generation(req: GenerationCreateRequest, svc: Services = Depends(get_services)):
    """Register a job in `pending`; nothing is debited until it is started."""

    try:
        generation = svc.generations.create_generation(req.account_id, req.credits)
    except CreditflowError as exc:
        raise http_error(exc) from exc
    return GenerationResponse.from_model(generation)


@app.post("/generations/{generation_id}/start", dependencies=[Depends(authorized)])
def start_generation(generation_id: str, svc: Services = Depends(get_services)):
    """Reserve credits and move the job to `processing`.

    Responds 402 when the balance cannot cover the job; the job must then not
    be dispatched to the provider.
    """

    try:
        result = svc.generations.start(generation_id)
    except CreditflowError as exc:
        raise http_error(exc) from exc
    if result.outcome == ledger_schemas.INSUFFICIENT_BALANCE:
        raise HTTPException(status_code=402, detail="insufficient balance")
    if result.outcome == ledger_schemas.NOT_FOUND:
        raise HTTPException(status_code=404, detail="generation or account not found")
    generation = svc.generations.get_generation(generation_id)
    return {
        "outcome": result.outcome,
        "newBalance": result.new_balance,
        "generation": GenerationResponse.from_model(generation).model_dump(mode="json"),
    }


@app.post("/generations/{generation_id}/task", response_model=GenerationResponse, dependencies=[Depends(authorized)])
def attach_task(generation_id: str, req: AttachTaskRequest, svc: Services = Depends(get_services)):
    """Record the provider task id returned by dispatch."""

    try:
        return GenerationResponse.from_model(svc.generations.attach_task(generation_id, req.provider_task_id))
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.get("/generations/{generation_id}", response_model=GenerationResponse, dependencies=[Depends(authorized)])
def get_generation(generation_id: str, svc: Services = Depends(get_services)):
    try:
        return GenerationResponse.from_model(svc.generations.get_generation(generation_id))
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.post("/generations/retry", response_model=GenerationResponse, dependencies=[Depends(authorized)])
def retry_generation(req: RetryRequest, svc: Services = Depends(get_services)):
    """Operator retry: reset a failed (or running) job to `pending` after refunding it."""

    try:
        return GenerationResponse.from_model(svc.generations.retry(req.generation_id))
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.post("/credits/refund", response_model=RefundResponse, dependencies=[Depends(authorized)])
def refund(req: RefundRequest, svc: Services = Depends(get_services)):
    """Refund whatever a generation still holds; redundant calls return `already_refunded`."""

    try:
        result = svc.ledger.refund_for_failure(req.generation_id)
    except CreditflowError as exc:
        raise http_error(exc) from exc
    if result.outcome == ledger_schemas.NOT_FOUND:
        raise HTTPException(status_code=404, detail="generation not found")
    return RefundResponse(success=True, outcome=result.outcome, newBalance=result.new_balance)


@app.post("/reconciliation/runs", response_model=ReconciliationReport, dependencies=[Depends(authorized)])
def run_reconciliation(svc: Services = Depends(get_services)):
    """Run one reconciliation pass now and return its report."""

    try:
        return svc.reconciliation.run()
    except CreditflowError as exc:
        raise http_error(exc) from exc


@app.get("/reconciliation/balances", response_model=list[BalanceMismatch], dependencies=[Depends(authorized)])
def balance_mismatches(limit: int = 1000, svc: Services = Depends(get_services)):
    """Accounts whose balance differs from the sum of their committed transactions."""

    return svc.ledger.balance_mismatches(limit=limit)


@app.get("/ops/reviews", response_model=list[ReviewView], dependencies=[Depends(authorized)])
def get_reviews(status: str = "PENDING", limit: int = 100, svc: Services = Depends(get_services)):
    """List review queue rows (default: pending)."""

    return [ReviewView.from_model(row) for row in svc.reconciliation.list_reviews(status=status.upper(), limit=limit)]


@app.post("/ops/reviews/{review_id}/resolve", response_model=ReviewView, dependencies=[Depends(authorized)])
def resolve_review(review_id: str, req: ResolveReviewRequest, svc: Services = Depends(get_services)):
    """Close a review after the case was handled by hand."""

    try:
        row = svc.reconciliation.resolve_review(review_id, req.resolved_by, req.note)
    except CreditflowError as exc:
        raise http_error(exc) from exc
    return ReviewView.from_model(row)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
