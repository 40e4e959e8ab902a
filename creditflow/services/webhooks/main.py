"""Inbound provider webhooks: payment processor and video-generation provider.

Non-2xx is returned only for signature failures, malformed bodies, and when
the delivery could not be durably recorded. Everything else is acknowledged so
providers stop retrying money-relevant events.
"""

import json
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from creditflow.common.config import settings
from creditflow.common.db import SessionLocal
from creditflow.common.errors import DependencyError, PayloadError, SignatureVerificationError
from creditflow.common.http import http_error, install_metrics_middleware
from creditflow.common.logging import configure_logging, logger, trace_id_ctx
from creditflow.common.metrics import metrics_response, signature_failures_total
from creditflow.common.signature import verify_signature
from creditflow.common.startup import log_startup_config
from creditflow.common.tracing import instrument_app, setup_tracing
from creditflow.services.container import Services, build_services
from creditflow.services.webhooks.schemas import GENERATION_PROVIDER, PAYMENT_PROVIDER, WebhookAck

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "environment",
        "postgres_dsn",
        "payment_webhook_secret",
        "generation_webhook_secret",
        "signature_tolerance_seconds",
    ],
)
services = build_services(SessionLocal)

app = FastAPI(title="Creditflow Webhooks")
instrument_app(app)
install_metrics_middleware(app)


def get_services() -> Services:
    return services


def _verify(provider: str, raw_body: bytes, signature: str | None, secret: str | None) -> int | None:
    """Return the signed timestamp, or None when verification is skipped outside production."""

    if not secret:
        if settings.is_production:
            signature_failures_total.labels(service=settings.service_name, provider=provider).inc()
            logger.error("webhook_secret_missing provider=%s", provider)
            raise HTTPException(status_code=401, detail="webhook signature cannot be verified")
        logger.warning("webhook_signature_unverified provider=%s environment=%s", provider, settings.environment)
        return None
    try:
        return verify_signature(
            raw_body,
            signature,
            secret.encode("utf-8"),
            tolerance_seconds=settings.signature_tolerance_seconds,
        )
    except SignatureVerificationError as exc:
        signature_failures_total.labels(service=settings.service_name, provider=provider).inc()
        logger.warning("webhook_signature_rejected provider=%s reason=%s", provider, exc)
        raise http_error(exc) from exc


async def _receive(provider: str, request: Request, signature: str | None, secret: str | None, handler) -> WebhookAck:
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    raw_body = await request.body()
    signature_ts = _verify(provider, raw_body, signature, secret)
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        logger.warning("webhook_body_not_json provider=%s", provider)
        raise HTTPException(status_code=400, detail="body is not valid JSON") from exc
    try:
        return await run_in_threadpool(handler, payload, signature_ts)
    except PayloadError as exc:
        logger.warning("webhook_payload_rejected provider=%s error=%s", provider, exc)
        raise http_error(exc) from exc
    except DependencyError as exc:
        # Not durably recorded: let the provider retry.
        raise http_error(exc) from exc


@app.post("/webhooks/payments", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    svc: Services = Depends(get_services),
):
    """Payment processor notification for a purchase."""

    return await _receive(
        PAYMENT_PROVIDER, request, x_signature, settings.payment_webhook_secret, svc.webhooks.handle_payment
    )


@app.post("/webhooks/generations", response_model=WebhookAck)
async def generation_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    svc: Services = Depends(get_services),
):
    """Generation provider task state change."""

    return await _receive(
        GENERATION_PROVIDER, request, x_signature, settings.generation_webhook_secret, svc.webhooks.handle_generation
    )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
