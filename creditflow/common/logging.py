"""Structured JSON logging with webhook/account correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from creditflow.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")


class ContextFilter(logging.Filter):
    """Inject service, trace, inbound event and account identifiers into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.environment = settings.environment
        record.trace_id = trace_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.account_id = account_id_ctx.get()
        return True


@contextmanager
def log_context(event_id: str | None = None, account_id: str | None = None):
    """Scope correlation ids to one unit of work (a delivery, a replayed event)."""

    tokens = []
    if event_id is not None:
        tokens.append((event_id_ctx, event_id_ctx.set(event_id)))
    if account_id is not None:
        tokens.append((account_id_ctx, account_id_ctx.set(account_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(environment)s %(trace_id)s %(event_id)s "
        "%(account_id)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # Per-request access lines duplicate http_requests_total.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("creditflow")
