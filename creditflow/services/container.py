"""Wiring of services around one injected session factory."""

from dataclasses import dataclass

from creditflow.common.config import settings
from creditflow.services.generations.service import GenerationService
from creditflow.services.ledger.service import LedgerService
from creditflow.services.purchases.service import PurchaseService
from creditflow.services.reconciliation.service import ReconciliationJob
from creditflow.services.webhooks.service import EventLog, WebhookProcessor


@dataclass
class Services:
    ledger: LedgerService
    purchases: PurchaseService
    generations: GenerationService
    event_log: EventLog
    webhooks: WebhookProcessor
    reconciliation: ReconciliationJob


def build_services(session_factory, service_name: str | None = None) -> Services:
    name = service_name or settings.service_name
    ledger = LedgerService(session_factory, service_name=name)
    purchases = PurchaseService(session_factory, ledger)
    generations = GenerationService(
        session_factory,
        ledger,
        max_retries=settings.max_generation_retries,
        stale_after_seconds=settings.generation_stale_after_seconds,
        default_cost=settings.default_generation_cost,
        service_name=name,
    )
    event_log = EventLog(session_factory)
    webhooks = WebhookProcessor(event_log, purchases, generations, service_name=name)
    reconciliation = ReconciliationJob(session_factory, ledger, purchases, generations, webhooks, service_name=name)
    return Services(
        ledger=ledger,
        purchases=purchases,
        generations=generations,
        event_log=event_log,
        webhooks=webhooks,
        reconciliation=reconciliation,
    )
