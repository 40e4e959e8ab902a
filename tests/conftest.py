"""Shared fixtures: one SQLite database per test and services wired around it."""

import os

os.environ["POSTGRES_DSN"] = "sqlite+pysqlite:///:memory:"
os.environ["API_KEY"] = "test-api-key"
os.environ["ENVIRONMENT"] = "test"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "payment-secret"
os.environ["GENERATION_WEBHOOK_SECRET"] = "generation-secret"
os.environ["STORE_RETRY_BASE_DELAY_SECONDS"] = "0"

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from creditflow.common import outbox  # noqa: F401
from creditflow.common.db import Base
from creditflow.services.container import build_services
from creditflow.services.generations import models as generation_models  # noqa: F401
from creditflow.services.ledger import models as ledger_models
from creditflow.services.purchases import models as purchase_models  # noqa: F401
from creditflow.services.reconciliation import models as reconciliation_models  # noqa: F401
from creditflow.services.webhooks import models as webhook_models  # noqa: F401

API_HEADERS = {"x-api-key": "test-api-key"}


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'creditflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def services(session_factory):
    return build_services(session_factory, service_name="test")


@pytest.fixture
def fund(services):
    """Open an account (if needed) and credit it through an approved purchase."""

    def _fund(account_id: str, credits: int) -> int:
        services.ledger.open_account(account_id)
        purchase = services.purchases.create_purchase(account_id, credits)
        services.purchases.handle_payment_status(purchase.id, "approved", f"pay-{purchase.id}")
        return services.ledger.get_balance(account_id)

    return _fund


@pytest.fixture
def transactions(session_factory):
    """Committed transactions of one account, optionally filtered by kind."""

    def _transactions(account_id: str, kind: str | None = None) -> list:
        with session_factory() as db:
            stmt = select(ledger_models.CreditTransaction).where(
                ledger_models.CreditTransaction.account_id == account_id
            )
            if kind is not None:
                stmt = stmt.where(ledger_models.CreditTransaction.kind == kind)
            return db.execute(stmt).scalars().all()

    return _transactions
