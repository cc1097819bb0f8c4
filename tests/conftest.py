import os

# Keep the application engine off the local file database while tests import it.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from divebilling import models, webhooks  # noqa: E402
from divebilling.database import Base, get_db  # noqa: E402
from divebilling.errors import TransactionNotFound  # noqa: E402
from divebilling.gateway import CreatedTransaction, GatewayTransaction, get_gateway_client  # noqa: E402
from divebilling.main import app  # noqa: E402


class FakeWompiClient:
    """Configurable stand-in for ``WompiClient``.

    Created transactions start as ``PENDING`` on the fake gateway; tests move
    them with ``set_status``. Every call is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.create_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.transactions: dict[str, GatewayTransaction] = {}
        self._counter = 0

    def configure(
        self,
        create_error: Optional[Exception] = None,
        fetch_error: Optional[Exception] = None,
    ) -> None:
        self.create_error = create_error
        self.fetch_error = fetch_error

    def set_status(self, transaction_ref: str, status: str, customer_email: Optional[str] = None) -> None:
        existing = self.transactions.get(transaction_ref)
        self.transactions[transaction_ref] = GatewayTransaction(
            transaction_ref=transaction_ref,
            status=status,
            amount_in_cents=existing.amount_in_cents if existing else 0,
            customer_email=customer_email or (existing.customer_email if existing else None),
        )

    def calls_to(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method]

    def create_transaction(self, amount_in_cents, currency, customer_email, redirect_url, reference=None):
        self.calls.append(
            {
                "method": "create_transaction",
                "amount_in_cents": amount_in_cents,
                "currency": currency,
                "customer_email": customer_email,
                "redirect_url": redirect_url,
            }
        )
        if self.create_error is not None:
            raise self.create_error

        self._counter += 1
        transaction_ref = f"fake-txn-{self._counter:04d}"
        self.transactions[transaction_ref] = GatewayTransaction(
            transaction_ref=transaction_ref,
            status="PENDING",
            amount_in_cents=amount_in_cents,
            customer_email=customer_email,
        )
        return CreatedTransaction(
            transaction_ref=transaction_ref,
            checkout_url=f"https://checkout.wompi.co/l/{transaction_ref}",
            reference=reference or f"subscription_fake_{self._counter:04d}",
        )

    def fetch_transaction(self, transaction_ref):
        self.calls.append({"method": "fetch_transaction", "transaction_ref": transaction_ref})
        if self.fetch_error is not None:
            raise self.fetch_error
        if transaction_ref not in self.transactions:
            raise TransactionNotFound(f"Wompi has no transaction {transaction_ref}.")
        return self.transactions[transaction_ref]


@pytest.fixture(autouse=True)
def _billing_env(monkeypatch):
    """Isolate tests from a developer's local .env."""
    for name in ("DEFAULT_PLAN_ID", "SUBSCRIPTION_EXPIRY_ANCHOR", "PAYMENT_REDIRECT_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(webhooks, "WOMPI_EVENTS_SECRET", "")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def plan(db):
    plan = models.SubscriptionPlan(
        id="instructor-monthly",
        name="Instructor Mensual",
        description="Monthly instructor plan",
        price=49900,
        interval_days=30,
        active=True,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def second_plan(db):
    plan = models.SubscriptionPlan(
        id="center-monthly",
        name="Centro de Buceo Mensual",
        price=149900,
        interval_days=30,
        active=True,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def gateway():
    return FakeWompiClient()


@pytest.fixture
def client(db, gateway):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
