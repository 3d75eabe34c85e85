import os
import sqlite3
import sys
import uuid
from datetime import datetime, timedelta, timezone

# Billing coordination runs against the in-process backends during tests
os.environ["BILLING_KV_BACKEND"] = "memory"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["BILLING_LOCK_BACKOFF_SECONDS"] = "0.01"
os.environ["BILLING_IDEMPOTENCY_WAIT_SECONDS"] = "0.2"
os.environ["LOG_FORMAT"] = "text"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.config import settings as base_settings
from app.models.billing import (
    BillingInterval,
    BillingPlan,
    Payment,
    PaymentStatus,
    SubscriptionStatus,
)
from app.services import distributed_lock, idempotency
from app.services import billing as billing_service  # noqa: F401
from app.services.billing import webhooks  # noqa: F401
from app.services.billing.repository import SubscriptionRepository
from tests.mocks import FakePaystackGateway


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite manages transactions itself and breaks SAVEPOINT; take over
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    """Session inside an outer transaction; service commits become savepoints."""
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def _reset_coordination_state():
    idempotency._memory_store.clear()
    distributed_lock._memory_backend.clear()
    yield
    idempotency._memory_store.clear()
    distributed_lock._memory_backend.clear()


@pytest.fixture()
def override_settings(monkeypatch):
    """Swap the frozen settings object in every loaded ``app`` module."""

    def _apply(**changes):
        patched = base_settings.model_copy(update=changes)
        for name, module in list(sys.modules.items()):
            if not (name == "app" or name.startswith("app.")):
                continue
            if getattr(module, "settings", None) is base_settings:
                monkeypatch.setattr(module, "settings", patched)
        return patched

    return _apply


@pytest.fixture()
def fake_paystack(monkeypatch):
    from app.services import paystack

    gateway = FakePaystackGateway()
    monkeypatch.setattr(paystack, "initialize_transaction", gateway.initialize_transaction)
    monkeypatch.setattr(paystack, "verify_transaction", gateway.verify_transaction)
    monkeypatch.setattr(paystack, "disable_subscription", gateway.disable_subscription)
    monkeypatch.setattr(paystack, "fetch_subscription", gateway.fetch_subscription)
    return gateway


@pytest.fixture()
def user_id():
    return uuid.uuid4()


@pytest.fixture()
def plan(db_session):
    plan = BillingPlan(
        name="Pro",
        description="Pro portal plan",
        price=500000,
        currency="NGN",
        interval=BillingInterval.monthly,
        max_portals=5,
        is_active=True,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def yearly_plan(db_session):
    plan = BillingPlan(
        name="Pro Yearly",
        price=5000000,
        currency="NGN",
        interval=BillingInterval.yearly,
        is_active=True,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def subscription(db_session, plan, user_id):
    """Incomplete subscription, as left behind by checkout."""
    subscription = SubscriptionRepository.create(db_session, user_id=user_id, plan=plan)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def active_subscription(db_session, subscription):
    now = datetime.now(timezone.utc)
    subscription.status = SubscriptionStatus.active
    subscription.current_period_start = now - timedelta(days=20)
    subscription.current_period_end = now + timedelta(days=10)
    subscription.provider_subscription_id = "SUB_pro_001"
    subscription.provider_customer_id = "CUS_pro_001"
    subscription.provider_email_token = "tok_pro_001"
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def make_payment(db_session):
    def _make(
        user_id,
        reference: str | None = None,
        *,
        subscription=None,
        amount: int = 500000,
        currency: str = "NGN",
        status: PaymentStatus = PaymentStatus.succeeded,
        created_at: datetime | None = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            subscription_id=subscription.id if subscription is not None else None,
            provider_payment_ref=reference or f"SUB-{uuid.uuid4().hex[:12]}",
            amount=amount,
            currency=currency,
            status=status,
        )
        if created_at is not None:
            payment.created_at = created_at
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _make


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient

    from app.db import get_db
    from app.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
