import os
import sqlite3
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

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

from billing_engine.config import BillingConfig
from billing_engine.db import Base
from billing_engine.models import (  # noqa: F401  (registers every table)
    Charge,
    FxRate,
    Mandate,
    MandateStatus,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
    PlanKey,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.services.billing.anchor_runner import anchor_cycle_runner
from billing_engine.services.object_storage import LocalStorageService

ANCHOR_DATE = date(2026, 3, 8)


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

        # Services rely on SAVEPOINTs; let SQLAlchemy emit BEGIN itself so
        # pysqlite does not interfere with nested transactions.
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
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def billing_config():
    return BillingConfig(
        vat_rate=Decimal("0.21"),
        direct_debit_discount_pct=Decimal("10"),
        fx_type="oficial",
        allow_stale_fx=False,
        default_anchor_day=8,
        default_timezone="America/Argentina/Buenos_Aires",
        retry_days=(3, 7),
        pd_adapter="debug_csv",
        pd_entity_id="0001",
        pd_service_id="PD",
        require_active_mandate=True,
        suspend_after_days=15,
        fiscal_issuer_mode="mock",
        fiscal_autorun=True,
        fiscal_document_type="invoice_b",
        fallback_provider="cig_qr",
        fallback_intent_ttl_hours=72,
        fallback_api_url=None,
        job_lock_ttl_seconds=900,
    )


@pytest.fixture()
def storage(tmp_path):
    return LocalStorageService(tmp_path / "files")


@pytest.fixture()
def subscription(db_session):
    subscription = Subscription(
        agency_id=uuid.uuid4(),
        status=SubscriptionStatus.active,
        plan_key=PlanKey.basico,
        billing_users=3,
        anchor_day=8,
        timezone_name="America/Argentina/Buenos_Aires",
        direct_debit_discount_pct=Decimal("10.00"),
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def payment_method(db_session, subscription):
    method = PaymentMethod(
        subscription_id=subscription.id,
        method_type=PaymentMethodType.direct_debit,
        status=PaymentMethodStatus.active,
        is_default=True,
        holder_name="Ana Perez",
        holder_tax_id="27123456784",
        account_last4="4321",
    )
    db_session.add(method)
    db_session.commit()
    db_session.refresh(method)
    return method


@pytest.fixture()
def mandate(db_session, payment_method):
    mandate = Mandate(
        payment_method_id=payment_method.id,
        status=MandateStatus.active,
        bank_reference="MND-0001",
        activated_at=datetime.now(UTC),
    )
    db_session.add(mandate)
    db_session.commit()
    db_session.refresh(mandate)
    return mandate


@pytest.fixture()
def fx_rate(db_session):
    rate = FxRate(
        fx_type="oficial",
        rate_date=date(2026, 3, 1),
        ars_per_usd=Decimal("1300.0000"),
        source="test",
    )
    db_session.add(rate)
    db_session.commit()
    return rate


@pytest.fixture()
def anchor_charge(db_session, subscription, payment_method, mandate, fx_rate, billing_config):
    """Recurring charge created by an anchor run on the subscription's anchor date."""
    anchor_cycle_runner.run(db_session, run_at=ANCHOR_DATE, config=billing_config)
    return (
        db_session.query(Charge)
        .filter(Charge.subscription_id == subscription.id)
        .one()
    )
