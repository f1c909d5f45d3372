import os
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("SMS_ENABLED", "false")

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

from app.config import Settings
from app.db import Base
from app.models.account import Account, AccountRole, AccountStatus, InstitutionType, PaymentStatus
from app.models.billing import BillingCycle, Invoice, InvoiceStatus, InvoiceType

NOW = datetime(2024, 3, 15, 9, 0, tzinfo=UTC)


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

        # pysqlite needs to hand transaction control to SQLAlchemy for
        # SAVEPOINT to work.
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
    # Service commits release a savepoint; the outer transaction is always
    # rolled back so tests never see each other's rows.
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
def now():
    return NOW


@pytest.fixture()
def test_settings():
    return Settings(sms_enabled=False)


def _unique_username() -> str:
    return f"user-{uuid.uuid4().hex[:10]}"


@pytest.fixture()
def make_account(db_session):
    """Factory for accounts; ``age_days`` sets created_at relative to NOW."""

    def _make(
        role=AccountRole.entrepreneur,
        package_type="silver",
        age_days=45,
        account_status=AccountStatus.active,
        institution_type=InstitutionType.government,
        phone_number="0712345678",
        **kwargs,
    ):
        account = Account(
            first_name=kwargs.pop("first_name", "Test"),
            last_name=kwargs.pop("last_name", "User"),
            username=kwargs.pop("username", _unique_username()),
            phone_number=phone_number,
            role=role,
            package_type=package_type,
            institution_type=institution_type,
            account_status=account_status,
            payment_status=kwargs.pop("payment_status", PaymentStatus.paid),
            created_at=NOW - timedelta(days=age_days),
            **kwargs,
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _make


@pytest.fixture()
def account(make_account):
    return make_account()


@pytest.fixture()
def operator(make_account):
    return make_account(
        role=AccountRole.super_admin,
        package_type=None,
        username="ops",
        phone_number=None,
    )


@pytest.fixture()
def make_invoice(db_session):
    def _make(
        account,
        billing_period="2024-03",
        invoice_type=InvoiceType.subscription,
        billing_cycle=BillingCycle.monthly,
        amount=50000,
        issued_at=None,
        due_at=None,
        status=InvoiceStatus.pending,
        **kwargs,
    ):
        invoice = Invoice(
            account_id=account.id,
            invoice_number=kwargs.pop("invoice_number", f"INV-{uuid.uuid4().hex[:6]}"),
            invoice_type=invoice_type,
            billing_cycle=billing_cycle,
            billing_period=billing_period,
            amount=amount,
            currency="TZS",
            issued_at=issued_at or NOW,
            due_at=due_at or (issued_at or NOW) + timedelta(days=7),
            status=status,
            **kwargs,
        )
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _make
