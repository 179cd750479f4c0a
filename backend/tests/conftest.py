"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import pytest
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import Mock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from paysync.core.config import Settings
from paysync.main import create_app
from paysync.models import Account, Entitlement
from paysync.models.base import Base
from paysync.services.paystack_client import PaystackClient
from paysync.services.play_client import GooglePlayClient

# Fixed clock for deterministic expiry arithmetic
NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000

PAYSTACK_SECRET = "sk_test_paysync_secret"
TASKS_SECRET = "operator-secret"
PACKAGE_NAME = "com.example.paysync"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    """x-paystack-signature for a raw body"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def paystack_body(event: str = "charge.success", **data) -> bytes:
    return json.dumps({"event": event, "data": data}).encode("utf-8")


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """Fresh in-memory schema per test"""
    Base.metadata.create_all(bind=test_engine)
    try:
        yield TestSessionLocal
    finally:
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for arranging and inspecting rows"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite so concurrent sessions use separate connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'paysync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def mock_redis():
    """Redis client backed by fakeredis"""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        PAYSTACK_SECRET_KEY=PAYSTACK_SECRET,
        TASKS_SECRET=TASKS_SECRET,
        GOOGLE_PLAY_PACKAGE_NAME=PACKAGE_NAME,
        ALLOWED_SKU_PREFIX="premium_",
        SWEEP_INTERVAL_SECONDS=0,
        OTEL_EXPORTER_OTLP_ENDPOINT="",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture(scope="function")
def mock_gateway() -> Mock:
    """Paystack client double"""
    return Mock(spec=PaystackClient)


@pytest.fixture(scope="function")
def mock_billing() -> Mock:
    """Google Play client double"""
    billing = Mock(spec=GooglePlayClient)
    billing.default_package_name = PACKAGE_NAME
    billing.get_subscription.return_value = None
    billing.get_product_purchase.return_value = None
    return billing


@pytest.fixture(scope="function")
def client(test_settings, session_factory, mock_gateway, mock_billing, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with injected database, Redis and provider doubles"""
    app = create_app(
        test_settings,
        session_factory=session_factory,
        gateway=mock_gateway,
        billing=mock_billing,
        redis_client=mock_redis,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def make_entitlement(db_session: Session):
    """Factory inserting an entitlement row"""
    def _make(account_id: str, plan: str = "premium", expires_at=None, legacy_expiry_millis=None, activated_at=None):
        entitlement = Entitlement(
            account_id=account_id,
            plan=plan,
            expires_at=expires_at,
            legacy_expiry_millis=legacy_expiry_millis,
            activated_at=activated_at,
        )
        db_session.add(entitlement)
        db_session.commit()
        return entitlement
    return _make


@pytest.fixture(scope="function")
def make_account(db_session: Session):
    """Factory inserting an account row"""
    def _make(account_id: str, email: str = None):
        account = Account(id=account_id, email=email)
        db_session.add(account)
        db_session.commit()
        return account
    return _make
