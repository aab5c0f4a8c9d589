"""Shared pytest fixtures for test suite"""
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Keep the application engine off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONITOR_PERSIST_INTERVAL_SECONDS", "0")

from app.main import app
from app.api.webhooks import get_monitor, get_pipeline, get_snapshot_reader
from app.db import redis as redis_module
from app.models import Base
from app.models.order import Order
from app.models.subscription import Subscription
from app.services.duplicate_detector import DuplicateDetector
from app.services.entity_resolver import EntityResolver
from app.services.idempotency_service import IdempotencyCoordinator
from app.services.monitor import WebhookMonitor
from app.services.processor_client import ProcessorClient, ProcessorResource
from app.services.reconciler import StateReconciler
from app.services.signature_service import SignatureVerifier, compute_signature
from app.services.webhook_pipeline import NotificationPipeline


TEST_WEBHOOK_SECRET = "test_webhook_secret"

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


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def fake_processor() -> Mock:
    """Processor client double; tests set return values per resource type"""
    return Mock(spec=ProcessorClient)


@pytest.fixture(scope="function")
def monitor() -> WebhookMonitor:
    return WebhookMonitor(window_size=100, silence_hours=24)


@pytest.fixture(scope="function")
def pipeline(db_session: Session, fake_processor: Mock, monitor: WebhookMonitor) -> NotificationPipeline:
    """Pipeline wired to the test database; lock waits do not sleep"""
    return NotificationPipeline(
        session_factory=TestSessionLocal,
        verifier=SignatureVerifier(secret=TEST_WEBHOOK_SECRET, environment="test", replay_window_seconds=600),
        detector=DuplicateDetector(stale_after_seconds=300),
        coordinator=IdempotencyCoordinator(
            lock_ttl_seconds=30,
            max_retries=3,
            retry_backoff_ms=10,
            max_backoff_ms=50,
            sleep=lambda seconds: None
        ),
        resolver=EntityResolver(),
        reconciler=StateReconciler(),
        processor=fake_processor,
        monitor=monitor,
        result_ttl_seconds=300
    )


@pytest.fixture(scope="function")
def client(pipeline: NotificationPipeline, monitor: WebhookMonitor, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with the test pipeline and mocked Redis"""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_monitor] = lambda: monitor
    app.dependency_overrides[get_snapshot_reader] = lambda: (lambda: redis_module.get_monitor_snapshot(mock_redis))

    try:
        with patch("app.main.init_db"):
            with patch("app.main.initialize_otel", return_value=False):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def sign():
    """Build signed delivery headers for a raw body"""
    def _sign(body: bytes, secret: str = TEST_WEBHOOK_SECRET, ts=None) -> dict:
        ts = str(int(time.time())) if ts is None else str(ts)
        return {
            "x-signature": f"ts={ts},v1={compute_signature(secret, ts, body)}",
            "x-timestamp": ts,
        }
    return _sign


@pytest.fixture(scope="function")
def deliver(pipeline: NotificationPipeline, sign):
    """Run a signed notification through the pipeline"""
    def _deliver(notification: dict, secret: str = TEST_WEBHOOK_SECRET, ts=None):
        body = json.dumps(notification).encode("utf-8")
        headers = sign(body, secret=secret, ts=ts)
        return pipeline.handle(body, headers["x-signature"], headers["x-timestamp"])
    return _deliver


@pytest.fixture(scope="function")
def make_subscription(db_session: Session):
    """Insert a subscription, committing so other sessions can see it"""
    def _make(**kwargs) -> Subscription:
        values = {
            "user_id": "u1",
            "product_id": "p1",
            "customer_email": "owner@example.com",
            "status": "pending",
        }
        values.update(kwargs)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription
    return _make


@pytest.fixture(scope="function")
def make_order(db_session: Session):
    def _make(**kwargs) -> Order:
        values = {"user_id": "u1", "status": "pending_payment"}
        values.update(kwargs)
        order = Order(**values)
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order
    return _make


@pytest.fixture(scope="function")
def payment_resource():
    """ProcessorResource for a payment"""
    def _make(payment_id: str = "p1", status: str = "approved", **kwargs) -> ProcessorResource:
        values = {
            "kind": "payment",
            "id": payment_id,
            "status": status,
            "payment_id": payment_id,
            "amount": 100.0,
            "currency": "ARS",
        }
        values.update(kwargs)
        return ProcessorResource(**values)
    return _make


@pytest.fixture(scope="function")
def preapproval_resource():
    """ProcessorResource for a subscription preapproval"""
    def _make(preapproval_id: str = "pre_1", status: str = "authorized", **kwargs) -> ProcessorResource:
        values = {
            "kind": "preapproval",
            "id": preapproval_id,
            "status": status,
            "preapproval_id": preapproval_id,
        }
        values.update(kwargs)
        return ProcessorResource(**values)
    return _make
