"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import datetime
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base, get_db
from app.main import app
from app.models.business import Business
from app.models.reward_template import RewardTemplate
from app.services.notification_dispatcher import DELIVERED, NotificationDispatcher, get_dispatcher

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

NOW = datetime(2024, 3, 1, 12, 0, 0)


class FakeSmsSender:
    """Records every message; outcomes can be scripted per phone."""

    def __init__(self):
        self.sent: list[tuple[str, str, str | None]] = []
        self.outcomes: dict[str, str] = {}

    def send(self, to, body, sender=None):
        self.sent.append((to, body, sender))
        return self.outcomes.get(to, DELIVERED)

    def bodies_for(self, phone):
        return [body for to, body, _ in self.sent if to == phone]


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs these for SAVEPOINT to behave
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sms_sender() -> FakeSmsSender:
    return FakeSmsSender()


@pytest.fixture
def dispatcher(sms_sender) -> NotificationDispatcher:
    return NotificationDispatcher(sms_sender)


@pytest.fixture(scope="function")
def client(db_session: Session, dispatcher: NotificationDispatcher) -> Generator[TestClient, None, None]:
    """Create a test client with database and SMS overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def business(db_session: Session) -> Business:
    business = Business(
        name="Corner Cafe",
        slug="corner-cafe",
        sms_number="+15550000000",
        sms_enabled=True,
        checkin_cooldown_hours=24,
        reward_threshold=10,
        reward_expiry_days=30,
    )
    db_session.add(business)
    db_session.commit()
    db_session.refresh(business)
    return business


@pytest.fixture
def make_template(db_session: Session, business: Business):
    def _make(threshold=10, name="Free Coffee", discount_type="NONE", discount_value=0, priority=1, active=True):
        template = RewardTemplate(
            business_id=business.id,
            name=name,
            threshold=threshold,
            discount_type=discount_type,
            discount_value=discount_value,
            priority=priority,
            expiry_days=business.reward_expiry_days,
            active=active,
        )
        db_session.add(template)
        db_session.commit()
        db_session.refresh(template)
        return template

    return _make
