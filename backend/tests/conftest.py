"""Pytest fixtures — SQLite database per test, service helpers and a TestClient."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from fastapi.testclient import TestClient

from eventplanner.database import Base, get_db, get_session_factory
from eventplanner.main import app
from eventplanner.models.user import User
from eventplanner.models.event import Event
from eventplanner.models.quota import Channel
from eventplanner.services import event_service
from eventplanner.services.delivery import DeliveryChannel, DeliveryResult, OutboundMessage, get_delivery_channel

SQLITE_URL = "sqlite:///./test.db"

# Fixed clock for service-level tests; events are scheduled a week later.
NOW = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)
EVENT_START = NOW + timedelta(days=7)


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})

    # Enable WAL mode for better concurrency
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session for service-level tests."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class RecordingDelivery(DeliveryChannel):
    """Delivery channel that remembers what it was asked to send and fails chosen contacts."""

    def __init__(self, failing: Optional[set[str]] = None):
        self.failing = set(failing or ())
        self.sent: list[tuple[str, Channel, OutboundMessage]] = []

    def send(self, recipients, channel, content):
        results = []
        for contact in recipients:
            if contact in self.failing:
                results.append(DeliveryResult(contact=contact, ok=False, error="provider rejected"))
            else:
                self.sent.append((contact, channel, content))
                results.append(DeliveryResult(contact=contact, ok=True))
        return results


@pytest.fixture(scope="function")
def delivery():
    return RecordingDelivery()


@pytest.fixture(scope="function")
def client(session_factory, delivery):
    """FastAPI TestClient with the database dependencies overridden to use SQLite."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_delivery_channel] = lambda: delivery
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Service-level helpers
# ---------------------------------------------------------------------------
def make_user(db: Session, name: str = "Test User", email: Optional[str] = None, phone: Optional[str] = None) -> User:
    user = User(display_name=name, email=email, phone=phone)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_event(
    db: Session,
    organizer: User,
    capacity: Optional[int] = None,
    waitlist_enabled: bool = False,
    publish: bool = True,
    **overrides,
) -> Event:
    """Create (and by default publish) a complete event a week after ``NOW``."""
    fields = {
        "title": "Picnic",
        "description": "Bring a blanket",
        "date_time": EVENT_START,
        "location": "Riverside Park",
    }
    fields.update(overrides)
    event = event_service.create_event(
        db,
        creator_id=organizer.user_id,
        capacity=capacity,
        waitlist_enabled=waitlist_enabled,
        **fields,
    )
    if publish:
        event = event_service.publish_event(db, event.event_id, organizer.user_id, now=NOW)
    return event


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------
def create_test_user(client: TestClient, name: str = "Test User", email: Optional[str] = None,
                     phone: Optional[str] = None) -> dict:
    """Helper: POST /api/users and return response JSON."""
    resp = client.post("/api/users/", json={
        "display_name": name,
        "email": email,
        "phone": phone,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_test_event(client: TestClient, creator_id: str, publish: bool = True, **overrides) -> dict:
    """Helper: POST /api/events (and publish) with a start time a week from now."""
    payload = {
        "creator_id": creator_id,
        "title": "Board Game Night",
        "description": "Snacks provided",
        "date_time": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
        "location": "Community Hall",
    }
    payload.update(overrides)
    resp = client.post("/api/events/", json=payload)
    assert resp.status_code == 201, resp.text
    event = resp.json()
    if publish:
        resp = client.post(f"/api/events/{event['event_id']}/publish?actor_user_id={creator_id}")
        assert resp.status_code == 200, resp.text
        event = resp.json()
    return event
