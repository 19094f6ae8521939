"""
Shared fixtures: in-memory SQLite, a recording propagator (no Redis) and an
API client wired to both.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REALTIME_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from tableside import models, security
from tableside.db import build_engine, get_session
from tableside.main import app
from tableside.propagation import ChangePropagator, get_propagator


class RecordingPropagator(ChangePropagator):
    """Propagator that remembers every (topic, event) it was asked to publish."""

    def __init__(self):
        super().__init__(realtime_enabled=False)
        self.published = []

    def publish(self, topic, event):
        self.published.append((topic, event))
        super().publish(topic, event)

    def topics(self):
        return [topic for topic, _ in self.published]

    def events_for(self, topic):
        return [event for t, event in self.published if t == topic]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def propagator():
    return RecordingPropagator()


@pytest.fixture
def venue(db):
    venue = models.Venue(name="Foodie Bistro")
    db.add(venue)
    db.commit()
    db.refresh(venue)
    return venue


@pytest.fixture
def table(db, venue):
    table = models.TableNode(label="T7", venue_id=venue.id)
    db.add(table)
    db.commit()
    db.refresh(table)
    return table


@pytest.fixture
def menu(db, venue):
    items = [
        models.MenuItem(venue_id=venue.id, name="Margherita", price_cents=1200),
        models.MenuItem(venue_id=venue.id, name="Lemonade", price_cents=350),
        models.MenuItem(venue_id=venue.id, name="Tiramisu", price_cents=700, is_available=False),
    ]
    for item in items:
        db.add(item)
    db.commit()
    for item in items:
        db.refresh(item)
    return items


@pytest.fixture
def staff(db, venue):
    user = models.User(
        email="staff@bistro.test",
        hashed_password=security.get_password_hash("secret123"),
        full_name="Floor Manager",
        venue_id=venue.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def staff_headers(staff):
    token = security.create_access_token({"sub": staff.email, "venue_id": staff.venue_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, propagator):
    def _get_session():
        yield db

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_propagator] = lambda: propagator
    yield TestClient(app)
    app.dependency_overrides.clear()
