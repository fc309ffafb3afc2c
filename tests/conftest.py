"""Pytest configuration and fixtures."""

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from race_results import models
from race_results.db import Base, get_session, make_engine, make_sessionmaker
from race_results.main import app
from race_results.security import hash_password

PASSWORD = "password123"


@pytest.fixture
def session_factory():
    """In-memory database shared by every session of one test."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_sessionmaker(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def client(session_factory):
    def _override():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_session] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(session, email, role=models.RUNNER, name=None, verification_status=None):
    if role == models.MARSHAL and verification_status is None:
        verification_status = models.APPROVED
    u = models.User(
        email=email,
        name=name or email.split("@")[0].title(),
        password_hash=hash_password(PASSWORD),
        role=role,
        verification_status=verification_status,
    )
    session.add(u)
    session.commit()
    return u


def login(client, email, password=PASSWORD):
    client.cookies.clear()
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r


@pytest.fixture
def marshal(session):
    return make_user(session, "marshal@example.com", role=models.MARSHAL)


@pytest.fixture
def admin(session):
    return make_user(session, "admin@example.com", role=models.ADMIN)


@pytest.fixture
def event(session, marshal):
    e = models.Event(
        event_name="City Run",
        event_date=date.today() + timedelta(days=30),
        location="Harbour",
        created_by=marshal.id,
    )
    e.categories.append(models.Category(category_name="10K"))
    e.categories.append(models.Category(category_name="5K"))
    session.add(e)
    session.commit()
    return e


@pytest.fixture
def category(event):
    return event.categories[0]


def add_participant(session, event, category, name, status=models.APPROVED):
    u = make_user(session, f"{name.lower()}@example.com", name=name)
    p = models.Participant(
        user_id=u.id,
        event_id=event.id,
        category_id=category.id,
        registration_status=status,
        payment_status=models.VERIFIED if status == models.APPROVED else models.PENDING,
    )
    session.add(p)
    session.commit()
    return p


@pytest.fixture
def runners(session, event, category):
    return [add_participant(session, event, category, name) for name in ("Ann", "Bob", "Cat")]
