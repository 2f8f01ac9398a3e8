# tests/conftest.py

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config
import main
from auth import create_access_token
from database import Base, get_db
from models import User
from projects import create_project

from .fakes import RecordingNotifier


@pytest.fixture()
def engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps one connection so every session (including the ones
    FastAPI opens from worker threads) sees the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    """Insert a user directly; the password column holds an unhashed placeholder."""
    counter = {"n": 0}

    def _make(name=None, email=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=name or f"User {n}",
            email=email or f"user{n}@example.com",
            password="not-a-hash",
            personal_tags=[],
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def project_of(db):
    def _create(owner, name="Project"):
        return create_project(db, owner, {"name": name})

    return _create


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def no_outbound_email(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "")
    monkeypatch.setattr(config, "FROM_EMAIL", "")


@pytest.fixture(autouse=True)
def reset_rate_limits():
    main.rate_limit_store.clear()
    yield
    main.rate_limit_store.clear()


@pytest.fixture()
def client(session_factory, notifier, tmp_path, monkeypatch):
    """TestClient bound to the in-memory database; lifespan is not run."""
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}

    return _headers
