"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")

from app import database
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, FriendLink, FriendRequestStatus, User
from soundwave.realtime.relay import registry


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine, monkeypatch) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine.

    Short-lived sessions opened through ``get_db_session`` use it as well.
    """

    factory = sessionmaker(bind=test_engine, future=True)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    registry.clear()


@pytest.fixture()
def create_user(session_factory) -> Callable[..., int]:
    """Insert a user and return its id."""

    def factory(username: str, *, first_name: str | None = None, last_name: str | None = None) -> int:
        with session_factory() as session:
            user = User(
                username=username,
                email=f"{username}@example.com",
                first_name=first_name or username.capitalize(),
                last_name=last_name,
            )
            session.add(user)
            session.commit()
            return user.id

    return factory


@pytest.fixture()
def befriend(session_factory) -> Callable[[int, int], None]:
    """Create an accepted friendship between two users."""

    def factory(requester_id: int, addressee_id: int) -> None:
        with session_factory() as session:
            session.add(
                FriendLink(
                    requester_id=requester_id,
                    addressee_id=addressee_id,
                    status=FriendRequestStatus.ACCEPTED,
                )
            )
            session.commit()

    return factory


@pytest.fixture()
def token_for() -> Callable[[int], str]:
    """Issue an access token for a user id."""

    def factory(user_id: int) -> str:
        return create_access_token({"sub": str(user_id)})

    return factory


@pytest.fixture()
def auth_headers(token_for) -> Callable[[int], dict[str, str]]:
    def factory(user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return factory
