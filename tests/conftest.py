"""Pytest configuration and fixtures for the Reminder Bot tests.

Each test gets a fresh in-memory SQLite database shared by every session
(StaticPool), so the API, the dispatcher and the MCP tools see the same rows.
"""

import os

# Must be set before config/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PARSER_BACKEND"] = "rules"
os.environ["TIMEZONE"] = "UTC"
os.environ["LOG_TO_FILE"] = "false"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("ADMIN_API_KEY", None)
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("WHATSAPP_API_URL", None)

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
from api_server import app
from auth import encode_session_token
from database import PlatformEnum, SubscriptionTier
from identity import connect_identity, create_user
from reminder_parser import ReminderParser, RuleBasedBackend, get_parser

# 2024-01-01 10:00 in Asia/Kolkata
NOW = datetime(2024, 1, 1, 10, 0, tzinfo=ZoneInfo("Asia/Kolkata"))
UTC = timezone.utc


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def parser():
    return ReminderParser(RuleBasedBackend())


@pytest.fixture
def client(session_factory, parser):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[get_parser] = lambda: parser
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def user(db):
    return create_user(db, "alice@example.com")


@pytest.fixture
def other_user(db):
    return create_user(db, "bob@example.com")


@pytest.fixture
def pro_user(db):
    return create_user(db, "pro@example.com", subscription_tier=SubscriptionTier.PRO)


@pytest.fixture
def telegram_user(db, user):
    connect_identity(db, PlatformEnum.TELEGRAM, "12345", user.id)
    db.refresh(user)
    return user


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {encode_session_token(user.id, user.email)}"}
