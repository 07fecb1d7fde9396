"""
Pytest configuration and fixtures for testing.
Provides test database, seeded users, services, test client and auth helpers.
"""
import os

# Must be set before the application modules read their settings
os.environ["DATABASE_URL"] = "sqlite:///./test_chat.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_JSON"] = "false"

import pytest
from typing import Dict, Generator, List
from fastapi.encoders import jsonable_encoder
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from db.database import Base, SessionLocal, engine
from db.models import User
from db.repository import Repository
from core.security import create_access_token, hash_password
from services import ConversationService, MessageService
from api.dependencies import get_db
from main import app


class RecordingBroadcaster:
    """Stand-in for ConnectionManager that records every emission."""

    def __init__(self):
        self.events = []
        self.evictions = []

    def emit(self, group: str, event: str, payload) -> int:
        self.events.append((group, event, jsonable_encoder(payload)))
        return 0

    def evict(self, conversation_id: str, user_ids=None) -> int:
        self.evictions.append((conversation_id, None if user_ids is None else set(user_ids)))
        return 0

    def of_type(self, event: str) -> list:
        return [entry for entry in self.events if entry[1] == event]


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def seed_test_users(test_db: Session) -> List[User]:
    """
    Seed test database with 3 users: a@x.com, b@x.com, c@x.com.
    All share the password 'password123'.
    """
    repository = Repository(test_db)
    users = []

    for letter in ("a", "b", "c"):
        user = repository.create_user(
            email=f"{letter}@x.com",
            name=f"User {letter.upper()}",
            password_hash=hash_password("password123")
        )
        users.append(user)

    test_db.commit()
    return users


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def conversation_service(test_db: Session, broadcaster: RecordingBroadcaster) -> ConversationService:
    return ConversationService(test_db, broadcaster)


@pytest.fixture
def message_service(test_db: Session, broadcaster: RecordingBroadcaster) -> MessageService:
    return MessageService(test_db, broadcaster)


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> Generator[TestClient, None, None]:
    """
    Create a test client with test database dependency override.
    Runs the application lifespan so the fan-out manager is started.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client

    # Clean up dependency overrides
    app.dependency_overrides.clear()


def auth_headers(user: User) -> Dict[str, str]:
    """Authorization header carrying a fresh access token for the user."""
    token = create_access_token(user_id=user.id)["token"]
    return {"Authorization": f"Bearer {token}"}


def ws_token(user: User) -> str:
    return create_access_token(user_id=user.id)["token"]
