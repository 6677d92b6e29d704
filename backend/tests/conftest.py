"""Shared test fixtures and configuration for backend tests."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from messenger.config import AppConfig, set_config
from messenger.main import app
from messenger.store import MessagingStore

TEST_SECRET = "messenger-test-signing-secret-0123456789"


def make_token(user_id: str, secret: str = TEST_SECRET, expires_in: int = 3600, **claims) -> str:
    """Mint a token the way the login service does."""
    payload = {
        "userId": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def ws_url(user_id: str) -> str:
    return f"/ws?token={make_token(user_id)}"


@pytest.fixture(autouse=True)
def app_config():
    """Use an in-memory store and a known signing secret for every test."""
    config = AppConfig()
    config.secrets.jwt.secret_key = TEST_SECRET
    config.store.db_path = ":memory:"
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def store():
    """Fresh in-memory MessagingStore installed as the singleton."""
    MessagingStore.reset_instance()
    instance = MessagingStore.get_instance(db_path=":memory:")
    yield instance
    MessagingStore.reset_instance()


@pytest.fixture
def users(store):
    """Three seeded users: alice, bob and carol."""
    return {
        "alice": store.upsert_user("Alice", "Anders", "https://img.example/alice.png", user_id="alice"),
        "bob": store.upsert_user("Bob", "Brown", user_id="bob"),
        "carol": store.upsert_user("Carol", "Chen", user_id="carol"),
    }


@pytest.fixture
def direct_conversation(store, users):
    """Direct conversation between alice and bob."""
    conversation_id, _ = store.get_or_create_direct_conversation("alice", "bob")
    return conversation_id


@pytest.fixture
def api_client(store):
    """TestClient with the lifespan running (hub + fan-out engine installed)."""
    with TestClient(app) as client:
        yield client
