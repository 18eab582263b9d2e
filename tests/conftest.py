"""Shared pytest fixtures."""

import os

# Settings are read at import time; point them at an in-memory database first.
os.environ["DB_DRIVER_NAME"] = "sqlite"
os.environ["DB_DATABASE_NAME"] = ":memory:"
os.environ["INIT_MODE"] = "test"
os.environ.setdefault("FRONTEND_URL", "http://localhost:5173")
os.environ.setdefault("API_KEY", "test-openai-key")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest  # noqa: E402

from historylab.chat.identity import ConversationIdentity, encode_conversation_id  # noqa: E402
from historylab.database.config.connection_engine import connection_engine, create_tables, metadata  # noqa: E402


@pytest.fixture
def identity() -> ConversationIdentity:
    return ConversationIdentity("user-1", "collection-1", "convo-1")


@pytest.fixture
def conversation_id(identity: ConversationIdentity) -> str:
    return encode_conversation_id(*identity)


@pytest.fixture
def clean_db():
    """Fresh tables for each test touching the database."""
    create_tables()
    metadata.drop_all(connection_engine)
    create_tables()
    yield
    metadata.drop_all(connection_engine)
