"""Shared fixtures for QConnect tests."""

from unittest.mock import AsyncMock

import pytest

import services.qconnect.settings as qconnect_settings
from services.qconnect.backend_client import BackendClient
from services.qconnect.models import QueryResult
from services.qconnect.persistence import InMemoryKeyValueStore
from services.qconnect.settings import Settings
from services.qconnect.tests.factories import make_conversation


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_base_url="http://qconnect.test",
        api_prefix="/api/v1",
        state_db_path=tmp_path / "state.db",
        default_model="gemini",
        default_database_type="kdb",
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture(autouse=True)
def test_settings(settings):
    """Install test settings as the global singleton."""
    original = qconnect_settings._settings
    qconnect_settings._settings = settings
    yield settings
    qconnect_settings._settings = original


@pytest.fixture
def storage():
    return InMemoryKeyValueStore()


@pytest.fixture
def client():
    """BackendClient stand-in with happy-path defaults."""
    mock = AsyncMock(spec=BackendClient)
    mock.create_conversation.return_value = make_conversation("conv-new")
    mock.get_conversation.return_value = make_conversation("conv-1")
    mock.generate_query.return_value = QueryResult(
        content="select from trade where date=.z.d"
    )
    mock.retry_query.return_value = QueryResult(
        content="select from trade where date=.z.d, sym=`AAPL"
    )
    mock.get_summary.return_value = "User is exploring trade data"
    mock.update_conversation.return_value = None
    mock.save_message.return_value = None
    mock.submit_feedback.return_value = None
    mock.list_user_conversations.return_value = []
    mock.get_verified_conversation_ids.return_value = set()
    mock.delete_conversation.return_value = None
    return mock
