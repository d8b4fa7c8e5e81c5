"""Tests for ConversationStore: identity, hydration and self-healing loads."""

import pytest

from services.common.http_errors import (
    BackendResponseError,
    BackendUnavailableError,
    NotFoundError,
)
from services.qconnect.conversation_store import ConversationStore, default_title
from services.qconnect.models import Message, MessageRole
from services.qconnect.tests.factories import make_conversation

CURRENT_KEY = "currentConversationId"


@pytest.fixture
def store(client, storage, settings):
    return ConversationStore(client, storage, "user-1", settings)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_activates_and_persists(self, store, client, storage):
        store.append_local(Message(role=MessageRole.USER, content="old"))

        conversation = await store.create()

        assert conversation.id == "conv-new"
        assert store.active_id == "conv-new"
        assert store.messages == []
        assert storage.get(CURRENT_KEY) == "conv-new"
        user_id, title = client.create_conversation.call_args.args
        assert user_id == "user-1"
        assert title.startswith("New Conversation ")

    @pytest.mark.asyncio
    async def test_create_failure_keeps_previous(self, store, client, storage):
        await store.load("conv-1")
        store.append_local(Message(role=MessageRole.USER, content="keep me"))
        client.create_conversation.side_effect = BackendUnavailableError("down")

        assert await store.create() is None

        assert store.active_id == "conv-1"
        assert [m.content for m in store.messages] == ["keep me"]
        assert storage.get(CURRENT_KEY) == "conv-1"

    def test_default_title_format(self):
        from datetime import datetime

        assert (
            default_title(datetime(2024, 3, 1, 9, 5, 7))
            == "New Conversation 2024-03-01 09:05:07"
        )


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_hydrates_in_order(self, store, client, storage):
        client.get_conversation.return_value = make_conversation(
            "conv-1",
            title=None,
            messages=[
                Message(id="m1", role=MessageRole.USER, content="show trades for SPOT market"),
                Message(id="m2", role=MessageRole.ASSISTANT, content="select from trade"),
            ],
        )

        conversation = await store.load("conv-1")

        assert [m.id for m in store.messages] == ["m1", "m2"]
        assert conversation.title == "show trades for SPOT market"
        assert storage.get(CURRENT_KEY) == "conv-1"

    @pytest.mark.asyncio
    async def test_not_found_falls_back_to_create(self, store, client, storage):
        client.get_conversation.side_effect = NotFoundError("Conversation", "stale")

        conversation = await store.load("stale")

        assert conversation.id == "conv-new"
        assert store.active_id == "conv-new"
        assert storage.get(CURRENT_KEY) == "conv-new"
        client.create_conversation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_failure_leaves_state_unchanged(self, store, client):
        await store.load("conv-1")
        client.get_conversation.side_effect = BackendResponseError(500, "boom")

        assert await store.load("conv-2") is None

        assert store.active_id == "conv-1"
        client.create_conversation.assert_not_awaited()


class TestSwitchAndRestore:
    @pytest.mark.asyncio
    async def test_switch_to_active_is_noop(self, store, client):
        await store.load("conv-1")
        client.get_conversation.reset_mock()

        await store.switch_to("conv-1")

        client.get_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_switch_to_other_loads(self, store, client):
        await store.load("conv-1")
        client.get_conversation.return_value = make_conversation("conv-2")

        await store.switch_to("conv-2")

        assert store.active_id == "conv-2"

    @pytest.mark.asyncio
    async def test_restore_uses_persisted_id(self, store, client, storage):
        storage.set(CURRENT_KEY, "conv-1")

        conversation = await store.restore()

        assert conversation.id == "conv-1"
        client.get_conversation.assert_awaited_once_with("conv-1")
        client.create_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restore_keeps_optimistic_id_while_unconfirmed(self, store, client, storage):
        storage.set(CURRENT_KEY, "conv-1")
        client.get_conversation.side_effect = BackendUnavailableError("down")

        assert await store.restore() is None

        assert store.active_id == "conv-1"
        assert store.conversation is None

    @pytest.mark.asyncio
    async def test_restore_without_persisted_id_creates(self, store, client):
        conversation = await store.restore()

        assert conversation.id == "conv-new"
        client.get_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forget_clears_persisted_id(self, store, storage):
        await store.load("conv-1")

        store.forget("conv-1")

        assert store.active_id is None
        assert storage.get(CURRENT_KEY) is None
