"""Tests for QuerySessionController send/retry orchestration."""

import asyncio

import pytest

from services.common.http_errors import (
    BackendResponseError,
    BackendUnavailableError,
    MalformedResponseError,
    SessionBusyError,
)
from services.qconnect.conversation_store import ConversationStore
from services.qconnect.models import (
    FALLBACK_LABEL,
    Conversation,
    Message,
    MessageRole,
    OperationOutcome,
    QueryResult,
    ResultKind,
    SchemaDescriptionResult,
    SessionState,
)
from services.qconnect.session_controller import (
    QuerySessionController,
    build_context_window,
    degraded_rewrite,
)


@pytest.fixture
def store(client, storage, settings):
    return ConversationStore(client, storage, "user-1", settings)


@pytest.fixture
def controller(store, client, settings):
    return QuerySessionController(store, client, settings)


async def seed(store, count):
    await store.load("conv-1")
    for i in range(count):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        store.append_local(Message(role=role, content=f"message {i}"))


class TestContextWindow:
    def test_last_five_oldest_first(self):
        messages = [
            Message(role=MessageRole.USER, content=f"m{i}") for i in range(8)
        ]

        window = build_context_window(messages, 5)

        assert [m["content"] for m in window] == ["m3", "m4", "m5", "m6", "m7"]
        assert window[0] == {"role": "user", "content": "m3"}

    def test_error_and_placeholder_messages_omitted(self):
        messages = [
            Message(role=MessageRole.USER, content="show trades"),
            Message(role=MessageRole.ASSISTANT, content="Error: boom", is_error=True),
            Message(role=MessageRole.USER, content="only AAPL"),
            Message(
                role=MessageRole.ASSISTANT,
                content=degraded_rewrite("select from trade", "only AAPL"),
                is_degraded=True,
            ),
            Message(role=MessageRole.USER, content="try again"),
        ]

        window = build_context_window(messages, 5)

        assert [m["content"] for m in window] == ["show trades", "only AAPL", "try again"]

    @pytest.mark.asyncio
    async def test_failed_reply_not_sent_as_history(self, controller, store, client):
        await store.load("conv-1")
        client.generate_query.side_effect = [
            BackendResponseError(500, "boom"),
            QueryResult(content="select from trade"),
        ]

        await controller.send("show trades")
        await controller.send("show trades again")

        history = client.generate_query.await_args.kwargs["history"]
        assert [h["content"] for h in history] == ["show trades", "show trades again"]

    def test_shorter_history_is_whole(self):
        messages = [Message(role=MessageRole.USER, content="only")]
        assert build_context_window(messages, 5) == [
            {"role": "user", "content": "only"}
        ]


class TestSend:
    @pytest.mark.asyncio
    async def test_success_appends_pair_and_persists(self, controller, store, client):
        await store.load("conv-1")

        result = await controller.send("show today's trades")

        assert result.outcome == OperationOutcome.SUCCEEDED
        assert [m.role for m in store.messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]
        assistant = store.messages[-1]
        assert assistant.content == "select from trade where date=.z.d"
        assert assistant.label == "Generated query"
        assert assistant.kind == ResultKind.QUERY
        saved = [c.args[1].id for c in client.save_message.await_args_list]
        assert saved == [result.user_message.id, result.assistant_message.id]
        assert controller.state == SessionState.IDLE
        assert controller.last_outcome == OperationOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_schema_result_label(self, controller, store, client):
        await store.load("conv-1")
        client.generate_query.return_value = SchemaDescriptionResult(
            content="trade has columns time, sym, price"
        )

        result = await controller.send("describe trade")

        assert result.assistant_message.label == "Schema information"

    @pytest.mark.asyncio
    async def test_history_window_is_five_messages(self, controller, store, client):
        await seed(store, 7)

        await controller.send("next question")

        history = client.generate_query.await_args.kwargs["history"]
        assert len(history) == 5
        assert history[-1] == {"role": "user", "content": "next question"}
        assert history[0]["content"] == "message 3"

    @pytest.mark.asyncio
    async def test_summary_skipped_below_threshold(self, controller, store, client):
        await seed(store, 1)

        await controller.send("second")

        client.get_summary.assert_not_awaited()
        assert client.generate_query.await_args.kwargs["summary"] == ""

    @pytest.mark.asyncio
    async def test_summary_fetched_at_threshold(self, controller, store, client):
        await seed(store, 2)

        await controller.send("third")

        client.get_summary.assert_awaited_once_with("conv-1")
        summary = client.generate_query.await_args.kwargs["summary"]
        assert summary == "User is exploring trade data"

    @pytest.mark.asyncio
    async def test_summary_failure_is_not_fatal(self, controller, store, client):
        await seed(store, 4)
        client.get_summary.side_effect = BackendResponseError(500, "boom")

        result = await controller.send("fifth")

        assert result.outcome == OperationOutcome.SUCCEEDED
        assert client.generate_query.await_args.kwargs["summary"] == ""

    @pytest.mark.asyncio
    async def test_first_message_sets_title(self, store, client, settings):
        changed = []

        async def on_title_changed(conversation_id, title):
            changed.append((conversation_id, title))

        controller = QuerySessionController(
            store, client, settings, on_title_changed=on_title_changed
        )
        await store.load("conv-1")
        text = "show me every trade for AAPL in the last week with volume above 1000"

        await controller.send(text)
        await controller.drain_background()

        client.update_conversation.assert_awaited_once_with("conv-1", title=text[:50])
        assert store.title == text[:50]
        assert changed == [("conv-1", text[:50])]

    @pytest.mark.asyncio
    async def test_later_messages_do_not_set_title(self, controller, store, client):
        await seed(store, 2)

        await controller.send("third")
        await controller.drain_background()

        client.update_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_error_becomes_error_message(self, controller, store, client):
        await store.load("conv-1")
        client.generate_query.side_effect = BackendResponseError(
            422, "Unknown directive @FOO"
        )

        result = await controller.send("select @FOO")

        assert result.outcome == OperationOutcome.FAILED
        assert result.assistant_message.is_error
        assert result.assistant_message.content == "Error: Unknown directive @FOO"
        assert len(store) == 2
        client.save_message.assert_not_awaited()
        assert controller.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_malformed_response_becomes_error_message(self, controller, store, client):
        await store.load("conv-1")
        client.generate_query.side_effect = MalformedResponseError("missing query")

        result = await controller.send("show trades")

        assert result.assistant_message.is_error
        assert controller.last_outcome == OperationOutcome.FAILED

    @pytest.mark.asyncio
    async def test_without_conversation_still_generates(self, controller, store, client):
        result = await controller.send("select @SPOT")

        assert result.outcome == OperationOutcome.SUCCEEDED
        kwargs = client.generate_query.await_args.kwargs
        assert kwargs["conversation_id"] is None
        client.get_summary.assert_not_awaited()
        client.update_conversation.assert_not_awaited()
        client.save_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_success(self, controller, store, client):
        await store.load("conv-1")
        client.save_message.side_effect = BackendUnavailableError("down")

        result = await controller.send("show trades")

        assert result.outcome == OperationOutcome.SUCCEEDED
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_concurrent_send_is_rejected(self, controller, store, client):
        await store.load("conv-1")
        release = asyncio.Event()
        generated = client.generate_query.return_value

        async def slow_generate(*args, **kwargs):
            await release.wait()
            return generated

        client.generate_query.side_effect = slow_generate

        first = asyncio.ensure_future(controller.send("first"))
        await asyncio.sleep(0)
        assert controller.is_loading

        with pytest.raises(SessionBusyError):
            await controller.send("second")
        assert [m.content for m in store.messages] == ["first"]

        release.set()
        await first
        assert not controller.is_loading
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_loading_cleared_on_unexpected_error(self, controller, store, client):
        await store.load("conv-1")
        store.append_local = _raise_on_assistant(store.append_local)

        with pytest.raises(RuntimeError):
            await controller.send("show trades")

        assert controller.state == SessionState.IDLE
        assert controller.last_outcome == OperationOutcome.FAILED

    @pytest.mark.asyncio
    async def test_message_ids_are_unique(self, controller, store):
        await store.load("conv-1")

        await controller.send("one")
        await controller.send("two")

        ids = [m.id for m in store.messages]
        assert len(ids) == len(set(ids)) == 4


def _raise_on_assistant(append):
    def wrapper(message):
        if message.role == MessageRole.ASSISTANT:
            raise RuntimeError("render failure")
        append(message)

    return wrapper


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_success(self, controller, store, client):
        await store.load("conv-1")

        result = await controller.retry(
            "show trades", "select from trade where date=.z.d", "only AAPL"
        )

        assert result.outcome == OperationOutcome.SUCCEEDED
        assert store.messages[0].content == "Please improve the query. Feedback: only AAPL"
        assert result.assistant_message.content.endswith("sym=`AAPL")
        args = client.retry_query.await_args.args
        assert args == ("show trades", "select from trade where date=.z.d", "only AAPL")

    @pytest.mark.asyncio
    async def test_retry_always_fetches_summary(self, controller, store, client):
        await store.load("conv-1")

        await controller.retry("show trades", "select from trade", "only AAPL")

        client.get_summary.assert_awaited_once_with("conv-1")

    @pytest.mark.asyncio
    async def test_retry_offline_falls_back(self, controller, store, client):
        await store.load("conv-1")
        client.retry_query.side_effect = BackendUnavailableError("down")

        result = await controller.retry("show trades", "select from trade", "only AAPL")

        assistant = result.assistant_message
        assert result.outcome == OperationOutcome.FAILED
        assert assistant.is_degraded
        assert not assistant.is_error
        assert assistant.label == FALLBACK_LABEL
        assert assistant.content == degraded_rewrite("select from trade", "only AAPL")
        assert assistant.content.endswith("\nselect from trade")
        client.save_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_offline_without_fallback(self, store, client, settings):
        settings.enable_fallback_responses = False
        controller = QuerySessionController(store, client, settings)
        await store.load("conv-1")
        client.retry_query.side_effect = BackendUnavailableError("down")

        result = await controller.retry("show trades", "select from trade", "only AAPL")

        assert result.assistant_message.is_error

    @pytest.mark.asyncio
    async def test_retry_backend_error_is_not_degraded(self, controller, store, client):
        await store.load("conv-1")
        client.retry_query.side_effect = BackendResponseError(500, "model overloaded")

        result = await controller.retry("show trades", "select from trade", "only AAPL")

        assert result.assistant_message.is_error
        assert not result.assistant_message.is_degraded
        assert "model overloaded" in result.assistant_message.content

    @pytest.mark.asyncio
    async def test_retry_backend_error_returns_to_idle(self, controller, store, client):
        await store.load("conv-1")
        client.retry_query.side_effect = RuntimeError("socket closed mid-read")

        result = await controller.retry("show trades", "select from trade", "only AAPL")

        assert result.assistant_message.is_error
        assert controller.state == SessionState.IDLE
        assert controller.last_outcome == OperationOutcome.FAILED
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_retry_unexpected_error_reports_failure(self, controller, store):
        await store.load("conv-1")
        store.append_local = _raise_on_assistant(store.append_local)

        with pytest.raises(RuntimeError):
            await controller.retry("show trades", "select from trade", "only AAPL")

        assert controller.state == SessionState.IDLE
        assert controller.last_outcome == OperationOutcome.FAILED


class TestSingleFlight:
    @pytest.fixture
    def release(self, client):
        gate = asyncio.Event()
        generated = client.generate_query.return_value
        improved = client.retry_query.return_value

        async def slow_generate(*args, **kwargs):
            await gate.wait()
            return generated

        async def slow_retry(*args, **kwargs):
            await gate.wait()
            return improved

        client.generate_query.side_effect = slow_generate
        client.retry_query.side_effect = slow_retry
        return gate

    @pytest.mark.asyncio
    async def test_retry_rejected_while_send_in_flight(self, controller, store, release):
        await store.load("conv-1")
        pending = asyncio.ensure_future(controller.send("show trades"))
        await asyncio.sleep(0)

        with pytest.raises(SessionBusyError):
            await controller.retry("show trades", "select from trade", "only AAPL")

        release.set()
        result = await pending
        assert result.outcome == OperationOutcome.SUCCEEDED
        assert [m.role for m in store.messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]
        assert controller.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_send_rejected_while_retry_in_flight(self, controller, store, client, release):
        await store.load("conv-1")
        pending = asyncio.ensure_future(
            controller.retry("show trades", "select from trade", "only AAPL")
        )
        # retry awaits the summary before the backend call
        for _ in range(3):
            await asyncio.sleep(0)
        assert controller.is_loading

        with pytest.raises(SessionBusyError):
            await controller.send("another question")

        release.set()
        await pending
        assert len(store) == 2
        client.generate_query.assert_not_awaited()
        assert controller.state == SessionState.IDLE


class TestReload:
    @pytest.mark.asyncio
    async def test_persisted_messages_reload_in_order(
        self, controller, store, client, storage, settings
    ):
        await store.load("conv-1")
        client.generate_query.side_effect = [
            QueryResult(content="select from trade"),
            SchemaDescriptionResult(content="trade has columns time, sym, price"),
            QueryResult(content="select from quote"),
        ]
        for text in ("show trades", "describe trade", "show quotes"):
            await controller.send(text)
        await controller.drain_background()

        records = []
        for call in client.save_message.await_args_list:
            message = call.args[1]
            record = {"id": message.id, "role": message.role.value, "content": message.content}
            if message.kind is not None:
                record["response_type"] = message.kind.value
            records.append(record)
        client.get_conversation.return_value = Conversation.from_api(
            {"id": "conv-1", "title": "show trades", "messages": records}
        )

        reloaded = ConversationStore(client, storage, "user-1", settings)
        await reloaded.load("conv-1")

        def shape(messages):
            return [(m.id, m.role, m.content, m.kind, m.label) for m in messages]

        assert shape(reloaded.messages) == shape(store.messages)
        assert reloaded.messages[3].label == "Schema information"
