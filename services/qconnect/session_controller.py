"""
Send/retry orchestration for a query session.

The controller runs one generation request at a time. A second ``send`` or
``retry`` while one is outstanding raises ``SessionBusyError`` before any
state is touched, so messages are always appended in the order operations
were started. Every operation ends back in ``SessionState.IDLE``, and every
user message gets a paired assistant message, an error message if need be.

Secondary calls (summary fetch, title update, message persistence) are best
effort: their failures are logged and never change the outcome.
"""

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from services.common.http_errors import (
    BackendUnavailableError,
    QConnectAPIException,
    SessionBusyError,
)
from services.common.logging_config import get_logger
from services.qconnect.backend_client import BackendClient
from services.qconnect.conversation_store import ConversationStore
from services.qconnect.models import (
    ERROR_LABEL,
    GenerationResult,
    Message,
    MessageRole,
    OperationOutcome,
    QueryResult,
    SendResult,
    SessionState,
)
from services.qconnect.settings import Settings, get_settings

logger = get_logger(__name__)

TitleChangedCallback = Callable[[str, str], Awaitable[None]]


def build_context_window(messages: List[Message], size: int = 5) -> List[Dict[str, str]]:
    """
    Last ``size`` messages, oldest first, as role/content pairs.

    Error messages and offline placeholders are omitted.
    """
    return [
        {"role": m.role.value, "content": m.content}
        for m in messages[-size:]
        if m.content and not m.is_error and not m.is_degraded
    ]


def degraded_rewrite(original_query: str, feedback_text: str) -> str:
    """
    Offline stand-in for an improved query.

    Prefixes the original query with a q comment recording the feedback. It
    is a placeholder so the conversation stays paired, not a real fix.
    """
    feedback = " ".join(feedback_text.split())
    return f"/ offline placeholder, feedback not applied: {feedback}\n{original_query}"


def error_text(error: Exception) -> str:
    if isinstance(error, BackendUnavailableError):
        return f"Could not reach the query service. {error.message}"
    if isinstance(error, QConnectAPIException):
        detail = getattr(error, "detail", None)
        return f"Error: {detail or error.message}"
    return f"Error: {error}"


class QuerySessionController:
    """Drives send and retry for the active conversation."""

    def __init__(
        self,
        store: ConversationStore,
        client: BackendClient,
        settings: Optional[Settings] = None,
        model: Optional[str] = None,
        database_type: Optional[str] = None,
        on_title_changed: Optional[TitleChangedCallback] = None,
    ):
        self.store = store
        self.client = client
        self.settings = settings or get_settings()
        self.model = model or self.settings.default_model
        self.database_type = database_type or self.settings.default_database_type
        self.on_title_changed = on_title_changed
        self.state = SessionState.IDLE
        self.last_outcome: Optional[OperationOutcome] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def is_loading(self) -> bool:
        return self.state == SessionState.SENDING

    def _begin(self, operation: str, user_message: Message) -> None:
        # No await between the check and the transition: this is the single-flight guard
        if self.state == SessionState.SENDING:
            logger.warning(f"Rejected {operation}: a request is already in flight")
            raise SessionBusyError(operation)
        self.store.append_local(user_message)
        self.state = SessionState.SENDING

    def _finish(self, outcome: OperationOutcome) -> None:
        self.last_outcome = outcome
        self.state = SessionState.IDLE

    async def send(self, text: str) -> SendResult:
        user_message = Message(role=MessageRole.USER, content=text)
        self._begin("send", user_message)
        outcome = OperationOutcome.FAILED
        assistant_message: Optional[Message] = None
        generated = False
        try:
            conversation_id = self.store.active_id
            messages = self.store.messages

            summary = ""
            if len(messages) >= self.settings.summary_threshold:
                summary = await self._fetch_summary(conversation_id)

            if len(messages) == 1:
                self._spawn(self._update_title(conversation_id, text))

            history = build_context_window(messages, self.settings.context_window_size)
            try:
                result = await self.client.generate_query(
                    text,
                    conversation_id=conversation_id,
                    history=history,
                    summary=summary,
                    user_id=self.store.user_id,
                    model=self.model,
                    database_type=self.database_type,
                )
            except Exception as e:
                logger.error(f"Query generation failed: {e}", operation="send")
                assistant_message = self._error_message(e)
            else:
                assistant_message = self._result_message(result)
                generated = True

            self.store.append_local(assistant_message)
            if generated:
                outcome = OperationOutcome.SUCCEEDED
                await self._persist(conversation_id, user_message, assistant_message)
        finally:
            self._finish(outcome)

        return SendResult(
            user_message=user_message,
            assistant_message=assistant_message,
            outcome=outcome,
        )

    async def retry(
        self, original_text: str, original_query: str, feedback_text: str
    ) -> SendResult:
        user_message = Message(
            role=MessageRole.USER,
            content=f"Please improve the query. Feedback: {feedback_text}",
        )
        self._begin("retry", user_message)
        outcome = OperationOutcome.FAILED
        assistant_message: Optional[Message] = None
        generated = False
        try:
            conversation_id = self.store.active_id
            messages = self.store.messages
            summary = await self._fetch_summary(conversation_id)
            history = build_context_window(messages, self.settings.context_window_size)
            try:
                result = await self.client.retry_query(
                    original_text,
                    original_query,
                    feedback_text,
                    conversation_id=conversation_id,
                    history=history,
                    summary=summary,
                    user_id=self.store.user_id,
                    model=self.model,
                    database_type=self.database_type,
                )
            except BackendUnavailableError as e:
                logger.error(f"Retry could not reach backend: {e.message}")
                if self.settings.enable_fallback_responses:
                    placeholder = QueryResult(
                        content=degraded_rewrite(original_query, feedback_text),
                        is_degraded=True,
                    )
                    assistant_message = self._result_message(placeholder)
                else:
                    assistant_message = self._error_message(e)
            except Exception as e:
                logger.error(f"Query retry failed: {e}", operation="retry")
                assistant_message = self._error_message(e)
            else:
                assistant_message = self._result_message(result)
                generated = True

            self.store.append_local(assistant_message)
            if generated:
                outcome = OperationOutcome.SUCCEEDED
                await self._persist(conversation_id, user_message, assistant_message)
        finally:
            self._finish(outcome)

        return SendResult(
            user_message=user_message,
            assistant_message=assistant_message,
            outcome=outcome,
        )

    def _result_message(self, result: GenerationResult) -> Message:
        return Message(
            role=MessageRole.ASSISTANT,
            content=result.content,
            label=result.label,
            kind=result.kind,
            thinking=result.thinking,
            execution_id=result.execution_id,
            is_degraded=result.is_degraded,
        )

    def _error_message(self, error: Exception) -> Message:
        return Message(
            role=MessageRole.ASSISTANT,
            content=error_text(error),
            label=ERROR_LABEL,
            is_error=True,
        )

    async def _fetch_summary(self, conversation_id: Optional[str]) -> str:
        if not conversation_id:
            return ""
        try:
            return await self.client.get_summary(conversation_id)
        except Exception as e:
            logger.warning(f"Summary fetch failed, continuing without: {e}")
            return ""

    async def _update_title(self, conversation_id: Optional[str], text: str) -> None:
        if not conversation_id:
            return
        title = text[: self.settings.title_max_chars]
        try:
            await self.client.update_conversation(conversation_id, title=title)
        except Exception as e:
            logger.warning(f"Title update failed for {conversation_id}: {e}")
            return
        if self.store.active_id == conversation_id:
            self.store.set_title(title)
        if self.on_title_changed is not None:
            try:
                await self.on_title_changed(conversation_id, title)
            except Exception as e:
                logger.warning(f"Title change listener failed: {e}")

    async def _persist(
        self, conversation_id: Optional[str], *messages: Message
    ) -> None:
        if not conversation_id:
            return
        for message in messages:
            try:
                await self.client.save_message(conversation_id, message)
            except Exception as e:
                logger.warning(
                    f"Failed to save {message.role.value} message: {e}",
                    message_id=message.id,
                )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for fire-and-forget work (title updates) to settle."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
