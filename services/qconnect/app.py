"""
QConnect application wiring.

Builds the conversation store, feedback ledger, session controller and
directory around one backend client and one key-value store, and keeps the
directory in step with create/delete/title changes.
"""

from typing import List, Optional

from services.common.logging_config import get_logger, user_id_var
from services.qconnect.backend_client import BackendClient
from services.qconnect.conversation_store import ConversationStore
from services.qconnect.directives import DirectiveRegistry
from services.qconnect.directory import ConfirmCallback, ConversationDirectory
from services.qconnect.feedback_ledger import FeedbackLedger
from services.qconnect.models import (
    Conversation,
    ConversationSummary,
    DeleteResult,
    FeedbackMetadata,
    FeedbackType,
    Message,
    SendResult,
    SyncResult,
)
from services.qconnect.persistence import KeyValueStore, SQLiteKeyValueStore
from services.qconnect.session_controller import QuerySessionController
from services.qconnect.settings import Settings, get_settings

logger = get_logger(__name__)


class QConnectApp:
    """One user's client session."""

    def __init__(
        self,
        user_id: str,
        settings: Optional[Settings] = None,
        client: Optional[BackendClient] = None,
        storage: Optional[KeyValueStore] = None,
    ):
        self.settings = settings or get_settings()
        self.user_id = user_id
        self.client = client or BackendClient(self.settings)
        self.storage = storage or SQLiteKeyValueStore(self.settings.state_db_path)
        self.store = ConversationStore(self.client, self.storage, user_id, self.settings)
        self.ledger = FeedbackLedger(self.client, self.storage, self.settings)
        self.directory = ConversationDirectory(self.client)
        self.directives = DirectiveRegistry()
        self.controller = QuerySessionController(
            self.store,
            self.client,
            self.settings,
            on_title_changed=self._on_title_changed,
        )
        user_id_var.set(user_id)

    async def _on_title_changed(self, conversation_id: str, title: str) -> None:
        await self.directory.refresh()

    @property
    def messages(self) -> List[Message]:
        return self.store.messages

    async def start(self) -> Optional[Conversation]:
        conversation = await self.store.restore()
        await self.directory.list_for_user(self.user_id)
        return conversation

    async def new_conversation(self) -> Optional[Conversation]:
        conversation = await self.store.create(self.user_id)
        if conversation is not None:
            await self.directory.refresh()
        return conversation

    async def select(self, conversation_id: str) -> Optional[Conversation]:
        return await self.store.switch_to(conversation_id)

    async def send(self, text: str) -> SendResult:
        return await self.controller.send(text)

    async def retry(
        self, original_text: str, original_query: str, feedback_text: str
    ) -> SendResult:
        return await self.controller.retry(original_text, original_query, feedback_text)

    def vote(self, message: Message, feedback_type: FeedbackType) -> bool:
        """Record a vote on an assistant message, using the user message before it as context."""
        messages = self.store.messages
        original_text = ""
        for index, candidate in enumerate(messages):
            if candidate.id == message.id:
                previous = [m for m in messages[:index] if m.is_user]
                if previous:
                    original_text = previous[-1].content
                break
        metadata = FeedbackMetadata(
            original_text=original_text,
            generated_query=message.content,
            conversation_id=self.store.active_id,
            user_id=self.user_id,
        )
        return self.ledger.record(message.id, feedback_type, metadata)

    async def sync_feedback(self) -> SyncResult:
        return await self.ledger.sync_pending()

    async def list_conversations(self) -> List[ConversationSummary]:
        return await self.directory.list_for_user(self.user_id)

    def search_conversations(self, term: str) -> List[ConversationSummary]:
        return self.directory.search(term)

    async def delete_conversation(
        self, conversation_id: str, confirm: Optional[ConfirmCallback] = None
    ) -> DeleteResult:
        result = await self.directory.delete(conversation_id, confirm)
        if result.deleted and self.store.active_id == conversation_id:
            self.store.forget(conversation_id)
            await self.new_conversation()
        return result

    async def aclose(self) -> None:
        await self.controller.drain_background()
        await self.client.close()
        close = getattr(self.storage, "close", None)
        if close is not None:
            close()
