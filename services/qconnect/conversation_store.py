"""
Active conversation state: identity and message history.

Exactly one conversation is active at a time. Its id is persisted in the
local key-value store so a restarted client resumes where it left off; the
persisted id is only trusted until the backend confirms it (or reports it
missing, in which case a fresh conversation is created).
"""

from datetime import datetime
from typing import List, Optional

from services.common.http_errors import NotFoundError, QConnectAPIException
from services.common.logging_config import conversation_id_var, get_logger
from services.qconnect.backend_client import BackendClient
from services.qconnect.directory import conversation_title
from services.qconnect.models import Conversation, Message
from services.qconnect.persistence import KeyValueStore
from services.qconnect.settings import Settings, get_settings

logger = get_logger(__name__)


def default_title(now: Optional[datetime] = None) -> str:
    now = now or datetime.now().astimezone()
    return f"New Conversation {now.strftime('%Y-%m-%d %H:%M:%S')}"


class ConversationStore:
    """Owns the active conversation's id and ordered message list."""

    def __init__(
        self,
        client: BackendClient,
        storage: KeyValueStore,
        user_id: str,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.storage = storage
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.conversation: Optional[Conversation] = None
        self._messages: List[Message] = []
        # Set from storage on restore() until load() confirms or replaces it
        self._pending_id: Optional[str] = None

    @property
    def active_id(self) -> Optional[str]:
        if self.conversation is not None:
            return self.conversation.id
        return self._pending_id

    @property
    def title(self) -> Optional[str]:
        return self.conversation.title if self.conversation else None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def _activate(self, conversation: Conversation, messages: List[Message]) -> None:
        self.conversation = conversation
        self._messages = list(messages)
        self._pending_id = None
        self.storage.set(self.settings.current_conversation_key, conversation.id)
        conversation_id_var.set(conversation.id)

    async def create(self, user_id: Optional[str] = None) -> Optional[Conversation]:
        """
        Start a new conversation on the backend and make it active.

        On failure the previously active conversation stays as it was.
        """
        user_id = user_id or self.user_id
        try:
            conversation = await self.client.create_conversation(
                user_id,
                default_title(),
                metadata={"source": "qconnect", "version": "1.0"},
            )
        except QConnectAPIException as e:
            logger.error(f"Error creating conversation: {e.message}", user_id=user_id)
            return None

        self.user_id = user_id
        self._activate(conversation, [])
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    async def load(self, conversation_id: str) -> Optional[Conversation]:
        """
        Load a conversation and hydrate its messages.

        A 404 means the id is stale (typically a persisted id from an earlier
        session) and a new conversation is created instead. Other failures
        leave the current state unchanged.
        """
        try:
            conversation = await self.client.get_conversation(conversation_id)
        except NotFoundError:
            logger.warning(
                f"Conversation {conversation_id} not found, creating a new one"
            )
            self._pending_id = None
            return await self.create()
        except QConnectAPIException as e:
            logger.error(f"Error loading conversation {conversation_id}: {e.message}")
            return None

        conversation = conversation.model_copy(
            update={"title": conversation_title(conversation)}
        )
        self._activate(conversation, conversation.messages)
        logger.info(
            f"Loaded conversation {conversation.id}",
            message_count=len(conversation.messages),
        )
        return conversation

    async def switch_to(self, conversation_id: str) -> Optional[Conversation]:
        if conversation_id == self.active_id and self.conversation is not None:
            return self.conversation
        return await self.load(conversation_id)

    async def restore(self) -> Optional[Conversation]:
        """Resume the persisted conversation, or start a new one."""
        stored_id = self.storage.get(self.settings.current_conversation_key)
        if stored_id:
            self._pending_id = stored_id
            return await self.load(stored_id)
        return await self.create()

    def append_local(self, message: Message) -> None:
        """Append to the in-memory history; persisting is the caller's job."""
        self._messages.append(message)

    def set_title(self, title: str) -> None:
        if self.conversation is not None:
            self.conversation = self.conversation.model_copy(update={"title": title})

    def forget(self, conversation_id: str) -> None:
        """Drop the active conversation if it is the one that was deleted."""
        if self.active_id != conversation_id:
            return
        self.conversation = None
        self._pending_id = None
        self._messages = []
        self.storage.delete(self.settings.current_conversation_key)
        conversation_id_var.set("uninitialized")
