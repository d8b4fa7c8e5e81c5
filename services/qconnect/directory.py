"""
Conversation directory: list, search and delete a user's conversations.

``conversation_title`` is the one place display titles are derived; the
conversation store uses it when hydrating a loaded conversation too.
"""

import inspect
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Union

from services.common.http_errors import QConnectAPIException
from services.common.logging_config import get_logger
from services.qconnect.backend_client import BackendClient
from services.qconnect.models import (
    Conversation,
    ConversationSummary,
    DeleteResult,
    MessageRole,
)

logger = get_logger(__name__)

TITLE_PREVIEW_LIMIT = 30
TITLE_PREVIEW_CHARS = 27

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def conversation_title(conversation: Conversation) -> str:
    """
    Derive the display title for a conversation.

    Explicit title, then the first user message (truncated), then the
    creation date, then a prefix of the id.
    """
    if conversation.title:
        return conversation.title

    first_user = next(
        (m for m in conversation.messages if m.role == MessageRole.USER and m.content),
        None,
    )
    if first_user is not None:
        text = first_user.content
        if len(text) > TITLE_PREVIEW_LIMIT:
            return text[:TITLE_PREVIEW_CHARS] + "..."
        return text

    if conversation.created_at is not None:
        return conversation.created_at.strftime("%b %d, %Y %H:%M")

    return f"Conversation {conversation.id[:8]}"


def format_conversation_date(
    value: Optional[datetime], now: Optional[datetime] = None
) -> str:
    """Sidebar date: time if today, month and day if this year, else full date."""
    if value is None:
        return ""
    now = now or datetime.now(value.tzinfo or timezone.utc)
    if value.date() == now.date():
        return value.strftime("%H:%M")
    if value.year == now.year:
        return f"{value.strftime('%b')} {value.day}"
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def _sort_key(summary: ConversationSummary) -> datetime:
    return summary.last_accessed_at or summary.created_at or _EPOCH


class ConversationDirectory:
    """Lists, searches and deletes conversations for a user."""

    def __init__(self, client: BackendClient):
        self.client = client
        self.user_id: Optional[str] = None
        self.conversations: List[ConversationSummary] = []
        self.error: Optional[str] = None
        self.is_loading = False

    async def list_for_user(self, user_id: str) -> List[ConversationSummary]:
        """
        Fetch the user's conversations, newest activity first.

        Archived conversations are dropped. On failure the previous list is
        kept and ``error`` carries an inline explanation.
        """
        self.user_id = user_id
        self.is_loading = True
        try:
            conversations = await self.client.list_user_conversations(user_id)
        except QConnectAPIException as e:
            logger.error(f"Error fetching conversations for {user_id}: {e.message}")
            self.error = "Failed to load conversations"
            return list(self.conversations)
        finally:
            self.is_loading = False

        summaries = [
            ConversationSummary(
                id=c.id,
                title=conversation_title(c),
                created_at=c.created_at,
                last_accessed_at=c.last_accessed_at,
                is_archived=c.is_archived,
            )
            for c in conversations
            if not c.is_archived
        ]
        summaries.sort(key=_sort_key, reverse=True)
        self.conversations = summaries
        self.error = None
        logger.debug(f"Loaded {len(summaries)} conversations", user_id=user_id)
        return list(summaries)

    async def refresh(self) -> List[ConversationSummary]:
        if self.user_id is None:
            return list(self.conversations)
        return await self.list_for_user(self.user_id)

    def search(self, term: str) -> List[ConversationSummary]:
        """Case-insensitive title substring match, or exact id match."""
        if not term:
            return list(self.conversations)
        needle = term.lower()
        return [
            c
            for c in self.conversations
            if needle in c.title.lower() or c.id == term
        ]

    async def delete(
        self, conversation_id: str, confirm: Optional[ConfirmCallback] = None
    ) -> DeleteResult:
        """
        Delete a conversation.

        Conversations holding verified queries need explicit confirmation,
        since deleting them also drops the feedback tied to those queries.
        If the verified index cannot be fetched, confirmation is required.
        """
        try:
            verified = await self.client.get_verified_conversation_ids()
            requires_confirmation = conversation_id in verified
        except QConnectAPIException as e:
            logger.warning(f"Could not fetch verified-query index: {e.message}")
            requires_confirmation = True

        if requires_confirmation:
            confirmed = False
            if confirm is not None:
                answer = confirm(conversation_id)
                if inspect.isawaitable(answer):
                    answer = await answer
                confirmed = bool(answer)
            if not confirmed:
                logger.info(f"Deletion of {conversation_id} cancelled")
                return DeleteResult(requires_confirmation=True, cancelled=True)

        try:
            await self.client.delete_conversation(conversation_id)
        except QConnectAPIException as e:
            logger.error(f"Error deleting conversation {conversation_id}: {e.message}")
            return DeleteResult(
                requires_confirmation=requires_confirmation,
                error=f"Failed to delete conversation: {e.message}",
            )

        logger.info(f"Deleted conversation {conversation_id}")
        await self.refresh()
        return DeleteResult(deleted=True, requires_confirmation=requires_confirmation)
