"""
Durable, idempotent record of user votes on generated queries.

Every vote is written locally first: the lookup map (query id -> vote) and
the queue of entries not yet accepted by the backend are stored together as
one JSON document and rewritten on every mutation. Syncing is explicit; the
caller decides when to push the queue.
"""

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from services.common.http_errors import QConnectAPIException
from services.common.logging_config import get_logger
from services.qconnect.backend_client import BackendClient
from services.qconnect.models import (
    FeedbackEntry,
    FeedbackMetadata,
    FeedbackType,
    SyncResult,
)
from services.qconnect.persistence import KeyValueStore
from services.qconnect.settings import Settings, get_settings

logger = get_logger(__name__)


class FeedbackLedger:
    """Per-query feedback state plus the pending-sync queue."""

    def __init__(
        self,
        client: BackendClient,
        storage: KeyValueStore,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.storage = storage
        self.settings = settings or get_settings()
        self._feedback: Dict[str, Dict[str, Any]] = {}
        self._pending: List[FeedbackEntry] = []
        self.is_syncing = False
        self.last_error: Optional[str] = None
        self._load()

    def _load(self) -> None:
        raw = self.storage.get(self.settings.feedback_storage_key)
        if not raw:
            return
        try:
            parsed = json.loads(raw)
            feedback = parsed.get("feedback") or {}
            if not isinstance(feedback, dict):
                raise TypeError(f"feedback must be an object, got {type(feedback).__name__}")
            pending = [FeedbackEntry.model_validate(e) for e in parsed.get("pending") or []]
        except (json.JSONDecodeError, AttributeError, TypeError, ValidationError) as e:
            logger.error(f"Error loading saved feedback: {e}")
            return

        valid_types = {t.value for t in FeedbackType}
        self._feedback = {
            query_id: value
            for query_id, value in feedback.items()
            if isinstance(value, dict) and value.get("feedback_type") in valid_types
        }
        self._pending = pending

    def _save(self) -> None:
        document = {
            "feedback": self._feedback,
            "pending": [e.model_dump(mode="json") for e in self._pending],
        }
        self.storage.set(self.settings.feedback_storage_key, json.dumps(document))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[FeedbackEntry]:
        return list(self._pending)

    def get(self, query_id: str) -> Optional[FeedbackType]:
        value = self._feedback.get(query_id)
        if value is None:
            return None
        return FeedbackType(value["feedback_type"])

    def record(
        self,
        query_id: str,
        feedback_type: Union[FeedbackType, str],
        metadata: Union[FeedbackMetadata, Dict[str, Any], None] = None,
    ) -> bool:
        """
        Record a vote for ``query_id``.

        Returns False without changing anything when the query already has a
        vote: the first vote is final.
        """
        feedback_type = FeedbackType(feedback_type)
        if query_id in self._feedback:
            logger.info(
                f"Feedback for {query_id} already recorded, ignoring {feedback_type.value}",
                query_id=query_id,
            )
            return False

        if metadata is None:
            metadata = FeedbackMetadata()
        elif isinstance(metadata, dict):
            metadata = FeedbackMetadata.model_validate(metadata)

        entry = FeedbackEntry(
            query_id=query_id,
            feedback_type=feedback_type,
            **metadata.model_dump(),
        )
        self._feedback[query_id] = {
            "feedback_type": feedback_type.value,
            "metadata": metadata.model_dump(mode="json"),
        }
        self._pending.append(entry)
        self._save()
        logger.info(
            f"Recorded {feedback_type.value} feedback",
            query_id=query_id,
            pending=len(self._pending),
        )
        return True

    async def sync_pending(self) -> SyncResult:
        """Push the oldest pending entry; it leaves the queue only on success."""
        if self.is_syncing:
            return SyncResult(success=False, message="Sync already in progress")
        if not self._pending:
            return SyncResult(success=True, message="No pending feedback")

        entry = self._pending[0]
        self.is_syncing = True
        try:
            await self.client.submit_feedback(entry)
        except QConnectAPIException as e:
            self.last_error = e.message
            logger.warning(
                f"Error syncing feedback for {entry.query_id}: {e.message}",
                query_id=entry.query_id,
            )
            return SyncResult(success=False, message=e.message)
        finally:
            self.is_syncing = False

        # Remove the exact entry that was sent, even if more were appended meanwhile
        self._pending = [e for e in self._pending if e is not entry]
        self.last_error = None
        self._save()
        logger.info(f"Synced feedback for {entry.query_id}", remaining=len(self._pending))
        return SyncResult(success=True, message=f"Feedback for {entry.query_id} saved")

    async def sync_all(self) -> SyncResult:
        """Sync until the queue is empty or a write fails."""
        synced = 0
        while self._pending:
            result = await self.sync_pending()
            if not result.success:
                return SyncResult(
                    success=False,
                    message=f"Synced {synced} entries, then failed: {result.message}",
                )
            synced += 1
        return SyncResult(success=True, message=f"Synced {synced} entries")
