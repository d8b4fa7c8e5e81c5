"""
HTTP client for the query-generation backend.

Wraps the backend's conversation, generation and feedback endpoints with
typed methods. Transport failures become ``BackendUnavailableError``, non-2xx
responses become ``BackendResponseError`` (``NotFoundError`` for 404) with a
human-readable detail, and generation payloads are resolved into the
``GenerationResult`` union here so callers never look at ``response_type``.
"""

import types
from typing import Any, Dict, List, Optional, Set, Type

import httpx

from services.common.http_errors import (
    BackendResponseError,
    BackendUnavailableError,
    MalformedResponseError,
    NotFoundError,
    extract_error_detail,
)
from services.common.logging_config import get_logger, log_backend_error
from services.qconnect.models import (
    Conversation,
    FeedbackEntry,
    FeedbackType,
    GenerationResult,
    Message,
    parse_generation_result,
    utc_now,
)
from services.qconnect.settings import Settings, get_settings

logger = get_logger(__name__)

# Negative votes are filed as "flexible" feedback on the backend
FEEDBACK_ENDPOINTS = {
    FeedbackType.POSITIVE: "positive",
    FeedbackType.NEGATIVE: "flexible",
}


class BackendClient:
    """Async HTTP client for the QConnect backend API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_url
        self.timeout = httpx.Timeout(self.settings.request_timeout)
        self.http_client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[types.TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
            logger.debug("Owned httpx.AsyncClient closed")

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        resource: Optional[str] = None,
        identifier: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug(f"{operation}: {method} {url}")
        try:
            response = await self.http_client.request(
                method, url, headers=self._headers(), **kwargs
            )
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {url}: {e!r}", operation=operation)
            raise BackendUnavailableError(
                f"Could not reach backend: {e.__class__.__name__}: {e}",
                url=url,
                details={"operation": operation},
            ) from e

        if response.is_success:
            return response

        detail = extract_error_detail(response)
        log_backend_error(operation, response.status_code, detail, method=method, url=url)
        if response.status_code == 404 and resource:
            raise NotFoundError(resource, identifier, detail=detail)
        raise BackendResponseError(
            status_code=response.status_code,
            detail=detail,
            details={"operation": operation},
        )

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Malformed JSON in {operation} response",
                details={"body": response.text[:200]},
            ) from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        user_id: str,
        title: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        response = await self._request(
            "create_conversation",
            "POST",
            "/conversations",
            json={"user_id": user_id, "title": title, "metadata": metadata or {}},
        )
        data = self._json(response, "create_conversation") or {}
        data = {"user_id": user_id, "title": title, **data}
        data.setdefault("last_accessed_at", data.get("created_at"))
        return Conversation.from_api(data)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        response = await self._request(
            "get_conversation",
            "GET",
            f"/conversations/{conversation_id}",
            resource="Conversation",
            identifier=conversation_id,
        )
        return Conversation.from_api(self._json(response, "get_conversation"))

    async def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        """Partial update (touch); only the given fields are sent."""
        await self._request(
            "update_conversation",
            "PUT",
            f"/conversations/{conversation_id}",
            resource="Conversation",
            identifier=conversation_id,
            json=fields,
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request(
            "delete_conversation",
            "DELETE",
            f"/conversations/{conversation_id}",
            resource="Conversation",
            identifier=conversation_id,
        )

    async def list_user_conversations(self, user_id: str) -> List[Conversation]:
        response = await self._request(
            "list_user_conversations", "GET", f"/user/{user_id}/conversations"
        )
        data = self._json(response, "list_user_conversations") or []
        if isinstance(data, dict):
            data = data.get("conversations") or data.get("data") or []
        if not isinstance(data, list):
            raise MalformedResponseError(
                "Malformed conversation list: expected an array",
                details={"payload_type": type(data).__name__},
            )
        return [Conversation.from_api(item) for item in data]

    async def save_message(self, conversation_id: str, message: Message) -> None:
        payload: Dict[str, Any] = {
            "id": message.id,
            "role": message.role.value,
            "content": message.content,
        }
        if message.kind is not None:
            payload["response_type"] = message.kind.value
        await self._request(
            "save_message",
            "POST",
            f"/conversations/{conversation_id}/messages",
            resource="Conversation",
            identifier=conversation_id,
            json=payload,
        )

    async def get_summary(self, conversation_id: str) -> str:
        response = await self._request(
            "get_summary",
            "GET",
            f"/conversations/{conversation_id}/summary",
            resource="Conversation",
            identifier=conversation_id,
        )
        data = self._json(response, "get_summary") or {}
        return str(data.get("summary") or "")

    async def get_verified_conversation_ids(self) -> Set[str]:
        response = await self._request(
            "get_verified_conversation_ids", "GET", "/conversations/verified-info"
        )
        data = self._json(response, "get_verified_conversation_ids") or {}
        return {str(i) for i in data.get("conversation_ids") or []}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_query(
        self,
        text: str,
        *,
        conversation_id: Optional[str],
        history: List[Dict[str, str]],
        summary: str,
        user_id: str,
        model: Optional[str] = None,
        database_type: Optional[str] = None,
    ) -> GenerationResult:
        payload = {
            "query": text,
            "model": model or self.settings.default_model,
            "database_type": database_type or self.settings.default_database_type,
            "conversation_id": conversation_id,
            "conversation_history": history,
            "conversation_summary": summary,
            "user_id": user_id,
        }
        response = await self._request("generate_query", "POST", "/query", json=payload)
        return parse_generation_result(self._json(response, "generate_query"))

    async def retry_query(
        self,
        original_text: str,
        original_query: str,
        feedback: str,
        *,
        conversation_id: Optional[str],
        history: List[Dict[str, str]],
        summary: str,
        user_id: str,
        model: Optional[str] = None,
        database_type: Optional[str] = None,
    ) -> GenerationResult:
        payload = {
            "original_query": original_text,
            "original_generated_query": original_query,
            "feedback": feedback,
            "model": model or self.settings.default_model,
            "database_type": database_type or self.settings.default_database_type,
            "conversation_id": conversation_id,
            "conversation_history": history,
            "conversation_summary": summary,
            "user_id": user_id,
        }
        response = await self._request("retry_query", "POST", "/retry", json=payload)
        return parse_generation_result(self._json(response, "retry_query"))

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def submit_feedback(self, entry: FeedbackEntry) -> None:
        endpoint = FEEDBACK_ENDPOINTS[entry.feedback_type]
        payload = {
            "query_id": entry.query_id,
            "user_id": entry.user_id,
            "original_query": entry.original_text,
            "generated_query": entry.generated_query,
            "conversation_id": entry.conversation_id,
            "feedback_type": entry.feedback_type.value,
            "timestamp": (entry.timestamp or utc_now()).isoformat(),
        }
        await self._request(
            "submit_feedback", "POST", f"/feedback/{endpoint}", json=payload
        )
