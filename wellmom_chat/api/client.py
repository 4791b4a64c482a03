"""HTTP client for the WellMom chat API."""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Type, Union

import httpx
from pydantic import BaseModel, ValidationError

from wellmom_chat.config import settings
from wellmom_chat.core.exceptions import (
    ChatException,
    InvalidResponseError,
    NotAuthorizedError,
    NotFoundError,
    RejectionError,
    ResolutionMiss,
    TransportError,
)
from wellmom_chat.schemas import (
    Conversation,
    ConversationListResponse,
    MarkReadRequest,
    MarkReadResponse,
    Message,
    MessageCreate,
    MessageListResponse,
    ParticipantInfo,
    SentMessage,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)

TokenSource = Union[str, Callable[[], Optional[str]]]


class ChatTransport(Protocol):
    """Operations the sync services need from the backend."""

    async def list_conversations(self) -> List[Conversation]: ...

    async def list_messages(self, conversation_id: int) -> List[Message]: ...

    async def send_message(
        self, subject_id: int, text: str, client_token: Optional[str] = None
    ) -> SentMessage: ...

    async def mark_read(self, conversation_id: int) -> Optional[MarkReadResponse]: ...

    async def resolve_participant(self, subject_id: int) -> ParticipantInfo: ...


class ChatApiClient:
    """
    Thin async wrapper over the chat endpoints.

    Performs no retries and no caching. Every call is bearer-authenticated
    with the token supplied by the session (a string or a callable returning
    the current token).

    Endpoints:
    - GET  /chat/conversations
    - GET  /chat/conversations/{id}
    - GET  /chat/conversations/{id}/messages
    - POST /chat/messages
    - POST /chat/conversations/{id}/mark-read
    - GET  /chat/conversations/{id}/unread-count
    - GET  /ibu-hamil/{id}/detail
    """

    def __init__(
        self,
        token: TokenSource,
        base_url: Optional[str] = None,
        api_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            token: Bearer token, or a callable returning the current token
            base_url: API host. Defaults to API_BASE_URL from settings
            api_prefix: Path prefix. Defaults to API_PREFIX from settings
            timeout: Request timeout in seconds
            http_client: Pre-built client (its base_url is used as-is)
        """
        self._token = token
        self.api_prefix = settings.API_PREFIX if api_prefix is None else api_prefix
        self._owns_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(
                base_url=(base_url or settings.API_BASE_URL).rstrip("/"),
                timeout=timeout or settings.REQUEST_TIMEOUT_SECONDS,
                headers={"Content-Type": "application/json"},
            )
        self._client = http_client

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _get_token(self) -> Optional[str]:
        if callable(self._token):
            return self._token()
        return self._token

    @staticmethod
    def _error_detail(response: httpx.Response) -> Optional[str]:
        """Extract FastAPI's `detail` from an error response."""
        try:
            body = response.json()
        except ValueError:
            return None
        detail = body.get("detail") if isinstance(body, dict) else None
        if isinstance(detail, list):
            # Request validation errors: [{"msg": ...}, ...]
            return "; ".join(str(item.get("msg", item)) for item in detail if isinstance(item, dict)) or None
        return detail if isinstance(detail, str) else None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        not_found: Type[ChatException] = NotFoundError,
    ) -> Any:
        token = self._get_token()
        if not token:
            raise NotAuthorizedError("Unauthorized")

        request_headers = {"Authorization": f"Bearer {token}"}
        if headers:
            request_headers.update(headers)
        url = f"{self.api_prefix}{path}"

        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=request_headers
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out: {e}")
            raise TransportError("Permintaan ke server melebihi batas waktu. Silakan coba lagi.") from e
        except httpx.RequestError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise TransportError() from e

        status_code = response.status_code
        if status_code >= 400:
            detail = self._error_detail(response)
            logger.info(f"{method} {url} -> {status_code}: {detail}")
            if status_code >= 500:
                raise TransportError(detail, status_code)
            if status_code in (401, 403):
                raise NotAuthorizedError(detail, status_code)
            if status_code == 404:
                raise not_found(detail, status_code)
            raise RejectionError(detail, status_code)

        if status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError() from e

    @staticmethod
    def _parse(model: Type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid {model.__name__} payload: {e}")
            raise InvalidResponseError() from e

    async def list_conversations(
        self, skip: int = 0, limit: Optional[int] = None
    ) -> List[Conversation]:
        """Get conversations of the current perawat."""
        data = await self._request(
            "GET",
            "/chat/conversations",
            params={"skip": skip, "limit": limit or settings.PAGE_LIMIT},
        )
        if isinstance(data, list):
            data = {"conversations": data, "total": len(data)}
        return self._parse(ConversationListResponse, data).conversations

    async def get_conversation(self, conversation_id: int) -> Conversation:
        """Get single conversation detail."""
        data = await self._request("GET", f"/chat/conversations/{conversation_id}")
        return self._parse(Conversation, data)

    async def get_messages(
        self, conversation_id: int, skip: int = 0, limit: Optional[int] = None
    ) -> MessageListResponse:
        """Get one page of messages (oldest first)."""
        data = await self._request(
            "GET",
            f"/chat/conversations/{conversation_id}/messages",
            params={"skip": skip, "limit": limit or settings.PAGE_LIMIT},
        )
        if isinstance(data, list):
            data = {"messages": data, "total": len(data), "has_more": False}
        return self._parse(MessageListResponse, data)

    async def list_messages(self, conversation_id: int) -> List[Message]:
        """Get all messages of a conversation, following pages while `has_more`."""
        messages: List[Message] = []
        for _ in range(settings.MAX_MESSAGE_PAGES):
            page = await self.get_messages(conversation_id, skip=len(messages))
            messages.extend(page.messages)
            if not page.has_more or not page.messages:
                break
        else:
            logger.warning(
                f"Conversation {conversation_id}: stopped after {settings.MAX_MESSAGE_PAGES} pages"
            )
        return messages

    async def send_message(
        self, subject_id: int, text: str, client_token: Optional[str] = None
    ) -> SentMessage:
        """
        Send a message to an ibu hamil.

        The server finds or creates the conversation, so this also works when
        no conversation exists yet.
        """
        try:
            payload = MessageCreate(
                ibu_hamil_id=subject_id, message_text=text, client_token=client_token
            )
        except ValidationError as e:
            raise RejectionError(str(e.errors()[0].get("msg")), 422) from e
        headers = {"Idempotency-Key": client_token} if client_token else None
        data = await self._request(
            "POST",
            "/chat/messages",
            json=payload.model_dump(exclude_none=True),
            headers=headers,
        )
        try:
            return SentMessage.from_payload(data)
        except ValidationError as e:
            logger.error(f"Invalid send response: {e}")
            raise InvalidResponseError() from e

    async def mark_read(
        self, conversation_id: int, message_ids: Optional[List[int]] = None
    ) -> Optional[MarkReadResponse]:
        """
        Mark messages in a conversation as read (all unread when no ids given).

        Returns None when the server answers without a body (204).
        """
        payload = MarkReadRequest(message_ids=message_ids)
        data = await self._request(
            "POST",
            f"/chat/conversations/{conversation_id}/mark-read",
            json=payload.model_dump(),
        )
        if data is None:
            return None
        return self._parse(MarkReadResponse, data)

    async def get_unread_count(self, conversation_id: int) -> int:
        data = await self._request("GET", f"/chat/conversations/{conversation_id}/unread-count")
        return self._parse(UnreadCountResponse, data).unread_count

    async def resolve_participant(self, subject_id: int) -> ParticipantInfo:
        """Get display name/photo of an ibu hamil. Raises ResolutionMiss on 404."""
        data = await self._request(
            "GET", f"/ibu-hamil/{subject_id}/detail", not_found=ResolutionMiss
        )
        return self._parse(ParticipantInfo, data)
