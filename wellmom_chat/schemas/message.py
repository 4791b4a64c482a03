"""Pydantic schemas for Message."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, List, Tuple
from pydantic import AliasChoices, BaseModel, Field, field_validator

from .conversation import UtcDatetime


class SenderRole(str, Enum):
    """Role of a message sender, using the backend's role names."""
    STAFF = "perawat"
    SUBJECT = "ibu_hamil"


class Message(BaseModel):
    """
    Chat message.

    `id` is None while the message is pending (optimistically shown before the
    server confirmed it). `conversation_id` is also None for a pending message
    sent in compose mode.
    """
    id: Optional[int] = None
    conversation_id: Optional[int] = None
    sender_id: Optional[int] = Field(
        None, validation_alias=AliasChoices("sender_id", "sender_user_id")
    )
    sender_role: Optional[SenderRole] = None
    sender_name: Optional[str] = None
    text: str = Field(..., validation_alias=AliasChoices("text", "message_text"))
    created_at: UtcDatetime
    is_read: bool = False
    read_at: Optional[UtcDatetime] = None
    client_token: Optional[str] = None
    pending: bool = False
    is_own: bool = False

    @field_validator("sender_role", mode="before")
    @classmethod
    def unknown_role_as_none(cls, value: Any) -> Any:
        # admin/system senders are shown without a role
        if value not in (None, SenderRole.STAFF, SenderRole.SUBJECT, "perawat", "ibu_hamil"):
            return None
        return value


def message_sort_key(message: Message) -> Tuple[datetime, bool, int]:
    """Order by (created_at, id); pending messages go after confirmed ones."""
    return (message.created_at, message.id is None, message.id or 0)


def correlates(confirmed: Message, pending: Message, window_seconds: float) -> bool:
    """Whether a server-confirmed message is the copy of a pending one."""
    if confirmed.client_token and pending.client_token:
        return confirmed.client_token == pending.client_token
    if pending.conversation_id is not None and confirmed.conversation_id != pending.conversation_id:
        return False
    if confirmed.sender_id != pending.sender_id or confirmed.text != pending.text:
        return False
    delta = abs((confirmed.created_at - pending.created_at).total_seconds())
    return delta <= window_seconds


class MessageCreate(BaseModel):
    """Schema for sending a new message."""
    ibu_hamil_id: int = Field(..., description="ID of ibu hamil to send message to")
    message_text: str = Field(..., min_length=1, max_length=5000, description="Message content")
    client_token: Optional[str] = Field(None, description="Client-generated idempotency token")


class SentMessage(BaseModel):
    """Result of a send: the (possibly newly created) conversation and the stored message."""
    conversation_id: int
    message: Message

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SentMessage":
        """Accept `{conversation_id, message}` or a bare message body."""
        if isinstance(data, dict) and isinstance(data.get("message"), dict):
            sent = cls.model_validate(data)
            if sent.message.conversation_id is None:
                sent.message = sent.message.model_copy(update={"conversation_id": sent.conversation_id})
            return sent
        message = Message.model_validate(data)
        return cls(conversation_id=message.conversation_id, message=message)


class MessageListResponse(BaseModel):
    """Response for listing messages."""
    messages: List[Message]
    total: int = 0
    has_more: bool = Field(False, description="Whether there are more messages to load")


class MarkReadRequest(BaseModel):
    """Schema for marking messages as read."""
    message_ids: Optional[List[int]] = Field(None, description="Specific message IDs to mark as read. If None or empty, marks all unread in conversation.")


class MarkReadResponse(BaseModel):
    """Response of mark-read."""
    message: str = ""
    read_count: int = 0


class UnreadCountResponse(BaseModel):
    """Response for unread message count."""
    conversation_id: int
    unread_count: int
