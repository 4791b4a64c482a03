"""Pydantic schemas for realtime chat events pushed by the backend."""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, field_validator

from .message import Message


class ChatEventType(str, Enum):
    CONNECTION = "connection"
    NEW_MESSAGE = "new_message"
    READ_RECEIPT = "read_receipt"
    PONG = "pong"
    ERROR = "error"


class ChatEvent(BaseModel):
    """
    Payload broadcast on the chat WebSocket.

    - new_message: `message` is set
    - read_receipt: `conversation_id`, `reader_user_id`, `read_count` are set
    - connection/pong/error: informational only
    """
    type: ChatEventType
    message: Optional[Message] = None
    conversation_id: Optional[int] = None
    user_id: Optional[int] = None
    reader_user_id: Optional[int] = None
    read_count: Optional[int] = None

    @field_validator("message", mode="before")
    @classmethod
    def text_message_as_none(cls, value: Any) -> Any:
        # connection/error events carry a plain status string here
        if isinstance(value, str):
            return None
        return value
