"""Pydantic schemas for Conversation."""

from datetime import datetime, timezone
from typing import Annotated, Optional, List
from pydantic import AfterValidator, AliasChoices, BaseModel, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Backend timestamps are naive UTC; make them comparable with local ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class Conversation(BaseModel):
    """
    Conversation between the current perawat (staff) and one ibu hamil (subject).

    Accepts both the neutral field names and the backend's wire names
    (`ibu_hamil_id`, `perawat_id`, `ibu_hamil_name`, `ibu_hamil_photo_url`).
    A record with `id=None` is a compose-mode target that has not been
    persisted yet.
    """
    id: Optional[int] = None
    subject_id: int = Field(..., validation_alias=AliasChoices("subject_id", "ibu_hamil_id"))
    staff_id: Optional[int] = Field(None, validation_alias=AliasChoices("staff_id", "perawat_id"))
    display_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("display_name", "ibu_hamil_name")
    )
    display_photo_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("display_photo_url", "ibu_hamil_photo_url")
    )
    last_message_text: Optional[str] = None
    last_message_at: Optional[UtcDatetime] = None
    last_message_sender_id: Optional[int] = None
    unread_count: int = Field(0, ge=0)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("display_name", "display_photo_url")
    @classmethod
    def blank_as_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def is_virtual(self) -> bool:
        return self.id is None


class ConversationListResponse(BaseModel):
    """Response for listing conversations."""
    conversations: List[Conversation]
    total: int = 0
