"""Pydantic schemas for participant display info."""

from typing import Optional
from pydantic import AliasChoices, BaseModel, Field


class ParticipantInfo(BaseModel):
    """Display name and photo of an ibu hamil, from `/ibu-hamil/{id}/detail`."""
    name: str = Field("", validation_alias=AliasChoices("name", "nama_lengkap"))
    photo_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("photo_url", "profile_photo_url")
    )

    @property
    def has_name(self) -> bool:
        return bool(self.name and self.name.strip())
