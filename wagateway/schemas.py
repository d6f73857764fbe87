"""Request bodies for the HTTP surface.

Field names follow the public camelCase contract through aliases; snake_case
names are accepted too.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidArgument
from .transport import DEFAULT_PHONE_ID, normalize_phone_id


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class _AccountModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_id: str = Field(DEFAULT_PHONE_ID, alias="phoneId")

    @field_validator("phone_id", mode="before")
    @classmethod
    def _normalize_phone_id(cls, value: Any) -> str:
        try:
            return normalize_phone_id(None if value is None else str(value))
        except InvalidArgument as exc:
            raise ValueError(exc.message) from exc


class ConnectRequest(_AccountModel):
    phone_number: Optional[str] = Field(None, alias="phoneNumber")

    @field_validator("phone_number", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="after")
    def _require_number(self) -> "ConnectRequest":
        if _blank(self.phone_number):
            raise ValueError("Phone number is required")
        return self


class PairingCodeRequest(ConnectRequest):
    force: bool = False


class LogoutRequest(_AccountModel):
    pass


class _DestinationModel(_AccountModel):
    number: Optional[str] = None

    @field_validator("number", mode="before")
    @classmethod
    def _stringify_number(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class SendMessageRequest(_DestinationModel):
    message: Optional[str] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "SendMessageRequest":
        if _blank(self.number) or _blank(self.message):
            raise ValueError("Number and message are required")
        return self


class SendMediaRequest(_DestinationModel):
    media_url: Optional[str] = Field(None, alias="mediaUrl")
    type: str = "image"
    caption: str = ""
    file_name: Optional[str] = Field(None, alias="fileName")
    mimetype: Optional[str] = None
    ptt: bool = False
    gif_playback: bool = Field(False, alias="gifPlayback")

    @model_validator(mode="after")
    def _require_fields(self) -> "SendMediaRequest":
        if _blank(self.number) or _blank(self.media_url):
            raise ValueError("Number and media URL are required")
        return self


class ContactPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = Field(None, alias="fullName")
    phone_number: Optional[str] = Field(None, alias="phoneNumber")


class SendContactRequest(_DestinationModel):
    contact: Optional[ContactPayload] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "SendContactRequest":
        if _blank(self.number) or self.contact is None:
            raise ValueError("Number and contact information are required")
        return self


class SendLocationRequest(_DestinationModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "SendLocationRequest":
        if _blank(self.number) or self.latitude is None or self.longitude is None:
            raise ValueError("Number, latitude, and longitude are required")
        return self


class CreateGroupRequest(_AccountModel):
    group_name: Optional[str] = Field(None, alias="groupName")
    participants: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_fields(self) -> "CreateGroupRequest":
        if _blank(self.group_name):
            raise ValueError("Group name is required")
        if not self.participants:
            raise ValueError("At least one participant is required")
        return self


class GroupParticipantsRequest(_AccountModel):
    group_id: Optional[str] = Field(None, alias="groupId")
    participants: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_fields(self) -> "GroupParticipantsRequest":
        if _blank(self.group_id):
            raise ValueError("Group ID is required")
        if not self.participants:
            raise ValueError("At least one participant is required")
        return self


class GroupSubjectRequest(_AccountModel):
    group_id: Optional[str] = Field(None, alias="groupId")
    subject: Optional[str] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "GroupSubjectRequest":
        if _blank(self.group_id) or _blank(self.subject):
            raise ValueError("Group ID and subject are required")
        return self


class GroupDescriptionRequest(_AccountModel):
    group_id: Optional[str] = Field(None, alias="groupId")
    description: Optional[str] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "GroupDescriptionRequest":
        if _blank(self.group_id):
            raise ValueError("Group ID is required")
        return self


class PrivacySettingsRequest(_AccountModel):
    settings: Optional[dict[str, str]] = None

    @model_validator(mode="after")
    def _require_fields(self) -> "PrivacySettingsRequest":
        if self.settings is None:
            raise ValueError("Settings object is required")
        return self


__all__ = [
    "ConnectRequest",
    "PairingCodeRequest",
    "LogoutRequest",
    "SendMessageRequest",
    "SendMediaRequest",
    "ContactPayload",
    "SendContactRequest",
    "SendLocationRequest",
    "CreateGroupRequest",
    "GroupParticipantsRequest",
    "GroupSubjectRequest",
    "GroupDescriptionRequest",
    "PrivacySettingsRequest",
]
