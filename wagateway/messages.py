"""Outbound message variants accepted by the dispatcher."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlparse

from .errors import InvalidArgument


MEDIA_TYPES = ("image", "video", "document", "audio")
DEFAULT_DOCUMENT_MIMETYPE = "application/pdf"
DEFAULT_FILE_NAME = "file"


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidArgument(f"{field_name} is required")
    return str(value)


def _require_url(value: Optional[str]) -> str:
    raw = (value or "").strip()
    if not raw:
        raise InvalidArgument("Media URL is required")
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidArgument("Invalid media URL")
    return raw


def _require_coordinate(value: Any, *, bound: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(
            "Invalid coordinates. Latitude must be between -90 and 90, "
            "longitude between -180 and 180."
        )
    number = float(value)
    if math.isnan(number) or number < -bound or number > bound:
        raise InvalidArgument(
            "Invalid coordinates. Latitude must be between -90 and 90, "
            "longitude between -180 and 180."
        )
    return number


@dataclass(frozen=True, slots=True)
class TextMessage:
    text: str

    def __post_init__(self) -> None:
        _require_text(self.text, "Message")

    def to_content(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True, slots=True)
class ImageMessage:
    url: str
    caption: str = ""

    def __post_init__(self) -> None:
        _require_url(self.url)

    def to_content(self) -> dict[str, Any]:
        return {"image": {"url": self.url}, "caption": self.caption}


@dataclass(frozen=True, slots=True)
class VideoMessage:
    url: str
    caption: str = ""
    gif_playback: bool = False

    def __post_init__(self) -> None:
        _require_url(self.url)

    def to_content(self) -> dict[str, Any]:
        return {
            "video": {"url": self.url},
            "caption": self.caption,
            "gifPlayback": self.gif_playback,
        }


@dataclass(frozen=True, slots=True)
class DocumentMessage:
    url: str
    file_name: str = DEFAULT_FILE_NAME
    mimetype: str = DEFAULT_DOCUMENT_MIMETYPE
    caption: str = ""

    def __post_init__(self) -> None:
        _require_url(self.url)
        _require_text(self.file_name, "File name")
        if "/" not in (self.mimetype or ""):
            raise InvalidArgument("Invalid document mimetype")

    def to_content(self) -> dict[str, Any]:
        return {
            "document": {"url": self.url},
            "mimetype": self.mimetype,
            "fileName": self.file_name,
            "caption": self.caption,
        }


@dataclass(frozen=True, slots=True)
class AudioMessage:
    url: str
    ptt: bool = False

    def __post_init__(self) -> None:
        _require_url(self.url)

    def to_content(self) -> dict[str, Any]:
        return {"audio": {"url": self.url}, "ptt": self.ptt}


@dataclass(frozen=True, slots=True)
class ContactCardMessage:
    full_name: str
    phone_number: str

    def __post_init__(self) -> None:
        if not (self.full_name or "").strip() or not (self.phone_number or "").strip():
            raise InvalidArgument("Contact must include phoneNumber and fullName")

    @property
    def vcard(self) -> str:
        return (
            "BEGIN:VCARD\n"
            "VERSION:3.0\n"
            f"FN:{self.full_name}\n"
            f"TEL;type=CELL;type=pref:{self.phone_number}\n"
            "END:VCARD"
        )

    def to_content(self) -> dict[str, Any]:
        return {
            "contacts": {
                "displayName": self.full_name,
                "contacts": [{"displayName": self.full_name, "vcard": self.vcard}],
            }
        }


@dataclass(frozen=True, slots=True)
class LocationMessage:
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None

    def __post_init__(self) -> None:
        _require_coordinate(self.latitude, bound=90.0)
        _require_coordinate(self.longitude, bound=180.0)

    def to_content(self) -> dict[str, Any]:
        location: dict[str, Any] = {
            "degreesLatitude": float(self.latitude),
            "degreesLongitude": float(self.longitude),
        }
        if self.name is not None:
            location["name"] = self.name
        if self.address is not None:
            location["address"] = self.address
        return {"location": location}


OutboundMessage = Union[
    TextMessage,
    ImageMessage,
    VideoMessage,
    DocumentMessage,
    AudioMessage,
    ContactCardMessage,
    LocationMessage,
]


def media_message(
    media_type: str,
    url: str,
    *,
    caption: str = "",
    file_name: Optional[str] = None,
    mimetype: Optional[str] = None,
    ptt: bool = False,
    gif_playback: bool = False,
) -> OutboundMessage:
    kind = (media_type or "image").strip().lower()
    if kind == "image":
        return ImageMessage(url=url, caption=caption)
    if kind == "video":
        return VideoMessage(url=url, caption=caption, gif_playback=gif_playback)
    if kind == "document":
        return DocumentMessage(
            url=url,
            file_name=file_name or DEFAULT_FILE_NAME,
            mimetype=mimetype or DEFAULT_DOCUMENT_MIMETYPE,
            caption=caption,
        )
    if kind == "audio":
        return AudioMessage(url=url, ptt=ptt)
    raise InvalidArgument("Invalid media type. Use: image, video, document, or audio")


__all__ = [
    "MEDIA_TYPES",
    "TextMessage",
    "ImageMessage",
    "VideoMessage",
    "DocumentMessage",
    "AudioMessage",
    "ContactCardMessage",
    "LocationMessage",
    "OutboundMessage",
    "media_message",
]
