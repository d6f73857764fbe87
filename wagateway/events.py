"""Tagged lifecycle and data events emitted by a session client."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class DisconnectReason(str, Enum):
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    CONNECTION_FAILURE = "connection_failure"
    TIMED_OUT = "timed_out"
    LOGGED_OUT = "logged_out"
    BAD_SESSION = "bad_session"
    RESTART_REQUIRED = "restart_required"
    MULTIDEVICE_MISMATCH = "multidevice_mismatch"
    FORBIDDEN = "forbidden"
    UNAVAILABLE_SERVICE = "unavailable_service"
    UNKNOWN = "unknown"

    @classmethod
    def from_status_code(cls, code: Optional[int]) -> "DisconnectReason":
        if code is None:
            return cls.UNKNOWN
        return _STATUS_CODES.get(int(code), cls.UNKNOWN)


_STATUS_CODES = {
    428: DisconnectReason.CONNECTION_CLOSED,
    408: DisconnectReason.CONNECTION_LOST,
    440: DisconnectReason.CONNECTION_REPLACED,
    401: DisconnectReason.LOGGED_OUT,
    500: DisconnectReason.BAD_SESSION,
    515: DisconnectReason.RESTART_REQUIRED,
    411: DisconnectReason.MULTIDEVICE_MISMATCH,
    403: DisconnectReason.FORBIDDEN,
    503: DisconnectReason.UNAVAILABLE_SERVICE,
}


@dataclass(frozen=True, slots=True)
class ConnectionConnecting:
    pass


@dataclass(frozen=True, slots=True)
class ConnectionOpened:
    user: Optional[dict[str, Any]] = None


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    reason: DisconnectReason = DisconnectReason.UNKNOWN
    detail: Optional[str] = None

    @property
    def logged_out(self) -> bool:
        return self.reason is DisconnectReason.LOGGED_OUT


@dataclass(frozen=True, slots=True)
class CredentialsUpdated:
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class QRCodeReceived:
    qr: str


@dataclass(frozen=True, slots=True)
class PairingCodeReady:
    """The client is ready to accept a pairing-code request."""


@dataclass(frozen=True, slots=True)
class HistorySynced:
    chats: int = 0
    contacts: int = 0
    messages: int = 0
    is_latest: bool = False


@dataclass(frozen=True, slots=True)
class MessageReceived:
    remote_jid: Optional[str]
    message: dict[str, Any] = field(default_factory=dict)


SessionEvent = Union[
    ConnectionConnecting,
    ConnectionOpened,
    ConnectionClosed,
    CredentialsUpdated,
    QRCodeReceived,
    PairingCodeReady,
    HistorySynced,
    MessageReceived,
]


__all__ = [
    "DisconnectReason",
    "ConnectionConnecting",
    "ConnectionOpened",
    "ConnectionClosed",
    "CredentialsUpdated",
    "QRCodeReceived",
    "PairingCodeReady",
    "HistorySynced",
    "MessageReceived",
    "SessionEvent",
]
