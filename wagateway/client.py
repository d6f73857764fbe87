"""Session client boundary used by the connection manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol

from .events import SessionEvent


@dataclass(frozen=True, slots=True)
class ClientSpec:
    """Everything a factory needs to build one session client."""

    phone_id: str
    phone_number: str
    pairing: bool = False
    credentials: Optional[dict[str, Any]] = None
    options: dict[str, Any] = field(default_factory=dict)


class SessionClient(Protocol):
    """Minimal session surface the gateway relies on."""

    async def start(self) -> None:
        ...

    def events(self) -> AsyncIterator[SessionEvent]:
        ...

    async def request_pairing_code(self, phone_number: str) -> str:
        ...

    async def send_message(self, jid: str, content: dict[str, Any]) -> Any:
        ...

    async def refresh_contacts(self) -> Any:
        ...

    async def get_contacts(self) -> list[dict[str, Any]]:
        ...

    async def get_chats(self) -> list[dict[str, Any]]:
        ...

    async def group_create(self, subject: str, participants: list[str]) -> Any:
        ...

    async def group_participants_update(
        self, group_id: str, participants: list[str], action: str
    ) -> Any:
        ...

    async def group_update_subject(self, group_id: str, subject: str) -> Any:
        ...

    async def group_update_description(self, group_id: str, description: Optional[str]) -> Any:
        ...

    async def group_metadata(self, group_id: str) -> Any:
        ...

    async def list_groups(self) -> list[dict[str, Any]]:
        ...

    async def fetch_privacy_settings(self) -> Any:
        ...

    async def update_privacy_setting(self, name: str, value: str) -> Any:
        ...

    async def logout(self) -> None:
        ...

    async def close(self) -> None:
        ...


class ClientFactory(Protocol):
    def __call__(self, spec: ClientSpec) -> SessionClient:
        ...


__all__ = ["ClientSpec", "SessionClient", "ClientFactory"]
