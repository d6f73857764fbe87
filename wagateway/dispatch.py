from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, TypeVar

from .client import SessionClient
from .errors import DispatchFailed, GatewayError, InvalidArgument, SessionNotFound
from .messages import OutboundMessage
from .metrics import DISPATCH_TOTAL
from .registry import ConnectionRegistry
from .transport import DEFAULT_DOMAIN, GROUP_DOMAIN, is_group_jid, participants_to_jids, to_jid


LOGGER = logging.getLogger("wagateway")

T = TypeVar("T")

PRIVACY_SETTINGS = (
    "readReceiptsPrivacy",
    "profilePicturePrivacy",
    "statusPrivacy",
    "onlinePrivacy",
    "lastSeenPrivacy",
    "groupsAddPrivacy",
)
DEFAULT_PRIVACY = "all"
PARTICIPANT_ACTIONS = ("add", "remove")

FAILURE_MESSAGES = {
    "send_message": "Error sending message",
    "send_media": "Error sending media",
    "send_contact": "Error sending contact",
    "send_location": "Error sending location",
    "create_group": "Error creating group",
    "add_participants": "Error adding participants to group",
    "remove_participants": "Error removing participants from group",
    "set_group_subject": "Error updating group subject",
    "set_group_description": "Error updating group description",
    "group_info": "Error getting group info",
    "list_groups": "Error getting groups",
    "contacts": "Error getting contacts",
    "chats": "Error getting chats",
    "privacy_settings": "Error getting privacy settings",
    "update_privacy_settings": "Error updating privacy settings",
}
_SEND_OPERATIONS = {
    "TextMessage": "send_message",
    "ImageMessage": "send_media",
    "VideoMessage": "send_media",
    "DocumentMessage": "send_media",
    "AudioMessage": "send_media",
    "ContactCardMessage": "send_contact",
    "LocationMessage": "send_location",
}


class Dispatcher:
    """Run one session-client operation per request for the addressed account.

    Sends are gated on the presence of a session handle only, not on the
    OPEN status. Operations for one account are queued on a per-account lock
    so the client never sees two concurrent calls.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        domain: str = DEFAULT_DOMAIN,
        serialize: bool = True,
    ) -> None:
        self._registry = registry
        self._domain = domain
        self._serialize = serialize
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def domain(self) -> str:
        return self._domain

    def _account_lock(self, phone_id: str) -> asyncio.Lock:
        lock = self._locks.get(phone_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[phone_id] = lock
        return lock

    def _session(self, phone_id: str) -> SessionClient:
        record = self._registry.get(phone_id)
        if record is None or record.session is None:
            raise SessionNotFound(phone_id)
        return record.session

    async def _run(
        self,
        phone_id: str,
        operation: str,
        call: Callable[[SessionClient], Awaitable[T]],
    ) -> T:
        try:
            if self._serialize:
                async with self._account_lock(phone_id):
                    result = await call(self._session(phone_id))
            else:
                result = await call(self._session(phone_id))
        except GatewayError:
            DISPATCH_TOTAL.labels(operation, "rejected").inc()
            raise
        except Exception as exc:
            DISPATCH_TOTAL.labels(operation, "failed").inc()
            LOGGER.error(
                "event=dispatch_failed phone_id=%s operation=%s error=%s",
                phone_id,
                operation,
                exc,
            )
            raise DispatchFailed(FAILURE_MESSAGES.get(operation), error=str(exc)) from exc
        DISPATCH_TOTAL.labels(operation, "ok").inc()
        return result

    async def send(self, phone_id: str, destination: str, message: OutboundMessage) -> Any:
        jid = to_jid(destination, domain=self._domain)
        content = message.to_content()
        operation = _SEND_OPERATIONS.get(type(message).__name__, "send_message")
        LOGGER.info(
            "event=dispatch_send phone_id=%s to=%s kind=%s",
            phone_id,
            jid,
            type(message).__name__,
        )
        return await self._run(phone_id, operation, lambda c: c.send_message(jid, content))

    async def create_group(self, phone_id: str, subject: str, participants: Iterable[str]) -> Any:
        if not (subject or "").strip():
            raise InvalidArgument("Group name is required")
        jids = participants_to_jids(participants, domain=self._domain)
        return await self._run(phone_id, "create_group", lambda c: c.group_create(subject, jids))

    async def update_participants(
        self,
        phone_id: str,
        group_id: str,
        participants: Iterable[str],
        action: str,
    ) -> Any:
        if action not in PARTICIPANT_ACTIONS:
            raise InvalidArgument(f"Unsupported participant action: {action}")
        group_jid = self._group_jid(group_id)
        jids = participants_to_jids(participants, domain=self._domain)
        return await self._run(
            phone_id,
            f"{action}_participants",
            lambda c: c.group_participants_update(group_jid, jids, action),
        )

    async def set_group_subject(self, phone_id: str, group_id: str, subject: str) -> Any:
        if not (subject or "").strip():
            raise InvalidArgument("Group ID and subject are required")
        group_jid = self._group_jid(group_id)
        return await self._run(
            phone_id, "set_group_subject", lambda c: c.group_update_subject(group_jid, subject)
        )

    async def set_group_description(
        self, phone_id: str, group_id: str, description: Optional[str]
    ) -> Any:
        group_jid = self._group_jid(group_id)
        return await self._run(
            phone_id,
            "set_group_description",
            lambda c: c.group_update_description(group_jid, description),
        )

    async def group_info(self, phone_id: str, group_id: str) -> Any:
        group_jid = self._group_jid(group_id)
        return await self._run(phone_id, "group_info", lambda c: c.group_metadata(group_jid))

    async def list_groups(self, phone_id: str) -> Any:
        return await self._run(phone_id, "list_groups", lambda c: c.list_groups())

    async def contacts(self, phone_id: str) -> Any:
        return await self._run(phone_id, "contacts", lambda c: c.get_contacts())

    async def chats(self, phone_id: str) -> Any:
        return await self._run(phone_id, "chats", lambda c: c.get_chats())

    async def privacy_settings(self, phone_id: str) -> Any:
        return await self._run(phone_id, "privacy_settings", lambda c: c.fetch_privacy_settings())

    async def update_privacy_settings(self, phone_id: str, settings: Mapping[str, str]) -> None:
        unknown = sorted(set(settings) - set(PRIVACY_SETTINGS))
        if unknown:
            raise InvalidArgument(f"Unknown privacy settings: {', '.join(unknown)}")

        # Unset flags fall back to "all", every flag is written on each update.
        async def _apply(client: SessionClient) -> None:
            for name in PRIVACY_SETTINGS:
                await client.update_privacy_setting(name, settings.get(name) or DEFAULT_PRIVACY)

        await self._run(phone_id, "update_privacy_settings", _apply)

    @staticmethod
    def _group_jid(group_id: str) -> str:
        cleaned = (group_id or "").strip()
        if not cleaned:
            raise InvalidArgument("Group ID is required")
        if "@" not in cleaned:
            return f"{cleaned}@{GROUP_DOMAIN}"
        if not is_group_jid(cleaned):
            raise InvalidArgument("Invalid group ID")
        return cleaned


__all__ = ["Dispatcher", "FAILURE_MESSAGES", "PRIVACY_SETTINGS", "PARTICIPANT_ACTIONS"]
