from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

from wagateway.client import ClientSpec
from wagateway.credentials import CredentialStore
from wagateway.manager import ConnectionManager
from wagateway.registry import ConnectionRegistry


class FakeSessionClient:
    """In-memory session client driven by events pushed from the test."""

    def __init__(
        self,
        spec: ClientSpec,
        *,
        pairing_code: str = "ABCD-1234",
        pairing_delay: float = 0.0,
        initial_events: Optional[list[Any]] = None,
        fail_start: Optional[Exception] = None,
    ) -> None:
        self.spec = spec
        self.pairing_code = pairing_code
        self.pairing_delay = pairing_delay
        self.fail_start = fail_start
        self.fail_send: Optional[Exception] = None
        self.fail_logout: Optional[Exception] = None
        self.fail_refresh: Optional[Exception] = None
        self.send_delay = 0.0
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        for event in initial_events or []:
            self.queue.put_nowait(event)
        self.started = False
        self.closed = False
        self.logged_out = False
        self.pairing_requests: list[str] = []
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.calls: list[tuple[Any, ...]] = []
        self.refreshes = 0
        self.active = 0
        self.max_active = 0

    def emit(self, *events: Any) -> None:
        for event in events:
            self.queue.put_nowait(event)

    def finish(self) -> None:
        self.queue.put_nowait(None)

    async def start(self) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self.started = True

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        if self.pairing_delay:
            await asyncio.sleep(self.pairing_delay)
        return self.pairing_code

    async def send_message(self, jid: str, content: dict[str, Any]) -> Any:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            if self.fail_send is not None:
                raise self.fail_send
            self.sent.append((jid, content))
            return {"key": {"id": f"MSG{len(self.sent)}", "remoteJid": jid}}
        finally:
            self.active -= 1

    async def refresh_contacts(self) -> Any:
        self.refreshes += 1
        if self.fail_refresh is not None:
            raise self.fail_refresh
        return [{"id": "6281111111111@s.whatsapp.net"}]

    async def get_contacts(self) -> list[dict[str, Any]]:
        self.calls.append(("contacts",))
        return [{"id": "6281111111111@s.whatsapp.net", "name": "Budi"}]

    async def get_chats(self) -> list[dict[str, Any]]:
        self.calls.append(("chats",))
        return [{"id": "6281111111111@s.whatsapp.net", "unreadCount": 2}]

    async def group_create(self, subject: str, participants: list[str]) -> Any:
        self.calls.append(("group_create", subject, participants))
        return {"id": "120363000000000000@g.us", "subject": subject}

    async def group_participants_update(
        self, group_id: str, participants: list[str], action: str
    ) -> Any:
        self.calls.append(("participants", group_id, participants, action))
        return [{"jid": jid, "status": "200"} for jid in participants]

    async def group_update_subject(self, group_id: str, subject: str) -> Any:
        self.calls.append(("subject", group_id, subject))

    async def group_update_description(self, group_id: str, description: Optional[str]) -> Any:
        self.calls.append(("description", group_id, description))

    async def group_metadata(self, group_id: str) -> Any:
        self.calls.append(("metadata", group_id))
        return {"id": group_id, "subject": "Team"}

    async def list_groups(self) -> list[dict[str, Any]]:
        self.calls.append(("groups",))
        return [{"id": "120363000000000000@g.us", "subject": "Team"}]

    async def fetch_privacy_settings(self) -> Any:
        self.calls.append(("privacy",))
        return {"readreceipts": "all", "last": "contacts"}

    async def update_privacy_setting(self, name: str, value: str) -> Any:
        self.calls.append(("privacy_update", name, value))

    async def logout(self) -> None:
        if self.fail_logout is not None:
            raise self.fail_logout
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    def __init__(self) -> None:
        self.clients: list[FakeSessionClient] = []
        self.pairing_code = "ABCD-1234"
        self.pairing_delay = 0.0
        self.initial_events: list[Any] = []
        self.fail_start: Optional[Exception] = None
        self.fail_create: Optional[Exception] = None
        self.closed = False

    def __call__(self, spec: ClientSpec) -> FakeSessionClient:
        if self.fail_create is not None:
            raise self.fail_create
        client = FakeSessionClient(
            spec,
            pairing_code=self.pairing_code,
            pairing_delay=self.pairing_delay,
            initial_events=list(self.initial_events),
            fail_start=self.fail_start,
        )
        self.clients.append(client)
        return client

    def for_account(self, phone_id: str) -> list[FakeSessionClient]:
        return [client for client in self.clients if client.spec.phone_id == phone_id]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "auth")


@pytest.fixture
def manager(registry: ConnectionRegistry, factory: FakeFactory, store: CredentialStore):
    return ConnectionManager(
        registry,
        factory,
        store,
        reconnect_delay=0.05,
        pairing_code_wait=0.2,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
def poll_until():
    def _poll(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached in time")
            time.sleep(0.02)

    return _poll
