from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Iterable, Optional

from .client import ClientFactory, ClientSpec, SessionClient
from .credentials import CredentialStore
from .errors import DispatchFailed, InternalError, SessionNotFound
from .events import (
    ConnectionClosed,
    ConnectionConnecting,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    HistorySynced,
    MessageReceived,
    PairingCodeReady,
    QRCodeReceived,
    SessionEvent,
)
from .metrics import EVENT_ERRORS, PAIRING_CODES_TOTAL, RECONNECTS_TOTAL, SESSIONS
from .registry import (
    ConnectionRecord,
    ConnectionRegistry,
    ConnectionStatus,
    PairingState,
)
from .transport import DEFAULT_PHONE_ID, normalize_phone_number


LOGGER = logging.getLogger("wagateway")


RECONNECT_DELAY = 5.0
PAIRING_CODE_WAIT = 2.0
SHUTDOWN_TIMEOUT = 10.0


class StaleGenerationError(Exception):
    """Raised inside a mutator when the record moved on to a newer generation."""


class ConnectionManager:
    """Manage one auto-reconnecting session client per account id.

    Every state change goes through :meth:`ConnectionRegistry.upsert` and is
    tagged with the record generation it was computed for; events and timers
    belonging to a superseded generation are dropped.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        client_factory: ClientFactory,
        credentials: CredentialStore,
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        pairing_code_wait: float = PAIRING_CODE_WAIT,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        logout_on_shutdown: bool = True,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory
        self._credentials = credentials
        self._reconnect_delay = reconnect_delay
        self._pairing_code_wait = pairing_code_wait
        self._shutdown_timeout = shutdown_timeout
        self._logout_on_shutdown = logout_on_shutdown
        self._listeners: Dict[str, asyncio.Task[Any]] = {}
        self._reconnects: Dict[str, asyncio.Task[Any]] = {}
        self._initiate_locks: Dict[str, asyncio.Lock] = {}
        self._closing = False

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def closing(self) -> bool:
        return self._closing

    def get_status(self, phone_id: str) -> Optional[ConnectionRecord]:
        return self._registry.get(phone_id)

    def stats_snapshot(self) -> dict[str, int]:
        return self._registry.stats()

    async def start(self, *, default_phone_number: Optional[str] = None) -> None:
        if not default_phone_number:
            return
        try:
            await self.connect(default_phone_number, DEFAULT_PHONE_ID)
        except Exception as exc:
            LOGGER.error(
                "event=bootstrap_connect_failed phone_id=%s error=%s",
                DEFAULT_PHONE_ID,
                exc,
            )

    async def connect(
        self, phone_number: str, phone_id: str = DEFAULT_PHONE_ID
    ) -> ConnectionRecord:
        digits = normalize_phone_number(phone_number)
        LOGGER.info("event=connect_requested phone_id=%s", phone_id)
        return await self._initiate(phone_id, digits, pairing=None, reason="connect")

    async def request_pairing_code(
        self,
        phone_number: str,
        phone_id: str = DEFAULT_PHONE_ID,
        *,
        force: bool = False,
        wait: Optional[float] = None,
    ) -> ConnectionRecord:
        """Start (or join) a pairing-code flow and briefly wait for the code."""

        digits = normalize_phone_number(phone_number)
        current = self._registry.get(phone_id)
        if (
            not force
            and current is not None
            and current.pairing_pending
            and current.phone_number == digits
        ):
            LOGGER.info(
                "event=pairing_already_pending phone_id=%s delivered=%s",
                phone_id,
                bool(current.pairing and current.pairing.delivered),
            )
            record = current
        else:
            record = await self._initiate(
                phone_id,
                digits,
                pairing=PairingState(requested=True),
                reason="pairing_requested",
            )

        timeout = self._pairing_code_wait if wait is None else wait
        if record.pairing is not None and not record.pairing.delivered and timeout > 0:
            waited = await self._registry.wait_for(phone_id, _pairing_settled, timeout)
            if waited is not None:
                record = waited
        return record

    async def logout(self, phone_id: str) -> ConnectionRecord:
        record = self._registry.get(phone_id)
        if record is None or record.session is None:
            raise SessionNotFound(phone_id)
        client = record.session
        try:
            await client.logout()
        except Exception as exc:
            LOGGER.error("event=logout_failed phone_id=%s error=%s", phone_id, exc)
            raise DispatchFailed("Error logging out", error=str(exc)) from exc

        self._cancel_reconnect(phone_id)
        updated = await self._registry.remove(phone_id)
        self._log_transition(phone_id, record.status, ConnectionStatus.CLOSED, "manual_logout")
        await self._cancel_listener(phone_id)
        await self._close_client(phone_id, client, reason="manual_logout")
        await self._clear_credentials(phone_id)
        self._update_metrics()
        return updated or record

    async def shutdown(self) -> None:
        """Log out (or close) every live session within ``shutdown_timeout``."""

        if self._closing:
            return
        self._closing = True
        for phone_id in list(self._reconnects):
            self._cancel_reconnect(phone_id)

        live = [
            (phone_id, record.session)
            for phone_id, record in self._registry.snapshot().items()
            if record.session is not None
        ]
        LOGGER.info("event=shutdown_started live_sessions=%s", len(live))

        async def _release(phone_id: str, client: SessionClient) -> None:
            if not self._logout_on_shutdown:
                return
            try:
                await client.logout()
                LOGGER.info("event=shutdown_logged_out phone_id=%s", phone_id)
            except Exception as exc:
                LOGGER.error("event=shutdown_logout_failed phone_id=%s error=%s", phone_id, exc)

        if live:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(_release(pid, client) for pid, client in live)),
                    timeout=self._shutdown_timeout,
                )
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "event=shutdown_timeout timeout=%s sessions=%s",
                    self._shutdown_timeout,
                    len(live),
                )

        for phone_id in list(self._listeners):
            await self._cancel_listener(phone_id)
        for phone_id, client in live:
            await self._close_client(phone_id, client, reason="shutdown")
            await self._mark_closed(phone_id)
        self._update_metrics()
        LOGGER.info("event=shutdown_complete")

    async def _initiate(
        self,
        phone_id: str,
        phone_number: str,
        *,
        pairing: Optional[PairingState],
        reason: str,
        expected_generation: Optional[int] = None,
    ) -> ConnectionRecord:
        async with self._initiate_lock(phone_id):
            return await self._initiate_locked(
                phone_id,
                phone_number,
                pairing=pairing,
                reason=reason,
                expected_generation=expected_generation,
            )

    def _initiate_lock(self, phone_id: str) -> asyncio.Lock:
        lock = self._initiate_locks.get(phone_id)
        if lock is None:
            lock = asyncio.Lock()
            self._initiate_locks[phone_id] = lock
        return lock

    async def _initiate_locked(
        self,
        phone_id: str,
        phone_number: str,
        *,
        pairing: Optional[PairingState],
        reason: str,
        expected_generation: Optional[int],
    ) -> ConnectionRecord:
        if self._closing:
            raise InternalError("Gateway is shutting down")

        credentials: Optional[dict[str, Any]] = None
        try:
            credentials = await self._credentials.load(phone_id)
        except Exception as exc:
            LOGGER.warning("event=credentials_load_failed phone_id=%s error=%s", phone_id, exc)

        client = self._client_factory(
            ClientSpec(
                phone_id=phone_id,
                phone_number=phone_number,
                pairing=pairing is not None,
                credentials=credentials,
            )
        )

        superseded: list[SessionClient] = []
        previous: list[ConnectionStatus] = []

        def _mutate(current: Optional[ConnectionRecord]) -> ConnectionRecord:
            if expected_generation is not None and (
                current is None
                or current.generation != expected_generation
                or current.status is not ConnectionStatus.RECONNECTING
            ):
                raise StaleGenerationError(phone_id)
            base = current or ConnectionRecord(phone_id=phone_id)
            previous.append(base.status)
            if base.session is not None and base.session is not client:
                superseded.append(base.session)
            return base.evolve(
                phone_number=phone_number,
                status=ConnectionStatus.CONNECTING,
                session=client,
                pairing=pairing,
                generation=base.generation + 1,
                logged_out=False,
                qr=None,
            )

        try:
            record = await self._registry.upsert(phone_id, _mutate)
        except StaleGenerationError:
            await self._close_client(phone_id, client, reason="stale_reconnect")
            raise

        self._log_transition(phone_id, previous[0], record.status, reason)
        if reason != "reconnect":
            self._cancel_reconnect(phone_id)
        await self._cancel_listener(phone_id)
        for old_client in superseded:
            await self._close_client(phone_id, old_client, reason="superseded")

        current = self._registry.get(phone_id)
        if (
            current is None
            or current.generation != record.generation
            or current.session is not client
        ):
            LOGGER.info(
                "event=initiate_superseded phone_id=%s generation=%s current=%s",
                phone_id,
                record.generation,
                current.generation if current else None,
            )
            await self._close_client(phone_id, client, reason="superseded")
            self._update_metrics()
            return current or record

        self._listeners[phone_id] = asyncio.create_task(
            self._listen(phone_id, record.generation, client),
            name=f"wagateway-listener-{phone_id}",
        )
        self._update_metrics()
        return record

    async def _listen(self, phone_id: str, generation: int, client: SessionClient) -> None:
        try:
            try:
                await client.start()
            except Exception as exc:
                EVENT_ERRORS.labels("start_failed").inc()
                LOGGER.warning(
                    "event=session_start_failed phone_id=%s generation=%s error=%s",
                    phone_id,
                    generation,
                    exc,
                )
                await self._on_closed(
                    phone_id,
                    generation,
                    client,
                    ConnectionClosed(DisconnectReason.CONNECTION_FAILURE, str(exc)),
                )
                return

            closed = False
            detail = "event_stream_ended"
            try:
                async for event in client.events():
                    try:
                        closed = await self._handle_event(phone_id, generation, client, event)
                    except Exception:
                        EVENT_ERRORS.labels("handler").inc()
                        LOGGER.exception(
                            "event=session_event_failed phone_id=%s type=%s",
                            phone_id,
                            type(event).__name__,
                        )
                        continue
                    if closed:
                        break
            except Exception as exc:
                EVENT_ERRORS.labels("stream").inc()
                LOGGER.warning(
                    "event=session_stream_failed phone_id=%s error=%s", phone_id, exc
                )
                detail = str(exc) or detail

            if not closed:
                await self._on_closed(
                    phone_id,
                    generation,
                    client,
                    ConnectionClosed(DisconnectReason.CONNECTION_LOST, detail),
                )
        finally:
            if self._listeners.get(phone_id) is asyncio.current_task():
                self._listeners.pop(phone_id, None)

    async def _handle_event(
        self,
        phone_id: str,
        generation: int,
        client: SessionClient,
        event: SessionEvent,
    ) -> bool:
        if isinstance(event, CredentialsUpdated):
            await self._persist_credentials(phone_id, generation, event)
        elif isinstance(event, ConnectionConnecting):
            LOGGER.info("event=session_connecting phone_id=%s", phone_id)
        elif isinstance(event, QRCodeReceived):
            await self._transition(phone_id, generation, reason="qr", qr=event.qr)
        elif isinstance(event, PairingCodeReady):
            await self._deliver_pairing_code(phone_id, generation, client)
        elif isinstance(event, ConnectionOpened):
            await self._on_opened(phone_id, generation, client, event)
        elif isinstance(event, ConnectionClosed):
            await self._on_closed(phone_id, generation, client, event)
            return True
        elif isinstance(event, HistorySynced):
            LOGGER.info(
                "event=history_synced phone_id=%s chats=%s contacts=%s messages=%s is_latest=%s",
                phone_id,
                event.chats,
                event.contacts,
                event.messages,
                event.is_latest,
            )
        elif isinstance(event, MessageReceived):
            LOGGER.info("event=message_received phone_id=%s from=%s", phone_id, event.remote_jid)
        else:
            EVENT_ERRORS.labels("unknown_event").inc()
            LOGGER.warning(
                "event=unknown_session_event phone_id=%s type=%s",
                phone_id,
                type(event).__name__,
            )
        return False

    async def _persist_credentials(
        self, phone_id: str, generation: int, event: CredentialsUpdated
    ) -> None:
        record = self._registry.get(phone_id)
        if record is None or record.generation != generation:
            LOGGER.debug("event=stale_credentials_ignored phone_id=%s", phone_id)
            return
        try:
            await self._credentials.save(phone_id, event.credentials)
        except Exception:
            EVENT_ERRORS.labels("credentials_save").inc()
            LOGGER.exception("event=credentials_save_failed phone_id=%s", phone_id)

    async def _deliver_pairing_code(
        self, phone_id: str, generation: int, client: SessionClient
    ) -> None:
        record = self._registry.get(phone_id)
        if record is None or record.generation != generation:
            return
        pairing = record.pairing
        if pairing is None or not pairing.requested or pairing.delivered:
            return
        try:
            code = await client.request_pairing_code(record.phone_number)
        except Exception as exc:
            EVENT_ERRORS.labels("pairing_code").inc()
            LOGGER.warning("event=pairing_code_failed phone_id=%s error=%s", phone_id, exc)
            await self._transition(
                phone_id,
                generation,
                reason="pairing_code_failed",
                last_error=f"pairing_code_failed: {exc}",
            )
            return

        def _mutate(current: Optional[ConnectionRecord]) -> ConnectionRecord:
            if current is None or current.generation != generation:
                raise StaleGenerationError(phone_id)
            if current.pairing is None or current.pairing.delivered:
                raise StaleGenerationError(phone_id)
            return current.evolve(pairing=PairingState(requested=True, code=code, delivered=True))

        try:
            await self._registry.upsert(phone_id, _mutate)
        except StaleGenerationError:
            LOGGER.info("event=pairing_code_discarded phone_id=%s", phone_id)
            return
        PAIRING_CODES_TOTAL.inc()
        LOGGER.info("event=pairing_code_delivered phone_id=%s", phone_id)

    async def _on_opened(
        self,
        phone_id: str,
        generation: int,
        client: SessionClient,
        event: ConnectionOpened,
    ) -> None:
        record = await self._transition(
            phone_id,
            generation,
            reason="connection_open",
            status=ConnectionStatus.OPEN,
            last_error=None,
            pairing=None,
            qr=None,
            user=event.user,
        )
        if record is None:
            return
        try:
            contacts = await client.refresh_contacts()
        except Exception as exc:
            EVENT_ERRORS.labels("contacts_refresh").inc()
            LOGGER.warning("event=contacts_refresh_failed phone_id=%s error=%s", phone_id, exc)
            return
        count = len(contacts) if isinstance(contacts, (list, dict)) else 0
        LOGGER.info("event=contacts_refreshed phone_id=%s count=%s", phone_id, count)

    async def _on_closed(
        self,
        phone_id: str,
        generation: int,
        client: SessionClient,
        event: ConnectionClosed,
    ) -> None:
        error = event.reason.value if not event.detail else f"{event.reason.value}: {event.detail}"
        live_from = (ConnectionStatus.CONNECTING, ConnectionStatus.OPEN)
        if event.logged_out or self._closing:
            record = await self._transition(
                phone_id,
                generation,
                reason=event.reason.value,
                allowed_from=live_from,
                status=ConnectionStatus.CLOSED,
                session=None,
                logged_out=event.logged_out,
                qr=None,
                last_error=error,
            )
            if record is None:
                return
            await self._close_client(phone_id, client, reason=event.reason.value)
            if event.logged_out:
                LOGGER.info("event=logged_out phone_id=%s action=reauthenticate_required", phone_id)
                await self._clear_credentials(phone_id)
            return

        record = await self._transition(
            phone_id,
            generation,
            reason=event.reason.value,
            allowed_from=live_from,
            status=ConnectionStatus.RECONNECTING,
            qr=None,
            last_error=error,
        )
        if record is None:
            return
        self._schedule_reconnect(phone_id, record.generation)

    def _schedule_reconnect(self, phone_id: str, generation: int) -> None:
        if self._closing:
            return
        self._cancel_reconnect(phone_id)
        RECONNECTS_TOTAL.inc()
        LOGGER.info(
            "event=reconnect_scheduled phone_id=%s generation=%s delay=%s",
            phone_id,
            generation,
            self._reconnect_delay,
        )
        self._reconnects[phone_id] = asyncio.create_task(
            self._reconnect_later(phone_id, generation),
            name=f"wagateway-reconnect-{phone_id}-{generation}",
        )

    async def _reconnect_later(self, phone_id: str, generation: int) -> None:
        await asyncio.sleep(self._reconnect_delay)
        if self._reconnects.get(phone_id) is asyncio.current_task():
            self._reconnects.pop(phone_id, None)

        record = self._registry.get(phone_id)
        if (
            self._closing
            or record is None
            or record.generation != generation
            or record.status is not ConnectionStatus.RECONNECTING
        ):
            LOGGER.info(
                "event=reconnect_stale phone_id=%s generation=%s current=%s",
                phone_id,
                generation,
                record.generation if record else None,
            )
            return

        try:
            await self._initiate(
                phone_id,
                record.phone_number,
                pairing=record.pairing,
                reason="reconnect",
                expected_generation=generation,
            )
        except StaleGenerationError:
            LOGGER.info("event=reconnect_stale phone_id=%s generation=%s", phone_id, generation)
        except Exception as exc:
            EVENT_ERRORS.labels("reconnect").inc()
            LOGGER.error("event=reconnect_failed phone_id=%s error=%s", phone_id, exc)
            self._schedule_reconnect(phone_id, generation)

    async def _transition(
        self,
        phone_id: str,
        generation: int,
        *,
        reason: str,
        allowed_from: Optional[Iterable[ConnectionStatus]] = None,
        **changes: Any,
    ) -> Optional[ConnectionRecord]:
        allowed = frozenset(allowed_from) if allowed_from is not None else None
        previous: list[ConnectionStatus] = []

        def _mutate(current: Optional[ConnectionRecord]) -> ConnectionRecord:
            if current is None or current.generation != generation:
                raise StaleGenerationError(phone_id)
            if allowed is not None and current.status not in allowed:
                raise StaleGenerationError(phone_id)
            previous.append(current.status)
            return current.evolve(**changes)

        try:
            record = await self._registry.upsert(phone_id, _mutate)
        except StaleGenerationError:
            LOGGER.debug(
                "event=stale_transition_ignored phone_id=%s generation=%s reason=%s",
                phone_id,
                generation,
                reason,
            )
            return None
        self._log_transition(phone_id, previous[0], record.status, reason)
        self._update_metrics()
        return record

    async def _mark_closed(self, phone_id: str) -> None:
        def _mutate(current: Optional[ConnectionRecord]) -> ConnectionRecord:
            if current is None:
                raise StaleGenerationError(phone_id)
            if current.session is None:
                return current
            return current.evolve(status=ConnectionStatus.CLOSED, session=None, qr=None)

        with contextlib.suppress(StaleGenerationError):
            await self._registry.upsert(phone_id, _mutate)

    def _log_transition(
        self,
        phone_id: str,
        previous: ConnectionStatus,
        status: ConnectionStatus,
        reason: str,
    ) -> None:
        if previous is status:
            return
        LOGGER.info(
            "stage=state_transition phone_id=%s from=%s to=%s reason=%s",
            phone_id,
            previous.value,
            status.value,
            reason,
        )

    def _cancel_reconnect(self, phone_id: str) -> None:
        task = self._reconnects.pop(phone_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _cancel_listener(self, phone_id: str) -> None:
        task = self._listeners.pop(phone_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _close_client(self, phone_id: str, client: SessionClient, *, reason: str) -> None:
        try:
            await client.close()
        except Exception as exc:
            LOGGER.warning(
                "event=session_close_failed phone_id=%s reason=%s error=%s",
                phone_id,
                reason,
                exc,
            )

    async def _clear_credentials(self, phone_id: str) -> None:
        try:
            await self._credentials.clear(phone_id)
        except Exception as exc:
            LOGGER.warning("event=credentials_clear_failed phone_id=%s error=%s", phone_id, exc)

    def _update_metrics(self) -> None:
        for status, count in self._registry.stats().items():
            SESSIONS.labels(status).set(count)


def _pairing_settled(record: Optional[ConnectionRecord]) -> bool:
    if record is None:
        return True
    if record.pairing is None or record.pairing.delivered:
        return True
    return record.status is ConnectionStatus.CLOSED


__all__ = [
    "ConnectionManager",
    "StaleGenerationError",
    "RECONNECT_DELAY",
    "PAIRING_CODE_WAIT",
    "SHUTDOWN_TIMEOUT",
]
