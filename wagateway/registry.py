from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

from .client import SessionClient
from .errors import InternalError


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


LIVE_STATUSES = frozenset(
    {ConnectionStatus.CONNECTING, ConnectionStatus.OPEN, ConnectionStatus.RECONNECTING}
)


@dataclass(frozen=True, slots=True)
class PairingState:
    requested: bool = True
    code: Optional[str] = None
    delivered: bool = False


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """Immutable snapshot of one account connection.

    Records are never mutated in place: every transition builds a new record
    through :meth:`evolve` and the registry swaps it in atomically, so readers
    always see either the previous or the next state.
    """

    phone_id: str
    phone_number: str = ""
    status: ConnectionStatus = ConnectionStatus.IDLE
    pairing: Optional[PairingState] = None
    session: Optional[SessionClient] = field(default=None, repr=False, compare=False)
    last_error: Optional[str] = None
    generation: int = 0
    logged_out: bool = False
    qr: Optional[str] = None
    user: Optional[dict[str, Any]] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def pairing_pending(self) -> bool:
        return (
            self.pairing is not None
            and self.pairing.requested
            and self.status in {ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING}
        )

    def evolve(self, **changes: Any) -> "ConnectionRecord":
        changes.setdefault("updated_at", time.time())
        return dataclasses.replace(self, **changes)

    def to_payload(self) -> dict[str, Any]:
        pairing = self.pairing
        return {
            "phoneId": self.phone_id,
            "phoneNumber": self.phone_number,
            "status": self.status.value,
            "connected": self.status is ConnectionStatus.OPEN,
            "connecting": self.status is ConnectionStatus.CONNECTING,
            "reconnecting": self.status is ConnectionStatus.RECONNECTING,
            "loggedOut": self.logged_out,
            "pairingCode": pairing.code if pairing else None,
            "pairingCodeRequested": bool(pairing and pairing.requested),
            "pairingCodeSent": bool(pairing and pairing.delivered),
            "qr": self.qr,
            "lastError": self.last_error,
            "user": self.user,
            "updatedAt": int(self.updated_at * 1000),
        }


Mutator = Callable[[Optional[ConnectionRecord]], ConnectionRecord]
Predicate = Callable[[Optional[ConnectionRecord]], bool]


class ConnectionRegistry:
    """Single owner of every :class:`ConnectionRecord`, keyed by phone id.

    Mutations for one id are serialized on a per-id condition; reads are
    lock-free lookups of the current immutable snapshot.
    """

    def __init__(self) -> None:
        self._records: Dict[str, ConnectionRecord] = {}
        self._conditions: Dict[str, asyncio.Condition] = {}

    def _condition(self, phone_id: str) -> asyncio.Condition:
        condition = self._conditions.get(phone_id)
        if condition is None:
            condition = asyncio.Condition()
            self._conditions[phone_id] = condition
        return condition

    def get(self, phone_id: str) -> Optional[ConnectionRecord]:
        return self._records.get(phone_id)

    def __contains__(self, phone_id: object) -> bool:
        return phone_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    def snapshot(self) -> dict[str, ConnectionRecord]:
        return dict(self._records)

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ConnectionStatus}
        for record in list(self._records.values()):
            counts[record.status.value] += 1
        return counts

    @staticmethod
    def _validate(
        phone_id: str,
        current: Optional[ConnectionRecord],
        updated: ConnectionRecord,
    ) -> None:
        if not isinstance(updated, ConnectionRecord):
            raise InternalError(f"mutator for {phone_id} returned {type(updated).__name__}")
        if updated.phone_id != phone_id:
            raise InternalError(f"record key mismatch: {updated.phone_id} != {phone_id}")
        if not isinstance(updated.status, ConnectionStatus):
            raise InternalError(f"unknown status {updated.status!r} for {phone_id}")
        if (updated.session is not None) != updated.is_live:
            raise InternalError(
                f"session handle inconsistent with status={updated.status.value} for {phone_id}"
            )
        if current is None:
            return
        if updated.generation < current.generation:
            raise InternalError(f"generation went backwards for {phone_id}")
        old_pairing = current.pairing
        new_pairing = updated.pairing
        if (
            old_pairing is not None
            and new_pairing is not None
            and old_pairing.delivered
            and new_pairing.delivered
            and old_pairing.code != new_pairing.code
        ):
            raise InternalError(f"delivered pairing code rewritten for {phone_id}")

    async def upsert(self, phone_id: str, mutator: Mutator) -> ConnectionRecord:
        """Apply ``mutator`` to the current record atomically.

        ``mutator`` receives the current record (or ``None``) and returns the
        record to store. Returning the same object leaves the registry
        untouched. Concurrent calls for one id run one at a time in arrival
        order.
        """

        condition = self._condition(phone_id)
        async with condition:
            current = self._records.get(phone_id)
            updated = mutator(current)
            if updated is current and current is not None:
                return current
            self._validate(phone_id, current, updated)
            self._records[phone_id] = updated
            condition.notify_all()
            return updated

    async def remove(self, phone_id: str) -> Optional[ConnectionRecord]:
        """Move the record to terminal CLOSED without deleting the key."""

        condition = self._condition(phone_id)
        async with condition:
            current = self._records.get(phone_id)
            if current is None:
                return None
            updated = current.evolve(
                status=ConnectionStatus.CLOSED,
                session=None,
                generation=current.generation + 1,
                logged_out=True,
                pairing=None,
                qr=None,
            )
            self._validate(phone_id, current, updated)
            self._records[phone_id] = updated
            condition.notify_all()
            return updated

    async def wait_for(
        self,
        phone_id: str,
        predicate: Predicate,
        timeout: float,
    ) -> Optional[ConnectionRecord]:
        """Wait until ``predicate`` holds for the record or ``timeout`` elapses."""

        condition = self._condition(phone_id)
        async with condition:
            if predicate(self._records.get(phone_id)):
                return self._records.get(phone_id)
            if timeout <= 0:
                return self._records.get(phone_id)
            try:
                await asyncio.wait_for(
                    condition.wait_for(lambda: predicate(self._records.get(phone_id))),
                    timeout,
                )
            except asyncio.TimeoutError:
                pass
            return self._records.get(phone_id)


__all__ = [
    "ConnectionStatus",
    "ConnectionRecord",
    "ConnectionRegistry",
    "PairingState",
    "LIVE_STATUSES",
]
