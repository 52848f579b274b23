from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import contextmanager
from typing import Iterator

from .errors import FlowAlreadyActiveError, FlowCancelledError
from .models import PlanKind

logger = logging.getLogger(__name__)


class CancellationToken:
    """Per-record flag checked before any backend response is applied."""

    __slots__ = ("record_id", "_cancelled")

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class FlowRegistry:
    """In-process bookkeeping for active conversation/generation flows.

    * One active record id per (owner, plan kind) slot.
    * One ``asyncio.Lock`` per record id; every persisted mutation of a record
      happens while holding it.  Locks are held weakly and vanish once no
      coroutine is using them.
    * At most one backend call in flight per record id.
    * One cancellation token per claimed slot, dropped when the slot is
      released or cancelled.  Flows that still hold the token keep seeing it.
    """

    def __init__(self) -> None:
        self._active: dict[tuple[str, PlanKind], str] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._tokens: dict[str, CancellationToken] = {}
        self._in_flight: set[str] = set()

    def active_record(self, owner_id: str, plan_kind: PlanKind) -> str | None:
        return self._active.get((owner_id, plan_kind))

    def is_active(self, owner_id: str, plan_kind: PlanKind) -> bool:
        return (owner_id, plan_kind) in self._active

    def claim(self, owner_id: str, plan_kind: PlanKind, record_id: str) -> CancellationToken:
        """Make ``record_id`` the active flow for (owner, kind).

        Re-claiming the slot for the record that already holds it is allowed.

        Raises:
            FlowAlreadyActiveError: If another record holds the slot.
        """
        slot = (owner_id, plan_kind)
        current = self._active.get(slot)
        if current is not None and current != record_id:
            raise FlowAlreadyActiveError(
                f"{plan_kind.value} flow {current} is already active for owner",
                record_id=current,
            )
        token = self._tokens.get(record_id)
        if token is None or token.cancelled:
            token = CancellationToken(record_id)
            self._tokens[record_id] = token
        if current is None:
            logger.debug("Claimed %s flow for record %s", plan_kind.value, record_id)
        self._active[slot] = record_id
        return token

    def release(self, owner_id: str, plan_kind: PlanKind, record_id: str) -> None:
        """Free the slot if ``record_id`` still holds it."""
        slot = (owner_id, plan_kind)
        if self._active.get(slot) == record_id:
            del self._active[slot]
            self._tokens.pop(record_id, None)
            logger.debug("Released %s flow for record %s", plan_kind.value, record_id)

    def cancel(self, owner_id: str, plan_kind: PlanKind) -> str | None:
        """Cancel and release the active flow for (owner, kind); return its record id."""
        record_id = self._active.pop((owner_id, plan_kind), None)
        if record_id is None:
            return None
        token = self._tokens.pop(record_id, None)
        if token is not None:
            token.cancel()
        logger.info("Cancelled %s flow for record %s", plan_kind.value, record_id)
        return record_id

    def lock(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[record_id] = lock
        return lock

    def is_current(self, owner_id: str, plan_kind: PlanKind, token: CancellationToken) -> bool:
        return not token.cancelled and self._active.get((owner_id, plan_kind)) == token.record_id

    def ensure_current(self, owner_id: str, plan_kind: PlanKind, token: CancellationToken) -> None:
        """Raise if the flow behind ``token`` was started over or superseded.

        Raises:
            FlowCancelledError: If the response must be discarded.
        """
        if not self.is_current(owner_id, plan_kind, token):
            logger.warning("Discarding backend response for cancelled record %s", token.record_id)
            raise FlowCancelledError(f"flow for record {token.record_id} was cancelled", record_id=token.record_id)

    @contextmanager
    def backend_call(self, record_id: str) -> Iterator[None]:
        """Mark a backend call in flight for ``record_id``.

        Raises:
            FlowAlreadyActiveError: If a call for the same record is already in flight.
        """
        if record_id in self._in_flight:
            raise FlowAlreadyActiveError(
                f"a backend call for record {record_id} is already in flight", record_id=record_id
            )
        self._in_flight.add(record_id)
        try:
            yield
        finally:
            self._in_flight.discard(record_id)

    def tracked_records(self) -> set[str]:
        """Record ids that still hold a lock, a token or an in-flight call."""
        return set(self._locks.keys()) | set(self._tokens) | self._in_flight
