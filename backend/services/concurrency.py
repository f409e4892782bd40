"""Per-key locking and cancellation for allotment mutations."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Hashable, Iterator, Optional

from backend.domain.errors import OperationCancelledError
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)


@dataclass
class OperationContext:
    """Cancellation signal carried by one inbound operation."""

    deadline: Optional[float] = None
    cancel_event: Event = field(default_factory=Event)

    @classmethod
    def with_timeout(cls, seconds: float) -> OperationContext:
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining_seconds(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self, stage: str) -> None:
        if self.cancelled:
            raise OperationCancelledError(f"operation cancelled {stage}")


@dataclass
class _KeyLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class KeyedLockRegistry:
    """One lock per ``(room_type_id, date)`` key; different keys never contend.

    A key's lock lives only while some caller holds it or waits for it, so the
    registry does not grow with every date ever touched.
    """

    def __init__(self, acquire_timeout_seconds: float = 5.0) -> None:
        self._acquire_timeout_seconds = acquire_timeout_seconds
        self._registry_lock = Lock()
        self._locks: dict[Hashable, _KeyLock] = {}

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def users(self, key: Hashable) -> int:
        """Callers currently holding or waiting for ``key``."""
        with self._registry_lock:
            entry = self._locks.get(key)
            return entry.users if entry is not None else 0

    def _checkout(self, key: Hashable) -> _KeyLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _KeyLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(
        self,
        key: Hashable,
        context: Optional[OperationContext] = None,
    ) -> Iterator[None]:
        """Acquire the key's lock, checking ``context`` before and after."""
        context = context or OperationContext()
        context.raise_if_cancelled("before acquiring lock")

        timeout = context.remaining_seconds()
        if timeout is None:
            timeout = self._acquire_timeout_seconds
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning(
                    "Lock acquisition timed out | %s",
                    format_fields(key=key, timeout_seconds=round(timeout, 3)),
                )
                raise OperationCancelledError(f"timed out waiting for lock on {key}")
            try:
                context.raise_if_cancelled("after acquiring lock")
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
