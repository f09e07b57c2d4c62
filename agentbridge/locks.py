"""TTL resource locks with lazy expiry sweeps."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Lock

from agentbridge.events import EventBroadcaster
from agentbridge.schemas import ResourceLock

logger = logging.getLogger(__name__)


class LockConflictError(Exception):
    """Raised when a resource already has an unexpired lock."""

    def __init__(self, lock: ResourceLock):
        super().__init__(f"Resource '{lock.resource}' is already locked by '{lock.holder}'")
        self.lock = lock


class LockNotFoundError(Exception):
    """Raised when no lock exists for a resource."""

    def __init__(self, resource: str):
        super().__init__(f"No lock held on resource '{resource}'")
        self.resource = resource


class LockExpiredError(Exception):
    """Raised when renewing a lock whose TTL has already run out."""

    def __init__(self, resource: str):
        super().__init__(f"Lock on resource '{resource}' has expired")
        self.resource = resource


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockRegistry:
    """Advisory per-resource mutual exclusion.

    Expired locks are swept before every operation and each sweep emits a
    ``lock.expired`` event, so expiry is always observable. The holder is
    recorded but not enforced on release.
    """

    def __init__(
        self,
        events: EventBroadcaster | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._events = events
        self._clock = clock
        self._locks: dict[str, ResourceLock] = {}
        self._lock = Lock()

    def acquire(self, resource: str, holder: str, ttl: float) -> ResourceLock:
        """Lock ``resource`` for ``holder`` for ``ttl`` seconds.

        Raises:
            LockConflictError: If an unexpired lock exists, whoever holds it
        """
        with self._lock:
            now = self._clock()
            self._sweep(now)

            existing = self._locks.get(resource)
            if existing is not None:
                raise LockConflictError(existing)

            lock = ResourceLock(resource=resource, holder=holder, ttl=ttl, created_at=now)
            self._locks[resource] = lock
            self._emit("lock.created", lock)

        logger.info(f"Lock acquired: {resource} by {holder} (ttl={ttl}s)")
        return lock

    def renew(self, resource: str, ttl: float) -> ResourceLock:
        """Restart the lock's lifetime with a new TTL.

        Raises:
            LockExpiredError: If the lock had already expired (it is swept)
            LockNotFoundError: If no lock exists
        """
        with self._lock:
            now = self._clock()
            swept = self._sweep(now)
            if resource in swept:
                raise LockExpiredError(resource)

            lock = self._locks.get(resource)
            if lock is None:
                raise LockNotFoundError(resource)

            lock = lock.model_copy(update={"ttl": ttl, "created_at": now})
            self._locks[resource] = lock
            self._emit("lock.renewed", lock)

        logger.info(f"Lock renewed: {resource} (ttl={ttl}s)")
        return lock

    def release(self, resource: str) -> ResourceLock:
        """Remove the lock on ``resource`` regardless of holder.

        Raises:
            LockNotFoundError: If no unexpired lock exists
        """
        with self._lock:
            self._sweep(self._clock())

            lock = self._locks.pop(resource, None)
            if lock is None:
                raise LockNotFoundError(resource)
            self._emit("lock.released", lock)

        logger.info(f"Lock released: {resource}")
        return lock

    def get(self, resource: str) -> ResourceLock | None:
        with self._lock:
            self._sweep(self._clock())
            return self._locks.get(resource)

    def list_locks(self) -> list[ResourceLock]:
        """Return all currently held locks."""
        with self._lock:
            self._sweep(self._clock())
            return list(self._locks.values())

    def clear(self) -> None:
        with self._lock:
            self._locks.clear()

    def _sweep(self, now: datetime) -> list[str]:
        # Caller holds self._lock.
        expired = [lock for lock in self._locks.values() if lock.is_expired(now)]
        for lock in expired:
            del self._locks[lock.resource]
            self._emit("lock.expired", lock)
            logger.info(f"Lock expired: {lock.resource} (held by {lock.holder})")
        return [lock.resource for lock in expired]

    def _emit(self, event_type: str, lock: ResourceLock) -> None:
        if self._events is not None:
            self._events.publish(event_type, lock.to_wire())
