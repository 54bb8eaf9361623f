"""Idempotency locks for gateway notifications.

A lock is a lease with a TTL so a crashed holder cannot block the transaction
forever. Two backends sit behind ``IdempotencyLock``:

``redis``  a redis-py ``Lock`` (SET NX PX on acquire, token-checked Lua delete
           on release), shared by every worker process.
``cache``  ``cache.add`` on the Django cache with a random owner token. Release
           is a get-then-delete, so only use it where one process holds the
           locks (tests, local development).
"""

import logging
import secrets
from contextlib import contextmanager

from django.core.cache import cache
from redis.exceptions import LockNotOwnedError

from .clients import get_client
from .conf import payments_setting
from .exceptions import LockContention

logger = logging.getLogger(__name__)

LOCK_PREFIX = "payments:lock:"


def notification_keys(tran_id: str, val_id: str = "") -> list:
    keys = [f"tran:{tran_id}"]
    if val_id:
        keys.append(f"val:{val_id}")
    return keys


class IdempotencyLock:
    def __init__(self, key: str, ttl: int | None = None):
        self.key = LOCK_PREFIX + key
        self.ttl = ttl or payments_setting("LOCK_TTL")
        self.token = secrets.token_hex(16)
        self.held = False
        self._lease = None

    def acquire(self) -> bool:
        """Try once; never waits for the current holder."""
        if payments_setting("LOCK_BACKEND") == "redis":
            self._lease = get_client().lock(self.key, timeout=self.ttl)
            self.held = bool(self._lease.acquire(blocking=False, token=self.token))
        else:
            self.held = bool(cache.add(self.key, self.token, timeout=self.ttl))
        return self.held

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        # After TTL expiry the key may belong to someone else.
        if self._lease is not None:
            try:
                self._lease.release()
            except LockNotOwnedError:
                logger.warning("Lock %s expired before release", self.key)
        elif cache.get(self.key) == self.token:
            cache.delete(self.key)
        else:
            logger.warning("Lock %s expired before release", self.key)

    def __repr__(self):
        return f"<IdempotencyLock {self.key} held={self.held}>"


@contextmanager
def acquire_all(*keys):
    """Hold a lease on every key, or raise LockContention for the first busy one.

    Leases taken before the busy key are released before the error propagates.
    """
    held = []
    try:
        for key in keys:
            lock = IdempotencyLock(key)
            if not lock.acquire():
                raise LockContention(key)
            held.append(lock)
        yield held
    finally:
        for lock in reversed(held):
            lock.release()
