"""
Per-account settlement guard.

At most one settlement (withdrawal, deposit sweep, reinvest, balance refresh)
may be in flight for an account. A lock older than SETTLEMENT_LOCK_TIMEOUT
belongs to a crashed worker and is reclaimed.
"""

import logging
import os
import random
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from redis import Redis

from boostvault.apps.accounts.models import SettlementLock

logger = logging.getLogger(__name__)

LOCK = "settlement:lock:{account_id}"

# atomic unlock (delete only if token matches the current value)
# returns 1 if deleted, 0 otherwise
_UNLOCK_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""


def _new_token() -> str:
    return f"{time.time()}:{os.getpid()}:{random.random()}"


class SettlementGuard:
    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout if timeout is not None else settings.SETTLEMENT_LOCK_TIMEOUT
        self._tokens: dict[int, str] = {}

    def acquire(self, account_id: int) -> bool:
        raise NotImplementedError

    def release(self, account_id: int) -> None:
        raise NotImplementedError

    @contextmanager
    def held(self, account_id: int):
        """Yield whether the lock was acquired; release it on exit only if it was."""
        acquired = self.acquire(account_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(account_id)


class DatabaseSettlementGuard(SettlementGuard):
    """Durable lock table; survives worker restarts."""

    def __init__(self, timeout: Optional[int] = None, clock: Optional[Callable] = None):
        super().__init__(timeout)
        self.clock = clock or timezone.now

    def acquire(self, account_id: int) -> bool:
        token = _new_token()
        now = self.clock()
        with transaction.atomic():
            lock, created = SettlementLock.objects.select_for_update().get_or_create(
                account_id=account_id,
                defaults={"token": token, "acquired_at": now},
            )
            if not created:
                age = now - lock.acquired_at
                if age < timedelta(seconds=self.timeout):
                    logger.info(f"[guard] Account {account_id} busy since {lock.acquired_at}")
                    return False
                logger.warning(
                    f"[guard] Reclaiming stale lock for account {account_id} "
                    f"(held {int(age.total_seconds())}s)"
                )
                lock.token = token
                lock.acquired_at = now
                lock.save(update_fields=["token", "acquired_at"])
        self._tokens[account_id] = token
        return True

    def release(self, account_id: int) -> None:
        token = self._tokens.pop(account_id, None)
        if token is None:
            return
        deleted, _ = SettlementLock.objects.filter(account_id=account_id, token=token).delete()
        if not deleted:
            logger.warning(f"[guard] Lock for account {account_id} was reclaimed before release")


class RedisSettlementGuard(SettlementGuard):
    """SET NX EX lease; an abandoned lease simply expires."""

    def __init__(self, timeout: Optional[int] = None, r: Optional[Redis] = None):
        super().__init__(timeout)
        self.r = r or Redis.from_url(settings.SETTLEMENT_REDIS_URL)

    def acquire(self, account_id: int) -> bool:
        key = LOCK.format(account_id=account_id)
        token = _new_token()
        if not self.r.set(key, token, nx=True, ex=self.timeout):
            logger.info(f"[guard] Account {account_id} busy")
            return False
        self._tokens[account_id] = token
        return True

    def release(self, account_id: int) -> None:
        token = self._tokens.pop(account_id, None)
        if token is None:
            return
        # only delete if token matches
        if not self.r.eval(_UNLOCK_LUA, 1, LOCK.format(account_id=account_id), token):
            logger.warning(f"[guard] Lease for account {account_id} expired before release")


def get_guard() -> SettlementGuard:
    backend = getattr(settings, "SETTLEMENT_GUARD_BACKEND", "database")
    if backend == "redis":
        return RedisSettlementGuard()
    if backend == "database":
        return DatabaseSettlementGuard()
    raise ValueError(f"Unknown SETTLEMENT_GUARD_BACKEND '{backend}'")
