"""
Atomic Lock Manager Service
Keyed asyncio locks serializing work per source address and per entity
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


class LockOperationType(Enum):
    """Types of operations that require atomic locking"""
    NONCE_SEQUENCING = "nonce_sequencing"
    WALLET_BINDING = "wallet_binding"
    WALLET_BALANCE_UPDATE = "wallet_balance_update"
    RECEIPT_MINT = "receipt_mint"
    PAYMENT_PROCESSING = "payment_processing"


class LockTimeoutError(Exception):
    """Raised when a lock could not be acquired within the requested timeout"""

    def __init__(self, lock_name: str, timeout: float):
        self.lock_name = lock_name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock {lock_name}")


class _KeyedLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0  # tasks holding or waiting on the lock


class AtomicLockManager:
    """
    Process-wide keyed lock manager

    One lock exists per name while any task holds or waits on it; idle entries
    are dropped so the table does not grow with every address ever seen. All
    orchestrated operations that must not interleave share one instance.
    """

    def __init__(self, default_lock_timeout: Optional[float] = None):
        self.default_lock_timeout = default_lock_timeout
        self._locks: Dict[str, _KeyedLock] = {}

        # Performance metrics
        self.metrics = {
            'locks_acquired': 0,
            'locks_released': 0,
            'lock_contentions': 0,
            'lock_timeouts': 0,
        }

    @asynccontextmanager
    async def acquire(
        self,
        lock_name: str,
        operation_type: LockOperationType,
        resource_id: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """
        Hold the named lock for the duration of the block

        Args:
            lock_name: Unique name for the lock
            operation_type: Type of operation requiring the lock
            resource_id: ID of resource being locked (for logging)
            timeout_seconds: Max wait for the lock (default: wait indefinitely)

        Yields:
            Owner token for log correlation

        Raises:
            LockTimeoutError: If the lock was not acquired in time
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.default_lock_timeout
        entry = self._locks.get(lock_name)
        if entry is None:
            entry = self._locks[lock_name] = _KeyedLock()
        entry.holders += 1

        if entry.lock.locked():
            self.metrics['lock_contentions'] += 1
            logger.debug(f"⏳ ATOMIC_LOCK_CONTENTION: {lock_name} already held")

        try:
            if timeout is None:
                await entry.lock.acquire()
            else:
                try:
                    await asyncio.wait_for(entry.lock.acquire(), timeout)
                except asyncio.TimeoutError:
                    self.metrics['lock_timeouts'] += 1
                    logger.warning(f"⚠️ ATOMIC_LOCK_TIMEOUT: {lock_name} after {timeout}s")
                    raise LockTimeoutError(lock_name, timeout)
        except BaseException:
            self._drop_holder(lock_name, entry)
            raise

        owner_token = uuid.uuid4().hex
        self.metrics['locks_acquired'] += 1
        logger.debug(
            f"🔒 ATOMIC_LOCK_ACQUIRED: {lock_name} [{operation_type.value}] "
            f"token={owner_token[:8]} resource={resource_id}"
        )
        try:
            yield owner_token
        finally:
            entry.lock.release()
            self.metrics['locks_released'] += 1
            self._drop_holder(lock_name, entry)
            logger.debug(f"🔓 ATOMIC_LOCK_RELEASED: {lock_name} token={owner_token[:8]}")

    def _drop_holder(self, lock_name: str, entry: _KeyedLock):
        entry.holders -= 1
        if entry.holders == 0 and self._locks.get(lock_name) is entry:
            del self._locks[lock_name]

    def is_locked(self, lock_name: str) -> bool:
        entry = self._locks.get(lock_name)
        return bool(entry and entry.lock.locked())

    @property
    def active_lock_count(self) -> int:
        return len(self._locks)
