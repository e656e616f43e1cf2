"""
Job coordination: time-bounded leases per job kind and the retry policy
around device gateway calls.

A lease gives a single holder the right to run a job kind for a bounded
time. Expiry reclaims leases of holders that crashed, so liveness wins over
strict exclusion. This is at-most-one-concurrent-run, not exactly-once.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterator, Optional, Protocol

from .exceptions import DeviceApplyError, DeviceAuthError, DeviceUnavailableError
from .models import ApplyResult, State, utcnow

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    PRICE_REFRESH = "price-refresh"
    SCHEDULE_COMPUTE = "schedule-compute"
    TOKEN_REFRESH = "token-refresh"
    DAILY_BATCH = "daily-batch"


# Slowest expected external call plus margin
DEFAULT_LEASE_SECONDS = {
    JobKind.PRICE_REFRESH: 60,
    JobKind.SCHEDULE_COMPUTE: 120,
    JobKind.TOKEN_REFRESH: 30,
    JobKind.DAILY_BATCH: 600,
}

MANUAL_LEASE_SECONDS = 120


@dataclass(frozen=True)
class Lease:
    """Exclusive right to run ``key`` until ``expires_at``."""

    key: str
    token: str
    acquired_at: datetime
    expires_at: datetime


class LeaseStore(Protocol):
    def try_acquire(self, key: str, token: str, lease_seconds: int, now: datetime) -> bool: ...

    def release(self, key: str, token: str) -> bool: ...


class InMemoryLeaseStore:
    """Lease store for single-process deployments."""

    def __init__(self):
        self._leases: dict[str, tuple[str, datetime]] = {}
        self.lock = threading.Lock()

    def try_acquire(self, key: str, token: str, lease_seconds: int, now: datetime) -> bool:
        with self.lock:
            held = self._leases.get(key)
            if held is not None and held[1] > now:
                return False
            if held is not None:
                logger.info(f"Lease {key} expired at {held[1].isoformat()}, reclaiming")
            self._leases[key] = (token, now + timedelta(seconds=lease_seconds))
            return True

    def release(self, key: str, token: str) -> bool:
        with self.lock:
            held = self._leases.get(key)
            if held is None or held[0] != token:
                return False
            del self._leases[key]
            return True


# Delete only if we still own the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLeaseStore:
    """Lease store shared by several worker instances.

    Redis expires the key on its own, so ``now`` is ignored.
    """

    def __init__(self, client, prefix: str = "hestia:lease:"):
        """Initialize store.

        Args:
            client: redis.Redis client (decode_responses=True recommended)
            prefix: Key prefix for lease keys
        """
        self.client = client
        self.prefix = prefix

    def try_acquire(self, key: str, token: str, lease_seconds: int, now: datetime) -> bool:
        return bool(self.client.set(self.prefix + key, token, nx=True, ex=lease_seconds))

    def release(self, key: str, token: str) -> bool:
        return bool(self.client.eval(_RELEASE_SCRIPT, 1, self.prefix + key, token))


class JobCoordinator:
    """Grants leases per job kind."""

    def __init__(
        self,
        store: Optional[LeaseStore] = None,
        lease_seconds: Optional[dict] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or InMemoryLeaseStore()
        self.lease_seconds = dict(DEFAULT_LEASE_SECONDS)
        if lease_seconds:
            self.lease_seconds.update({JobKind(k): int(v) for k, v in lease_seconds.items()})
        self.clock = clock

    def try_acquire(self, job_kind: JobKind, lease_seconds: Optional[int] = None) -> Optional[Lease]:
        """Acquire the lease for a job kind.

        Returns:
            The Lease, or None when another holder still owns it (Busy)
        """
        seconds = self.lease_seconds[JobKind(job_kind)] if lease_seconds is None else lease_seconds
        return self._acquire(JobKind(job_kind).value, seconds)

    def try_acquire_manual(self, user_id: str, lease_seconds: int = MANUAL_LEASE_SECONDS) -> Optional[Lease]:
        """Per-user lease for interactive triggers, independent of the periodic jobs."""
        return self._acquire(f"manual:{user_id}", lease_seconds)

    def release(self, lease: Lease) -> bool:
        released = self.store.release(lease.key, lease.token)
        if not released:
            logger.debug(f"Lease {lease.key} was already expired or taken over")
        return released

    @contextmanager
    def hold(self, job_kind: JobKind, lease_seconds: Optional[int] = None) -> Iterator[Optional[Lease]]:
        """Context manager yielding the lease (or None when busy), released on exit."""
        lease = self.try_acquire(job_kind, lease_seconds)
        try:
            yield lease
        finally:
            if lease is not None:
                self.release(lease)

    def _acquire(self, key: str, seconds: int) -> Optional[Lease]:
        now = self.clock()
        token = uuid.uuid4().hex
        if not self.store.try_acquire(key, token, seconds, now):
            logger.debug(f"Lease {key} busy, skipping")
            return None
        return Lease(key=key, token=token, acquired_at=now, expires_at=now + timedelta(seconds=seconds))


def apply_with_retry(applier, user_id: str, hour: datetime, state: State) -> ApplyResult:
    """Push a state to the device gateway under the retry policy.

    - Transient failure: one immediate retry
    - Authorization failure: no retry, flagged so the caller refreshes tokens
    - Anything else the gateway rejects: no retry

    Device errors never propagate; they come back in the ApplyResult.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            applier.apply(user_id, hour, state)
            if attempts > 1:
                logger.info(f"Apply succeeded for user={user_id} on retry")
            return ApplyResult(success=True, attempts=attempts)
        except DeviceAuthError as e:
            logger.warning(f"Apply unauthorized for user={user_id}: {e}")
            return ApplyResult(success=False, attempts=attempts, reason=str(e), auth_failure=True)
        except DeviceUnavailableError as e:
            if attempts < 2:
                logger.warning(f"Apply failed for user={user_id} (transient, retrying): {e}")
                continue
            logger.error(f"Apply failed for user={user_id} after {attempts} attempts: {e}")
            return ApplyResult(success=False, attempts=attempts, reason=str(e))
        except DeviceApplyError as e:
            logger.error(f"Apply rejected for user={user_id}: {e}")
            return ApplyResult(success=False, attempts=attempts, reason=str(e))
