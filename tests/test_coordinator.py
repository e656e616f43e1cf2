"""Tests for job leases and the apply retry policy."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from core.hestia.coordinator import (
    InMemoryLeaseStore,
    JobCoordinator,
    JobKind,
    RedisLeaseStore,
    apply_with_retry,
)
from core.hestia.exceptions import DeviceApplyError, DeviceAuthError, DeviceUnavailableError, EntityNotFoundError
from core.hestia.models import State

from helpers import BASE, FakeApplier, FakeClock, hour


def _coordinator(clock: FakeClock) -> JobCoordinator:
    return JobCoordinator(InMemoryLeaseStore(), clock=clock)


def test_second_acquire_is_busy_until_lease_expires() -> None:
    """Test a held lease blocks others until it expires, then is reclaimed."""
    clock = FakeClock(BASE)
    coordinator = _coordinator(clock)

    first = coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE)
    assert first is not None
    assert (first.expires_at - first.acquired_at).total_seconds() == 120

    clock.advance(seconds=119)
    assert coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE) is None

    clock.advance(seconds=1)
    reclaimed = coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE)
    assert reclaimed is not None
    assert reclaimed.token != first.token

    # The crashed holder's late release must not free the new lease
    assert coordinator.release(first) is False
    assert coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE) is None


def test_release_frees_the_lease() -> None:
    """Test a released lease can be acquired again immediately."""
    coordinator = _coordinator(FakeClock(BASE))

    lease = coordinator.try_acquire(JobKind.PRICE_REFRESH)
    assert coordinator.release(lease) is True
    assert coordinator.try_acquire(JobKind.PRICE_REFRESH) is not None


def test_job_kinds_are_independent() -> None:
    """Test leases of different kinds do not block each other."""
    coordinator = _coordinator(FakeClock(BASE))

    assert coordinator.try_acquire(JobKind.PRICE_REFRESH) is not None
    assert coordinator.try_acquire(JobKind.TOKEN_REFRESH) is not None
    assert coordinator.try_acquire(JobKind.DAILY_BATCH) is not None


def test_hold_releases_on_exit_and_on_error() -> None:
    """Test the context manager yields None when busy and always releases."""
    coordinator = _coordinator(FakeClock(BASE))

    with coordinator.hold(JobKind.DAILY_BATCH) as lease:
        assert lease is not None
        with coordinator.hold(JobKind.DAILY_BATCH) as busy:
            assert busy is None

    with pytest.raises(RuntimeError):
        with coordinator.hold(JobKind.DAILY_BATCH) as lease:
            assert lease is not None
            raise RuntimeError("job crashed")

    assert coordinator.try_acquire(JobKind.DAILY_BATCH) is not None


def test_manual_lease_is_per_user() -> None:
    """Test manual triggers lock per user, not per job kind."""
    coordinator = _coordinator(FakeClock(BASE))

    assert coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE) is not None
    alice = coordinator.try_acquire_manual("alice")
    assert alice is not None
    assert alice.key == "manual:alice"
    assert coordinator.try_acquire_manual("alice") is None
    assert coordinator.try_acquire_manual("bob") is not None


def test_lease_seconds_can_be_overridden() -> None:
    """Test configured lease lengths replace the defaults."""
    clock = FakeClock(BASE)
    coordinator = JobCoordinator(InMemoryLeaseStore(), lease_seconds={"price-refresh": 10}, clock=clock)

    assert coordinator.try_acquire(JobKind.PRICE_REFRESH) is not None
    clock.advance(seconds=10)
    assert coordinator.try_acquire(JobKind.PRICE_REFRESH) is not None


def test_explicit_zero_lease_seconds_is_honored() -> None:
    """Test a zero-length lease is not replaced by the default."""
    clock = FakeClock(BASE)
    coordinator = _coordinator(clock)

    lease = coordinator.try_acquire(JobKind.DAILY_BATCH, lease_seconds=0)

    assert lease is not None
    assert lease.expires_at == lease.acquired_at
    assert coordinator.try_acquire(JobKind.DAILY_BATCH) is not None


def test_redis_store_uses_set_nx_with_expiry() -> None:
    """Test the redis store acquires with SET NX EX and releases by token."""
    client = MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    coordinator = JobCoordinator(RedisLeaseStore(client), clock=FakeClock(BASE))

    lease = coordinator.try_acquire(JobKind.SCHEDULE_COMPUTE)

    assert lease is not None
    client.set.assert_called_once_with("hestia:lease:schedule-compute", lease.token, nx=True, ex=120)

    assert coordinator.release(lease) is True
    args = client.eval.call_args.args
    assert args[1:] == (1, "hestia:lease:schedule-compute", lease.token)


def test_redis_store_busy_when_key_exists() -> None:
    """Test SET NX returning None means another holder owns the lease."""
    client = MagicMock()
    client.set.return_value = None

    coordinator = JobCoordinator(RedisLeaseStore(client), clock=FakeClock(BASE))

    assert coordinator.try_acquire(JobKind.TOKEN_REFRESH) is None


def test_apply_succeeds_first_time() -> None:
    """Test a working gateway is called once."""
    applier = FakeApplier()

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert result.success
    assert result.attempts == 1
    assert applier.calls == [("u1", hour(3), State.COMFORT)]


def test_apply_retries_once_on_transient_failure() -> None:
    """Test one transient failure is retried."""
    applier = FakeApplier([DeviceUnavailableError("timeout")])

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert result.success
    assert result.attempts == 2


def test_apply_gives_up_after_second_transient_failure() -> None:
    """Test a second transient failure is returned, not raised."""
    applier = FakeApplier([DeviceUnavailableError("timeout"), DeviceUnavailableError("timeout")])

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert not result.success
    assert result.attempts == 2
    assert not result.auth_failure
    assert "timeout" in result.reason


def test_apply_does_not_retry_auth_failure() -> None:
    """Test authorization failures are flagged without retrying."""
    applier = FakeApplier([DeviceAuthError("401")])

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert not result.success
    assert result.attempts == 1
    assert result.auth_failure


def test_apply_does_not_retry_rejection() -> None:
    """Test other gateway errors fail without retry."""
    applier = FakeApplier([DeviceApplyError("bad request")])

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert not result.success
    assert result.attempts == 1
    assert len(applier.calls) == 1


def test_apply_missing_entity_is_a_failed_result() -> None:
    """Test an unknown device entity comes back as a failure, not an exception."""
    applier = FakeApplier([EntityNotFoundError("Entity not found: water_heater.missing")])

    result = apply_with_retry(applier, "u1", hour(3), State.COMFORT)

    assert not result.success
    assert result.attempts == 1
    assert "water_heater.missing" in result.reason
