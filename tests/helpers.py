"""Builders and fakes shared by the Hestia tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from core.hestia.exceptions import PriceSourceError
from core.hestia.models import HorizonDay, PricePoint, PriceSeries, State

BASE = datetime(2026, 2, 9, 0, 0, tzinfo=timezone.utc)


def make_series(prices, start: datetime = BASE, zone: str = "SE3", fetched_at: datetime | None = None) -> PriceSeries:
    """Hourly series starting at start; hours after the first 24 are tomorrow."""
    points = [
        PricePoint(
            timestamp_utc=start + timedelta(hours=i),
            price=Decimal(str(price)),
            horizon_day=HorizonDay.TODAY if i < 24 else HorizonDay.TOMORROW,
        )
        for i, price in enumerate(prices)
    ]
    return PriceSeries.build(zone, points, fetched_at=fetched_at or start)


def hour(offset: int, start: datetime = BASE) -> datetime:
    return start + timedelta(hours=offset)


class FakePriceSource:
    """Price source returning canned points per day, or raising."""

    def __init__(self, by_day: dict[date, list[PricePoint]] | None = None, fail: bool = False):
        self.by_day = by_day or {}
        self.fail = fail
        self.calls: list[tuple[str, date]] = []

    def get_prices(self, zone: str, day: date) -> list[PricePoint]:
        self.calls.append((zone, day))
        if self.fail:
            raise PriceSourceError("source down")
        if day not in self.by_day:
            raise PriceSourceError(f"no prices for {day}")
        return self.by_day[day]


class FakeApplier:
    """Records applied states; raises queued errors first."""

    def __init__(self, errors=None):
        self.errors = list(errors or [])
        self.calls: list[tuple[str, datetime, State]] = []

    def apply(self, user_id: str, hour: datetime, state: State) -> None:
        self.calls.append((user_id, hour, state))
        if self.errors:
            raise self.errors.pop(0)


class FakeRefresher:
    def __init__(self, result: bool = False):
        self.result = result
        self.calls: list[str] = []

    def refresh(self, user_id: str) -> bool:
        self.calls.append(user_id)
        return self.result


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)
