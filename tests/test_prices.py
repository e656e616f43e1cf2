"""Tests for price parsing, the Home Assistant source and the price feed."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from core.hestia.exceptions import DataUnavailableError, DeviceUnavailableError, PriceSourceError
from core.hestia.models import HorizonDay, PricePoint
from core.hestia.price_stats import summarize
from core.hestia.prices import HomeAssistantPriceSource, PriceFeed, parse_raw_prices

from helpers import BASE, FakePriceSource

TODAY = date(2026, 2, 9)
TOMORROW = date(2026, 2, 10)


def _points(start: datetime, count: int, price: float = 0.5, day: HorizonDay = HorizonDay.TODAY):
    return [
        PricePoint(timestamp_utc=start + timedelta(hours=i), price=Decimal(str(price)), horizon_day=day)
        for i in range(count)
    ]


def test_parse_raw_prices_accepts_value_and_price_keys() -> None:
    """Test both integration formats parse to UTC hours."""
    entries = [
        {"start": "2026-02-09T00:00:00+01:00", "value": 0.42},
        {"start": "2026-02-09T01:00:00Z", "price": "0.5"},
    ]

    points = parse_raw_prices(entries, HorizonDay.TODAY)

    assert [p.timestamp_utc for p in points] == [
        datetime(2026, 2, 8, 23, 0, tzinfo=timezone.utc),
        datetime(2026, 2, 9, 1, 0, tzinfo=timezone.utc),
    ]
    assert [p.price for p in points] == [Decimal("0.42"), Decimal("0.5")]
    assert all(p.horizon_day == HorizonDay.TODAY for p in points)


def test_parse_raw_prices_skips_malformed_entries() -> None:
    """Test broken entries are dropped and the rest kept."""
    entries = [
        {"start": "2026-02-09T00:00:00Z", "value": 0.1},
        {"start": "not a date", "value": 0.2},
        {"value": 0.3},
        {"start": "2026-02-09T02:00:00Z", "value": None},
        {"start": "2026-02-09T03:00:00Z", "value": "NaN"},
        {"start": "2026-02-09T04:00:00Z", "value": 0.5},
    ]

    points = parse_raw_prices(entries, HorizonDay.TODAY)

    assert [p.timestamp_utc.hour for p in points] == [0, 4]


def test_parse_raw_prices_averages_quarter_hours() -> None:
    """Test 15-minute prices are aggregated to an hourly average."""
    entries = [
        {"start": "2026-02-09T10:00:00Z", "value": 0.1},
        {"start": "2026-02-09T10:15:00Z", "value": 0.2},
        {"start": "2026-02-09T10:30:00Z", "value": 0.3},
        {"start": "2026-02-09T10:45:00Z", "value": 0.4},
        {"start": "2026-02-09T11:00:00Z", "value": 1.0},
    ]

    points = parse_raw_prices(entries, HorizonDay.TODAY)

    assert len(points) == 2
    assert points[0].price == Decimal("0.25")
    assert points[1].price == Decimal("1.0")


def test_home_assistant_source_reads_sensor_by_local_day() -> None:
    """Test the sensor attributes are split by local delivery day."""
    ha_client = MagicMock()
    ha_client.get_state.return_value = {
        "state": "0.5",
        "attributes": {
            "raw_today": [{"start": f"2026-02-09T{h:02d}:00:00+01:00", "value": 0.5} for h in range(24)],
            "raw_tomorrow": [{"start": f"2026-02-10T{h:02d}:00:00+01:00", "value": 0.7} for h in range(24)],
        },
    }
    source = HomeAssistantPriceSource(ha_client, {"se3": "sensor.nordpool_se3"}, "Europe/Stockholm")

    today = source.get_prices("SE3", TODAY)
    tomorrow = source.get_prices("SE3", TOMORROW)

    ha_client.get_state.assert_called_with("sensor.nordpool_se3")
    assert len(today) == 24
    assert {p.price for p in today} == {Decimal("0.5")}
    assert len(tomorrow) == 24
    assert all(p.horizon_day == HorizonDay.TOMORROW for p in tomorrow)


def test_home_assistant_source_errors() -> None:
    """Test unknown zones and unreachable sensors raise PriceSourceError."""
    ha_client = MagicMock()
    ha_client.get_state.side_effect = DeviceUnavailableError("connection refused")
    source = HomeAssistantPriceSource(ha_client, {"SE3": "sensor.nordpool_se3"})

    with pytest.raises(PriceSourceError):
        source.get_prices("SE4", TODAY)
    with pytest.raises(PriceSourceError):
        source.get_prices("SE3", TODAY)


def test_feed_caches_until_max_age() -> None:
    """Test the horizon is fetched once and reused while fresh."""
    source = FakePriceSource({TODAY: _points(BASE, 24)})
    feed = PriceFeed(source, timezone="Europe/Stockholm", max_age_minutes=60)
    now = BASE + timedelta(hours=8)

    first = feed.horizon("SE3", now)
    second = feed.horizon("SE3", now + timedelta(minutes=30))

    assert first is second
    assert source.calls == [("SE3", TODAY), ("SE3", TOMORROW)]

    feed.horizon("SE3", now + timedelta(minutes=61))
    assert len(source.calls) == 4


def test_feed_refetches_after_publish_hour_without_tomorrow() -> None:
    """Test a series lacking tomorrow is stale once prices are published."""
    source = FakePriceSource({TODAY: _points(BASE, 24)})
    feed = PriceFeed(source, timezone="Europe/Stockholm", max_age_minutes=600, publish_hour=13)

    feed.horizon("SE3", BASE + timedelta(hours=11))  # 12:00 local
    source.by_day[TOMORROW] = _points(BASE + timedelta(hours=24), 24, price=0.7, day=HorizonDay.TOMORROW)
    series = feed.horizon("SE3", BASE + timedelta(hours=12, minutes=5))  # 13:05 local

    assert series.has_tomorrow
    assert len(series) == 48


def test_feed_without_today_raises() -> None:
    """Test missing today's prices with no cache is unavailable data."""
    feed = PriceFeed(FakePriceSource(), timezone="Europe/Stockholm")

    with pytest.raises(DataUnavailableError):
        feed.horizon("SE3", BASE + timedelta(hours=8))


def test_feed_falls_back_to_cache_when_source_fails() -> None:
    """Test a failing source keeps serving the cached series."""
    source = FakePriceSource({TODAY: _points(BASE, 24)})
    feed = PriceFeed(source, timezone="Europe/Stockholm", max_age_minutes=60)
    cached = feed.horizon("SE3", BASE + timedelta(hours=2))

    source.fail = True
    series = feed.horizon("SE3", BASE + timedelta(hours=5))

    assert series is cached
    with pytest.raises(DataUnavailableError):
        feed.refresh("SE3", BASE + timedelta(hours=5))


def test_feed_without_source_is_unavailable() -> None:
    """Test a feed with no configured source reports unavailable data."""
    feed = PriceFeed(None)

    with pytest.raises(DataUnavailableError):
        feed.refresh("SE3", BASE)


def test_summarize_statistics() -> None:
    """Test the numpy price summary."""
    summary = summarize([Decimal("0.1"), Decimal("0.2"), Decimal("0.3"), Decimal("1.4")])

    assert summary["mean"] == pytest.approx(0.5)
    assert summary["min"] == pytest.approx(0.1)
    assert summary["max"] == pytest.approx(1.4)
    assert summary["spread"] == pytest.approx(1.3)
    assert summarize([]) == {}
