"""
Day-ahead Price Feed

Fetches Nord Pool prices from Home Assistant and keeps one cached series per
zone. PriceFeed is the only read path for prices; jobs and previews both get
it injected.
"""

import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from .exceptions import DataUnavailableError, DeviceApplyError, PriceSourceError
from .models import HorizonDay, PricePoint, PriceSeries, floor_hour

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Stockholm"
DEFAULT_PUBLISH_HOUR = 13
DEFAULT_MAX_AGE_MINUTES = 60


class PriceSource(Protocol):
    def get_prices(self, zone: str, day: date) -> list[PricePoint]:
        """Hourly prices for one delivery day. Raises PriceSourceError."""
        ...


def parse_raw_prices(entries, horizon_day: HorizonDay) -> list[PricePoint]:
    """Parse Nord Pool sensor entries into hourly price points.

    Entries are dicts with 'start' and 'value' (official integration) or
    'price' (custom integrations). Malformed entries are skipped with a
    warning. Quarter-hour entries are averaged per hour.
    """
    by_hour: dict[datetime, list[Decimal]] = defaultdict(list)
    for entry in entries or []:
        try:
            start = entry["start"]
            if isinstance(start, str):
                start = datetime.fromisoformat(start.replace("Z", "+00:00"))
            raw = entry.get("value")
            if raw is None:
                raw = entry.get("price")
            price = Decimal(str(raw))
            if not price.is_finite():
                raise ValueError(f"non-finite price {raw}")
            by_hour[floor_hour(start)].append(price)
        except (KeyError, ValueError, TypeError, AttributeError, InvalidOperation) as e:
            logger.warning(f"Failed to parse price entry: {entry}, error: {e}")
            continue

    points = []
    for hour in sorted(by_hour):
        values = by_hour[hour]
        if len(values) > 1:
            average = (sum(values) / len(values)).quantize(Decimal("0.00001"))
        else:
            average = values[0]
        points.append(PricePoint(timestamp_utc=hour, price=average, horizon_day=horizon_day))
    return points


class HomeAssistantPriceSource:
    """Reads prices from a Nord Pool sensor in Home Assistant."""

    def __init__(self, ha_client, sensors: dict[str, str], timezone: str = DEFAULT_TIMEZONE):
        """Initialize price source.

        Args:
            ha_client: Home Assistant API client
            sensors: Nord Pool sensor entity per zone (e.g., {"SE3": "sensor.nordpool_kwh_se3_sek"})
            timezone: Local timezone of the delivery days
        """
        self.ha_client = ha_client
        self.sensors = {zone.upper(): entity for zone, entity in sensors.items()}
        self.tz = ZoneInfo(timezone)

    def get_prices(self, zone: str, day: date) -> list[PricePoint]:
        entity_id = self.sensors.get(zone.upper())
        if not entity_id:
            raise PriceSourceError(f"No price sensor configured for zone {zone}")

        try:
            state = self.ha_client.get_state(entity_id)
        except (ValueError, DeviceApplyError) as e:
            raise PriceSourceError(f"Failed to read {entity_id}: {e}") from e

        attributes = state.get("attributes", {})
        points = parse_raw_prices(attributes.get("raw_today", []), HorizonDay.TODAY)
        points += parse_raw_prices(attributes.get("raw_tomorrow", []), HorizonDay.TOMORROW)

        # The sensor rolls over at local midnight, so pick by local date
        return [p for p in points if p.timestamp_utc.astimezone(self.tz).date() == day]


class PriceFeed:
    """Cached day-ahead horizon per zone."""

    def __init__(
        self,
        source: Optional[PriceSource],
        timezone: str = DEFAULT_TIMEZONE,
        max_age_minutes: int = DEFAULT_MAX_AGE_MINUTES,
        publish_hour: int = DEFAULT_PUBLISH_HOUR,
    ):
        self.source = source
        self.tz = ZoneInfo(timezone)
        self.max_age = timedelta(minutes=max_age_minutes)
        self.publish_hour = publish_hour
        self._cache: dict[str, PriceSeries] = {}
        self.lock = threading.Lock()

    def cached(self, zone: str) -> Optional[PriceSeries]:
        with self.lock:
            return self._cache.get(zone)

    def is_stale(self, series: Optional[PriceSeries], now: datetime) -> bool:
        if series is None or series.fetched_at is None:
            return True
        if now - series.fetched_at >= self.max_age:
            return True
        if not series.remaining(now):
            return True
        # Tomorrow's prices are published early afternoon
        if now.astimezone(self.tz).hour >= self.publish_hour and not series.has_tomorrow:
            return True
        return False

    def horizon(self, zone: str, now: datetime) -> PriceSeries:
        """Prices for the rest of today and tomorrow if published.

        Raises:
            DataUnavailableError: If nothing could be fetched and no cached
                series has hours left
        """
        cached = self.cached(zone)
        if not self.is_stale(cached, now):
            return cached

        try:
            return self.refresh(zone, now)
        except DataUnavailableError:
            if cached is not None and cached.remaining(now):
                logger.warning(f"Price refresh for {zone} failed, using cached series from {cached.fetched_at}")
                return cached
            raise

    def refresh(self, zone: str, now: datetime) -> PriceSeries:
        """Fetch today and tomorrow for a zone, bypassing the cache."""
        if self.source is None:
            raise DataUnavailableError(f"No price source configured, cannot fetch {zone}")
        today = now.astimezone(self.tz).date()

        try:
            today_points = self.source.get_prices(zone, today)
        except PriceSourceError as e:
            raise DataUnavailableError(f"Today's prices unavailable for {zone}: {e}") from e
        if not today_points:
            raise DataUnavailableError(f"Today's prices unavailable for {zone}: source returned nothing")

        try:
            tomorrow_points = self.source.get_prices(zone, today + timedelta(days=1))
        except PriceSourceError as e:
            logger.info(f"Tomorrow's prices not available for {zone} yet: {e}")
            tomorrow_points = []

        series = PriceSeries.build(zone, list(today_points) + list(tomorrow_points), fetched_at=now)
        with self.lock:
            self._cache[zone] = series
        logger.info(
            f"Fetched {len(series)} price hours for {zone} "
            f"(today={len(today_points)}, tomorrow={len(tomorrow_points)})"
        )
        return series
