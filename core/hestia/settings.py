"""
Hestia User Schedule Settings

Per-user knobs for the DHW schedule. Owned by the user and only read by the
engine. Keys coming from the API, config.yaml or the legacy user.json files
are accepted in camelCase, snake_case or PascalCase.
"""

import logging
import re
from dataclasses import asdict, dataclass, replace

logger = logging.getLogger(__name__)

DEFAULT_COMFORT_HOURS = 3
DEFAULT_TURN_OFF_PERCENTILE = 0.9
DEFAULT_MAX_COMFORT_GAP_HOURS = 28
DEFAULT_ZONE = "SE3"

MIN_TURN_OFF_PERCENTILE = 0.01
MAX_COMFORT_GAP_LIMIT = 72

_ZONE_PATTERN = re.compile(r"^(SE[1-4]|NO[1-9]|DK[12]|FI|EE|LV|LT)$")

# Legacy user.json keys that do not survive the generic conversion
_LEGACY_KEYS = {
    "auto_apply_schedule": "auto_apply",
}


def _camel_to_snake(name: str) -> str:
    """Convert camelCase (or PascalCase) to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def is_valid_zone(zone: str | None) -> bool:
    """Nord Pool bidding zones we know how to price."""
    if not zone or not zone.strip():
        return False
    return bool(_ZONE_PATTERN.match(zone.strip().upper()))


def normalize_zone(zone: str) -> str:
    return zone.strip().upper()


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class UserScheduleSettings:
    """Schedule configuration for a single user."""

    comfort_hours: int = DEFAULT_COMFORT_HOURS  # Cheapest hours always kept Comfort
    turn_off_percentile: float = DEFAULT_TURN_OFF_PERCENTILE  # Hours priced at/above this quantile turn off
    max_comfort_gap_hours: int = DEFAULT_MAX_COMFORT_GAP_HOURS  # Longest allowed stretch without Comfort
    auto_apply: bool = False  # Push due state to the device gateway
    zone: str = DEFAULT_ZONE

    @classmethod
    def from_dict(cls, data: dict) -> "UserScheduleSettings":
        """Create from dictionary, ignoring keys we do not know."""
        converted = {}
        for key, value in data.items():
            snake = _camel_to_snake(key)
            converted[_LEGACY_KEYS.get(snake, snake)] = value

        known = {k: converted[k] for k in cls.__dataclass_fields__ if k in converted}
        if "auto_apply" in known:
            known["auto_apply"] = _as_bool(known["auto_apply"])
        if "zone" in known and isinstance(known["zone"], str):
            known["zone"] = normalize_zone(known["zone"])
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)

    def validated(
        self, horizon_hours: int, default_zone: str = DEFAULT_ZONE, log: bool = True
    ) -> tuple["UserScheduleSettings", list[str]]:
        """Clamp every value into its valid range.

        Invalid settings are never fatal: each adjustment produces a warning
        and the clamped copy is returned.

        Args:
            horizon_hours: Number of hours in the horizon being classified
            default_zone: Zone used when ours is not a known bidding zone
            log: Log every adjustment as a warning

        Returns:
            Tuple of (valid settings, warnings)
        """
        warnings: list[str] = []
        upper_hours = max(1, horizon_hours)

        comfort_hours = _to_int(self.comfort_hours, DEFAULT_COMFORT_HOURS, "comfort_hours", warnings)
        if comfort_hours < 1 or comfort_hours > upper_hours:
            clamped = min(max(comfort_hours, 1), upper_hours)
            warnings.append(f"comfort_hours={comfort_hours} clamped to {clamped} (horizon {horizon_hours}h)")
            comfort_hours = clamped

        percentile = _to_float(self.turn_off_percentile, DEFAULT_TURN_OFF_PERCENTILE, "turn_off_percentile", warnings)
        if percentile <= 0:
            warnings.append(f"turn_off_percentile={percentile} clamped to {MIN_TURN_OFF_PERCENTILE}")
            percentile = MIN_TURN_OFF_PERCENTILE
        elif percentile > 1:
            warnings.append(f"turn_off_percentile={percentile} clamped to 1.0")
            percentile = 1.0

        max_gap = _to_int(self.max_comfort_gap_hours, DEFAULT_MAX_COMFORT_GAP_HOURS, "max_comfort_gap_hours", warnings)
        if max_gap < 1 or max_gap > MAX_COMFORT_GAP_LIMIT:
            clamped = min(max(max_gap, 1), MAX_COMFORT_GAP_LIMIT)
            warnings.append(f"max_comfort_gap_hours={max_gap} clamped to {clamped}")
            max_gap = clamped

        zone = self.zone
        if not is_valid_zone(zone):
            warnings.append(f"zone={zone!r} is not a known price zone, using {default_zone}")
            zone = default_zone
        else:
            zone = normalize_zone(zone)

        if log:
            for message in warnings:
                logger.warning(f"Invalid schedule setting: {message}")

        return (
            replace(
                self,
                comfort_hours=comfort_hours,
                turn_off_percentile=percentile,
                max_comfort_gap_hours=max_gap,
                zone=zone,
            ),
            warnings,
        )


def _to_int(value, default: int, name: str, warnings: list[str]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        warnings.append(f"{name}={value!r} is not a number, using {default}")
        return default


def _to_float(value, default: float, name: str, warnings: list[str]) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        warnings.append(f"{name}={value!r} is not a number, using {default}")
        return default
