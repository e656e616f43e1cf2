"""
Hestia Data Models

Price points, schedule decisions and the per-user flexible schedule cursor.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def floor_hour(moment: datetime) -> datetime:
    """Truncate an aware datetime to the start of its hour, in UTC."""
    if moment.tzinfo is None:
        raise ValueError(f"Naive datetime not allowed: {moment!r}")
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


class HorizonDay(str, Enum):
    """Which day-ahead delivery day a price belongs to."""

    TODAY = "today"
    TOMORROW = "tomorrow"


class State(str, Enum):
    """DHW heater state for one hour."""

    COMFORT = "comfort"
    TURN_OFF = "turn_off"


class SlotReason(str, Enum):
    """Why a slot ended up in its state."""

    SEED = "seed"
    DEFAULT = "default"
    PERCENTILE = "percentile"
    STARVATION_GUARD = "starvation_guard"
    GAP_REPAIR = "gap_repair"


@dataclass(frozen=True)
class PricePoint:
    """Spot price for one delivery hour."""

    timestamp_utc: datetime
    price: Decimal
    horizon_day: HorizonDay


@dataclass(frozen=True)
class PriceSeries:
    """Chronologically ordered hourly prices for a zone."""

    zone: str
    points: tuple[PricePoint, ...]
    fetched_at: Optional[datetime] = None

    @classmethod
    def build(cls, zone: str, points, fetched_at: Optional[datetime] = None) -> "PriceSeries":
        """Create a series, one point per hour, later duplicates winning."""
        by_hour: dict[datetime, PricePoint] = {}
        for point in points:
            hour = floor_hour(point.timestamp_utc)
            by_hour[hour] = replace(point, timestamp_utc=hour)
        ordered = tuple(by_hour[hour] for hour in sorted(by_hour))
        return cls(zone=zone, points=ordered, fetched_at=fetched_at)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def has_tomorrow(self) -> bool:
        return any(p.horizon_day == HorizonDay.TOMORROW for p in self.points)

    def remaining(self, now: datetime) -> tuple[PricePoint, ...]:
        """Points whose delivery hour has not ended yet."""
        current = floor_hour(now)
        return tuple(p for p in self.points if p.timestamp_utc >= current)

    def __len__(self) -> int:
        return len(self.points)


@dataclass(frozen=True)
class HourSlot:
    """Classified state of one horizon hour."""

    start: datetime
    price: Decimal
    state: State
    reason: SlotReason

    @property
    def is_comfort(self) -> bool:
        return self.state == State.COMFORT


@dataclass(frozen=True)
class ScheduleDecision:
    """Per-hour state assignment covering the whole horizon."""

    zone: str
    generated_at: datetime
    slots: tuple[HourSlot, ...]
    turn_off_threshold: Optional[Decimal] = None
    warnings: tuple[str, ...] = ()
    fallback: bool = False
    summary: dict[str, float] = field(default_factory=dict, compare=False)

    def comfort_hours(self) -> list[datetime]:
        return [s.start for s in self.slots if s.is_comfort]

    def slot_at(self, hour: datetime) -> Optional[HourSlot]:
        target = floor_hour(hour)
        for slot in self.slots:
            if slot.start == target:
                return slot
        return None

    def state_at(self, hour: datetime) -> Optional[State]:
        slot = self.slot_at(hour)
        return slot.state if slot else None

    def max_comfort_gap(self, now: Optional[datetime] = None) -> float:
        """Largest distance in hours between consecutive Comfort hours.

        When ``now`` is given, the distance from the current hour to the
        first Comfort hour counts as well.
        """
        anchors = self.comfort_hours()
        if now is not None and anchors and anchors[0] > floor_hour(now):
            anchors = [floor_hour(now)] + anchors
        gaps = [hours_between(a, b) for a, b in zip(anchors, anchors[1:])]
        return max(gaps, default=0.0)

    def trimmed(self, now: datetime) -> "ScheduleDecision":
        """Copy without the hours that already ended."""
        current = floor_hour(now)
        return replace(self, slots=tuple(s for s in self.slots if s.start >= current))

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe representation for history and API responses."""
        return {
            "zone": self.zone,
            "generated_at": self.generated_at.isoformat(),
            "turn_off_threshold": str(self.turn_off_threshold) if self.turn_off_threshold is not None else None,
            "fallback": self.fallback,
            "warnings": list(self.warnings),
            "summary": dict(self.summary),
            "hours": [
                {
                    "start": s.start.isoformat(),
                    "price": str(s.price),
                    "state": s.state.value,
                    "reason": s.reason.value,
                }
                for s in self.slots
            ],
        }


@dataclass(frozen=True)
class FlexibleScheduleState:
    """Per-user cursor of the next pending Comfort run."""

    last_comfort_run_utc: Optional[datetime] = None
    last_eco_run_utc: Optional[datetime] = None  # legacy, read-only
    next_scheduled_comfort_utc: Optional[datetime] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "last_comfort_run_utc": _iso(self.last_comfort_run_utc),
            "last_eco_run_utc": _iso(self.last_eco_run_utc),
            "next_scheduled_comfort_utc": _iso(self.next_scheduled_comfort_utc),
        }


@dataclass(frozen=True)
class ScheduleHistoryEntry:
    """Append-only audit record of a computed decision."""

    user_id: str
    timestamp_utc: datetime
    snapshot: dict[str, Any]


class ActionKind(str, Enum):
    NONE = "none"
    SCHEDULE_RUN = "schedule_run"
    RESCHEDULE_RUN = "reschedule_run"
    RUN_NOW = "run_now"


@dataclass(frozen=True)
class ReconcileAction:
    """What the reoptimization engine wants done with the pending run."""

    kind: ActionKind
    hour: Optional[datetime] = None
    previous_hour: Optional[datetime] = None

    @classmethod
    def none(cls) -> "ReconcileAction":
        return cls(ActionKind.NONE)

    @classmethod
    def schedule_run(cls, hour: datetime) -> "ReconcileAction":
        return cls(ActionKind.SCHEDULE_RUN, hour)

    @classmethod
    def reschedule_run(cls, old: datetime, new: datetime) -> "ReconcileAction":
        return cls(ActionKind.RESCHEDULE_RUN, new, old)

    @classmethod
    def run_now(cls, hour: datetime) -> "ReconcileAction":
        return cls(ActionKind.RUN_NOW, hour)

    def describe(self) -> str:
        if self.kind == ActionKind.SCHEDULE_RUN:
            return f"comfort scheduled at {self.hour:%Y-%m-%d %H:00} UTC"
        if self.kind == ActionKind.RESCHEDULE_RUN:
            return (
                f"comfort moved {self.previous_hour:%Y-%m-%d %H:00} -> "
                f"{self.hour:%Y-%m-%d %H:00} UTC"
            )
        if self.kind == ActionKind.RUN_NOW:
            return f"comfort due now ({self.hour:%Y-%m-%d %H:00} UTC)"
        return "no change"

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "kind": self.kind.value,
            "hour": _iso(self.hour),
            "previous_hour": _iso(self.previous_hour),
        }


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of pushing a state to the device gateway."""

    success: bool
    attempts: int
    reason: Optional[str] = None
    auth_failure: bool = False


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one compute-and-apply cycle for a user."""

    user_id: str
    applied: bool
    decision: Optional[ScheduleDecision]
    message: str
    action: ReconcileAction = field(default_factory=ReconcileAction.none)
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "applied": self.applied,
            "message": self.message,
            "action": self.action.to_dict(),
            "warnings": list(self.warnings),
            "decision": self.decision.to_snapshot() if self.decision else None,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
