"""
Price-to-schedule classification.

Turns a day-ahead price series into a Comfort/TurnOff state for every hour:
- The cheapest hours are Comfort seeds unless the threshold turns them off
- Hours priced at or above a nearest-rank percentile turn off
- Everything else defaults to Comfort (fail warm)
- A gap-repair pass keeps Comfort hours within the maximum allowed distance
"""

import logging
from datetime import datetime
from decimal import ROUND_CEILING, Decimal

from .exceptions import InsufficientPriceDataError
from .models import (
    HourSlot,
    PricePoint,
    PriceSeries,
    ScheduleDecision,
    SlotReason,
    State,
    floor_hour,
    hours_between,
)
from .price_stats import summarize
from .settings import DEFAULT_ZONE, UserScheduleSettings

logger = logging.getLogger(__name__)


def nearest_rank(values: list[Decimal], percentile: float) -> Decimal:
    """Value at position ceil(p * N) of the ascending values (1-based).

    Args:
        values: Non-empty list of prices
        percentile: Quantile in (0, 1]

    Returns:
        The nearest-rank percentile value
    """
    if not values:
        raise ValueError("nearest_rank needs at least one value")
    ordered = sorted(values)
    rank = int((Decimal(str(percentile)) * len(ordered)).to_integral_value(rounding=ROUND_CEILING))
    rank = min(max(rank, 1), len(ordered))
    return ordered[rank - 1]


def classify(
    series: PriceSeries,
    settings: UserScheduleSettings,
    now: datetime,
    default_zone: str = DEFAULT_ZONE,
) -> ScheduleDecision:
    """Classify every remaining hour of the series.

    Args:
        series: Hourly prices, at least the remaining hours of today
        settings: User schedule settings (validated and clamped here)
        now: Current time (aware)
        default_zone: Zone substituted for an invalid settings zone

    Returns:
        ScheduleDecision covering every remaining hour exactly once

    Raises:
        InsufficientPriceDataError: If no hour of the series is left
    """
    horizon = series.remaining(now)
    if not horizon:
        raise InsufficientPriceDataError(
            f"No remaining price hours for zone {series.zone} at {now.isoformat()}"
        )

    settings, warnings = settings.validated(len(horizon), default_zone=default_zone)

    ranked = sorted(range(len(horizon)), key=lambda i: (horizon[i].price, horizon[i].timestamp_utc))
    seeds = set(ranked[: settings.comfort_hours])
    threshold = nearest_rank([p.price for p in horizon], settings.turn_off_percentile)

    states: list[State] = []
    reasons: list[SlotReason] = []
    for index, point in enumerate(horizon):
        if point.price >= threshold:
            states.append(State.TURN_OFF)
            reasons.append(SlotReason.PERCENTILE)
        elif index in seeds:
            states.append(State.COMFORT)
            reasons.append(SlotReason.SEED)
        else:
            states.append(State.COMFORT)
            reasons.append(SlotReason.DEFAULT)

    # The threshold applies to seeds too; only the single cheapest hour is kept
    if State.COMFORT not in states:
        cheapest = ranked[0]
        states[cheapest] = State.COMFORT
        reasons[cheapest] = SlotReason.STARVATION_GUARD

    _repair_gaps(horizon, states, reasons, now, settings.max_comfort_gap_hours, warnings)

    slots = tuple(
        HourSlot(start=point.timestamp_utc, price=point.price, state=state, reason=reason)
        for point, state, reason in zip(horizon, states, reasons)
    )
    decision = ScheduleDecision(
        zone=series.zone,
        generated_at=now,
        slots=slots,
        turn_off_threshold=threshold,
        warnings=tuple(warnings),
        summary=summarize([p.price for p in horizon]),
    )

    comfort_count = sum(1 for s in slots if s.is_comfort)
    logger.info(
        f"Classified {len(slots)} hours for {series.zone}: "
        f"comfort={comfort_count}, turn_off={len(slots) - comfort_count}, "
        f"threshold={threshold}, max_gap={decision.max_comfort_gap(now):.0f}h"
    )
    return decision


def _repair_gaps(
    horizon: tuple[PricePoint, ...],
    states: list[State],
    reasons: list[SlotReason],
    now: datetime,
    max_gap_hours: int,
    warnings: list[str],
) -> None:
    """Force the cheapest hour of every oversized gap to Comfort, in place."""
    comfort = [i for i, state in enumerate(states) if state == State.COMFORT]

    # (anchor time, anchor index, end time, end index); index -1 is "now"
    pending = []
    previous_time, previous_index = floor_hour(now), -1
    for index in comfort:
        pending.append((previous_time, previous_index, horizon[index].timestamp_utc, index))
        previous_time, previous_index = horizon[index].timestamp_utc, index

    while pending:
        start_time, start_index, end_time, end_index = pending.pop()
        if hours_between(start_time, end_time) <= max_gap_hours:
            continue

        inside = range(start_index + 1, end_index)
        if not inside:
            message = (
                f"Comfort gap {start_time:%Y-%m-%d %H:00} -> {end_time:%Y-%m-%d %H:00} "
                f"exceeds {max_gap_hours}h but has no priced hour to repair it"
            )
            logger.warning(message)
            warnings.append(message)
            continue

        chosen = min(inside, key=lambda i: (horizon[i].price, horizon[i].timestamp_utc))
        states[chosen] = State.COMFORT
        reasons[chosen] = SlotReason.GAP_REPAIR
        chosen_time = horizon[chosen].timestamp_utc
        logger.debug(f"Gap repair: forced comfort at {chosen_time:%Y-%m-%d %H:00}")

        pending.append((start_time, start_index, chosen_time, chosen))
        pending.append((chosen_time, chosen, end_time, end_index))
