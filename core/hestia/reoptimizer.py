"""
Incremental re-optimization of the pending Comfort run.

The engine owns the per-user cursor (FlexibleScheduleState) and only moves
the pending run when a fresh decision shows a better hour. Pushing a new
schedule on every price refresh is what we want to avoid.

State machine:
    Idle --ScheduleRun/RescheduleRun--> Pending(hour)
    Pending --now passes hour unconfirmed--> Overdue (forces RunNow)
    Pending/Overdue --confirmed execution--> Idle
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .models import (
    FlexibleScheduleState,
    HourSlot,
    ReconcileAction,
    ScheduleDecision,
    floor_hour,
)

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    OVERDUE = "overdue"


class ReoptimizationEngine:
    """Reconciles fresh decisions against the persisted per-user cursor."""

    def phase(self, state: FlexibleScheduleState, now: datetime) -> Phase:
        if state.next_scheduled_comfort_utc is None:
            return Phase.IDLE
        if floor_hour(state.next_scheduled_comfort_utc) < floor_hour(now):
            return Phase.OVERDUE
        return Phase.PENDING

    def deadline(self, state: FlexibleScheduleState, max_comfort_gap_hours: int) -> Optional[datetime]:
        """Latest hour the next Comfort run may happen, None before the first run."""
        if state.last_comfort_run_utc is None:
            return None
        return floor_hour(state.last_comfort_run_utc + timedelta(hours=max_comfort_gap_hours))

    def reconcile(
        self,
        state: FlexibleScheduleState,
        decision: ScheduleDecision,
        now: datetime,
        max_comfort_gap_hours: int,
    ) -> tuple[FlexibleScheduleState, ReconcileAction]:
        """Decide whether the pending Comfort run should move.

        Args:
            state: Persisted cursor for the user
            decision: Freshly computed decision
            now: Current time (aware)
            max_comfort_gap_hours: User's maximum gap between Comfort runs

        Returns:
            Tuple of (updated state, action). The input state is not modified.
        """
        current = floor_hour(now)
        deadline = self.deadline(state, max_comfort_gap_hours)
        phase = self.phase(state, now)

        if phase == Phase.OVERDUE:
            logger.warning(
                f"Comfort run at {state.next_scheduled_comfort_utc:%Y-%m-%d %H:00} "
                f"was never confirmed, running now"
            )
            return replace(state, next_scheduled_comfort_utc=current), ReconcileAction.run_now(current)

        if phase == Phase.PENDING and deadline is not None and state.next_scheduled_comfort_utc > deadline:
            logger.warning(
                f"Pending comfort run {state.next_scheduled_comfort_utc:%Y-%m-%d %H:00} is past "
                f"the gap deadline {deadline:%Y-%m-%d %H:00}, clearing"
            )
            state = replace(state, next_scheduled_comfort_utc=None)
            phase = Phase.IDLE

        if phase == Phase.IDLE:
            return self._schedule_first(state, decision, current)

        return self._reoptimize_pending(state, decision, current, deadline)

    def confirm_execution(self, state: FlexibleScheduleState, now: datetime) -> FlexibleScheduleState:
        """Record a Comfort run the device gateway accepted."""
        return replace(state, last_comfort_run_utc=now, next_scheduled_comfort_utc=None)

    def _schedule_first(
        self,
        state: FlexibleScheduleState,
        decision: ScheduleDecision,
        current: datetime,
    ) -> tuple[FlexibleScheduleState, ReconcileAction]:
        last_run_hour = floor_hour(state.last_comfort_run_utc) if state.last_comfort_run_utc else None
        candidates = [
            slot for slot in decision.slots
            if slot.is_comfort
            and slot.start >= current
            and (last_run_hour is None or slot.start > last_run_hour)
        ]
        if not candidates:
            logger.info(f"No upcoming comfort hour in decision for {decision.zone}")
            return state, ReconcileAction.none()

        chosen = candidates[0].start
        updated = replace(state, next_scheduled_comfort_utc=chosen)
        if chosen == current:
            return updated, ReconcileAction.run_now(chosen)
        return updated, ReconcileAction.schedule_run(chosen)

    def _reoptimize_pending(
        self,
        state: FlexibleScheduleState,
        decision: ScheduleDecision,
        current: datetime,
        deadline: Optional[datetime],
    ) -> tuple[FlexibleScheduleState, ReconcileAction]:
        scheduled = floor_hour(state.next_scheduled_comfort_utc)
        scheduled_slot = decision.slot_at(scheduled)

        new_hour = None
        if scheduled_slot is None:
            logger.debug(f"Pending hour {scheduled:%Y-%m-%d %H:00} outside the decision horizon, keeping it")
        elif scheduled_slot.is_comfort:
            cheaper = self._best_alternative(
                decision, current, deadline, scheduled,
                lambda slot: slot.price < scheduled_slot.price,
            )
            if cheaper is not None:
                new_hour = cheaper.start
        else:
            alternative = self._best_alternative(
                decision, current, deadline, scheduled,
                lambda slot: slot.price <= scheduled_slot.price,
            )
            if alternative is not None:
                new_hour = alternative.start
            else:
                logger.info(
                    f"Pending hour {scheduled:%Y-%m-%d %H:00} flipped to turn_off but no "
                    f"alternative before the deadline, keeping it"
                )

        if new_hour is not None:
            updated = replace(state, next_scheduled_comfort_utc=new_hour)
            if new_hour == current:
                return updated, ReconcileAction.run_now(new_hour)
            return updated, ReconcileAction.reschedule_run(scheduled, new_hour)

        if scheduled == current:
            return state, ReconcileAction.run_now(scheduled)
        return state, ReconcileAction.none()

    def _best_alternative(
        self,
        decision: ScheduleDecision,
        current: datetime,
        deadline: Optional[datetime],
        scheduled: datetime,
        price_ok,
    ) -> Optional[HourSlot]:
        """Cheapest Comfort hour that is not in the past and not past the deadline."""
        candidates = [
            slot for slot in decision.slots
            if slot.is_comfort
            and slot.start != scheduled
            and slot.start >= current
            and (deadline is None or slot.start <= deadline)
            and price_ok(slot)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda slot: (slot.price, slot.start))
