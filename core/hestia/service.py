"""
Schedule Service

The two operations everything else is built on:
- generate_decision: read-only preview for a zone and settings
- run_cycle: compute, record, reconcile and push the due state for one user

Both fall back to the last decision a background cycle computed for the zone
when fresh prices are unavailable.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional

from .classifier import classify
from .coordinator import apply_with_retry
from .exceptions import DataUnavailableError
from .models import (
    ActionKind,
    ApplyResult,
    CycleResult,
    FlexibleScheduleState,
    PriceSeries,
    ReconcileAction,
    ScheduleDecision,
    State,
    floor_hour,
)
from .reoptimizer import ReoptimizationEngine
from .settings import DEFAULT_ZONE, UserScheduleSettings, is_valid_zone, normalize_zone

logger = logging.getLogger(__name__)

DEVICE_STATUS_OK = "ok"
DEVICE_STATUS_AUTH_FAILED = "auth_failed"


class ScheduleService:
    """Computes decisions and drives the per-user apply cycle."""

    def __init__(
        self,
        settings_repository,
        state_repository,
        history_repository,
        price_feed,
        applier=None,
        token_refresher=None,
        engine: Optional[ReoptimizationEngine] = None,
        default_zone: str = DEFAULT_ZONE,
        auth_failure_threshold: int = 2,
    ):
        """Initialize service.

        Args:
            settings_repository: Source of UserScheduleSettings
            state_repository: Storage for FlexibleScheduleState
            history_repository: Append-only decision history
            price_feed: PriceFeed providing the horizon per zone
            applier: ScheduleApplier for the device gateway (None disables apply)
            token_refresher: TokenRefresher called on authorization failures
            engine: ReoptimizationEngine (a fresh one by default)
            default_zone: Zone used for invalid user zones
            auth_failure_threshold: Consecutive auth failures before a user is flagged
        """
        self.settings_repository = settings_repository
        self.state_repository = state_repository
        self.history_repository = history_repository
        self.price_feed = price_feed
        self.applier = applier
        self.token_refresher = token_refresher
        self.engine = engine or ReoptimizationEngine()
        self.default_zone = default_zone
        self.auth_failure_threshold = auth_failure_threshold

        self._last_decisions: dict[str, ScheduleDecision] = {}
        self._auth_failures: dict[str, int] = {}
        self._applied_states: dict[str, State] = {}
        self.lock = threading.Lock()

    def resolve_zone(self, zone: Optional[str]) -> str:
        if is_valid_zone(zone):
            return normalize_zone(zone)
        return self.default_zone

    def generate_decision(
        self,
        zone: Optional[str],
        settings: UserScheduleSettings,
        now: datetime,
        prices: Optional[PriceSeries] = None,
    ) -> ScheduleDecision:
        """Preview a decision without touching any state.

        Raises:
            DataUnavailableError: No prices and no earlier decision to fall back on
        """
        zone = self.resolve_zone(zone)
        settings = replace(settings, zone=zone)
        try:
            series = prices if prices is not None else self.price_feed.horizon(zone, now)
            return classify(series, settings, now, default_zone=self.default_zone)
        except DataUnavailableError as e:
            fallback = self._fallback(zone, now)
            if fallback is None:
                raise
            logger.warning(f"Prices unavailable for {zone} ({e}), using decision from {fallback.generated_at}")
            return replace(
                fallback,
                fallback=True,
                warnings=fallback.warnings + (f"Fresh prices unavailable: {e}",),
            )

    def record_decision(self, zone: str, decision: ScheduleDecision) -> None:
        """Remember a background decision as the fallback for the zone."""
        if decision.fallback:
            return
        with self.lock:
            self._last_decisions[zone] = decision

    def last_decision(self, zone: str) -> Optional[ScheduleDecision]:
        with self.lock:
            return self._last_decisions.get(zone)

    def run_cycle(self, user_id: str, now: datetime, prices: Optional[PriceSeries] = None) -> CycleResult:
        """Compute, record and (for opted-in users) apply the schedule for one user.

        Price and device failures come back in the CycleResult.
        """
        settings = self.settings_repository.get_user_schedule_settings(user_id)
        zone = self.resolve_zone(settings.zone)

        try:
            decision = self.generate_decision(zone, settings, now, prices)
        except DataUnavailableError as e:
            logger.error(f"No schedule for user={user_id}: {e}")
            return CycleResult(user_id=user_id, applied=False, decision=None, message=f"No price data: {e}")

        self.record_decision(zone, decision)
        self.history_repository.append(user_id, decision.to_snapshot(), now)

        if not settings.auto_apply:
            return CycleResult(
                user_id=user_id,
                applied=False,
                decision=decision,
                message="Schedule computed, auto apply disabled",
                warnings=decision.warnings,
            )

        max_gap = settings.validated(max(1, len(decision.slots)), self.default_zone, log=False)[0].max_comfort_gap_hours
        state = self.state_repository.load(user_id)
        state, action = self.engine.reconcile(state, decision, now, max_gap)
        logger.info(f"User {user_id}: {action.describe()}")

        applied = False
        message = action.describe()
        run_due = action.kind == ActionKind.RUN_NOW
        target = self._due_state(user_id, state, action, decision, now)
        if target is not None and self.applier is None:
            if run_due:
                message = "Comfort due but no device gateway configured"
        elif target is not None:
            result = self._push(user_id, action.hour if run_due else floor_hour(now), target)
            if result.success:
                applied = True
                if run_due:
                    state = self.engine.confirm_execution(state, now)
                label = "Comfort" if target == State.COMFORT else "TurnOff"
                message = f"{label} applied ({action.describe()})"
            else:
                message = f"Apply failed, retrying next cycle: {result.reason}"

        self.state_repository.save(user_id, state)
        return CycleResult(
            user_id=user_id,
            applied=applied,
            decision=decision,
            message=message,
            action=action,
            warnings=decision.warnings,
        )

    def device_status(self, user_id: str) -> str:
        with self.lock:
            failures = self._auth_failures.get(user_id, 0)
        return DEVICE_STATUS_AUTH_FAILED if failures >= self.auth_failure_threshold else DEVICE_STATUS_OK

    def applied_state(self, user_id: str) -> Optional[State]:
        """Last state successfully pushed to the user's device, if any."""
        with self.lock:
            return self._applied_states.get(user_id)

    def _due_state(
        self,
        user_id: str,
        state: FlexibleScheduleState,
        action: ReconcileAction,
        decision: ScheduleDecision,
        now: datetime,
    ) -> Optional[State]:
        """State the device should be switched to this cycle, None to leave it alone.

        A due Comfort run always goes out until it is confirmed. Otherwise the
        current hour's state is pushed when it differs from the last push: a
        TurnOff never lands in the hour a run was confirmed, and Comfort is
        only restored on a device we switched off.
        """
        if action.kind == ActionKind.RUN_NOW:
            return State.COMFORT

        current_hour = floor_hour(now)
        decided = decision.state_at(current_hour)
        applied = self.applied_state(user_id)
        if decided is None or decided == applied:
            return None

        if decided == State.TURN_OFF:
            last_run = state.last_comfort_run_utc
            if last_run is not None and floor_hour(last_run) == current_hour:
                return None
            return State.TURN_OFF

        return State.COMFORT if applied == State.TURN_OFF else None

    def _push(self, user_id: str, hour: datetime, target: State) -> ApplyResult:
        """Apply under the retry policy, refreshing the token once on auth failure."""
        result = apply_with_retry(self.applier, user_id, hour, target)
        if result.auth_failure and self._handle_auth_failure(user_id):
            result = apply_with_retry(self.applier, user_id, hour, target)

        if result.success:
            self._reset_auth_failures(user_id)
            with self.lock:
                self._applied_states[user_id] = target
        elif result.auth_failure:
            self._count_auth_failure(user_id)
        return result

    def _fallback(self, zone: str, now: datetime) -> Optional[ScheduleDecision]:
        previous = self.last_decision(zone)
        if previous is None:
            return None
        trimmed = previous.trimmed(now)
        return trimmed if trimmed.slots else None

    def _handle_auth_failure(self, user_id: str) -> bool:
        """Ask the refresher for a new token. True if the apply is worth retrying."""
        if self.token_refresher is None:
            return False
        try:
            return bool(self.token_refresher.refresh(user_id))
        except Exception as e:
            logger.error(f"Token refresh failed for user={user_id}: {e}")
            return False

    def _count_auth_failure(self, user_id: str) -> None:
        with self.lock:
            failures = self._auth_failures.get(user_id, 0) + 1
            self._auth_failures[user_id] = failures
        if failures >= self.auth_failure_threshold:
            logger.error(f"User {user_id} has {failures} consecutive authorization failures, device status auth_failed")

    def _reset_auth_failures(self, user_id: str) -> None:
        with self.lock:
            self._auth_failures.pop(user_id, None)
