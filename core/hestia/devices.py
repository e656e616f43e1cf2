"""
Device gateway collaborators: applying heater states and refreshing tokens.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol

from .exceptions import DeviceApplyError
from .models import State, floor_hour, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_ID = "water_heater.dhw"
DEFAULT_MODES = {
    State.COMFORT: "performance",
    State.TURN_OFF: "off",
}


class ScheduleApplier(Protocol):
    def apply(self, user_id: str, hour: datetime, state: State) -> None:
        """Push the state for ``hour`` to the user's device.

        Raises DeviceUnavailableError, DeviceAuthError or DeviceApplyError.
        """
        ...


class TokenRefresher(Protocol):
    def refresh(self, user_id: str) -> bool: ...


class HomeAssistantScheduleApplier:
    """Sets the operation mode of a Home Assistant water_heater entity."""

    def __init__(
        self,
        ha_client,
        entities: Optional[dict[str, str]] = None,
        default_entity: str = DEFAULT_ENTITY_ID,
        modes: Optional[dict] = None,
        clock=utcnow,
    ):
        """Initialize applier.

        Args:
            ha_client: Home Assistant API client
            entities: Water heater entity per user id
            default_entity: Entity for users without a mapping
            modes: Operation mode per state ("comfort"/"turn_off" keys)
            clock: Returns the current aware time
        """
        self.ha_client = ha_client
        self.entities = dict(entities or {})
        self.default_entity = default_entity
        self.modes = dict(DEFAULT_MODES)
        for key, mode in (modes or {}).items():
            self.modes[State(key)] = mode
        self.clock = clock

    def entity_for(self, user_id: str) -> str:
        return self.entities.get(user_id, self.default_entity)

    def apply(self, user_id: str, hour: datetime, state: State) -> None:
        # The gateway only understands "now"
        if floor_hour(hour) > floor_hour(self.clock()):
            raise DeviceApplyError(f"Refusing to apply {state.value} for future hour {hour.isoformat()}")

        entity_id = self.entity_for(user_id)
        mode = self.modes[State(state)]
        self.ha_client.call_service(
            "water_heater",
            "set_operation_mode",
            {"entity_id": entity_id, "operation_mode": mode},
        )
        logger.info(f"Set {entity_id} to {mode} for user={user_id} ({state.value})")


class LongLivedTokenRefresher:
    """Home Assistant long-lived tokens cannot be refreshed.

    A rejected token needs a new one from the user, so this only logs.
    """

    def refresh(self, user_id: str) -> bool:
        logger.debug(f"Token for user={user_id} is long-lived, nothing to refresh")
        return False
