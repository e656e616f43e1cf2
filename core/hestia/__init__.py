"""Hestia DHW spot-price scheduling package."""

# Define public API
__all__ = [
    "UserScheduleSettings",
    "PricePoint",
    "PriceSeries",
    "ScheduleDecision",
    "FlexibleScheduleState",
    "State",
    "classify",
    "ReoptimizationEngine",
    "JobCoordinator",
    "JobKind",
    "ScheduleService",
    "HAClient",
]

# Import settings
from .settings import UserScheduleSettings

# Import models
from .models import FlexibleScheduleState, PricePoint, PriceSeries, ScheduleDecision, State

# Import engine
from .classifier import classify
from .coordinator import JobCoordinator, JobKind
from .reoptimizer import ReoptimizationEngine
from .service import ScheduleService

# Import HA client
from .ha_client import HAClient
