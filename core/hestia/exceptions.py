"""
Hestia Custom Exceptions

Simple exception hierarchy for error handling.
"""


class HestiaError(Exception):
    """Base exception for Hestia."""

    pass


class ConfigurationError(HestiaError):
    """Configuration is invalid."""

    pass


class DataUnavailableError(HestiaError):
    """No usable price data for the requested horizon."""

    pass


class InsufficientPriceDataError(DataUnavailableError):
    """The price series has no hours left to classify."""

    pass


class PriceSourceError(HestiaError):
    """Price source could not be reached or returned garbage."""

    pass


class DeviceApplyError(HestiaError):
    """Applying a state to the device gateway failed."""

    pass


class DeviceUnavailableError(DeviceApplyError):
    """Transient network or server failure talking to the device gateway."""

    pass


class DeviceAuthError(DeviceApplyError):
    """Device gateway rejected our credentials (expired or revoked token)."""

    pass


class EntityNotFoundError(DeviceApplyError, ValueError):
    """Home Assistant has no entity with the requested id."""

    pass
