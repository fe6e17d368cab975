"""Error taxonomy for the automation engine."""

from __future__ import annotations


class ChargePilotError(Exception):
    """Base class for all Charge Pilot errors."""


class DataUnavailable(ChargePilotError):
    """A data source could not be fetched and no usable cached value exists."""

    def __init__(self, source: str, reason: str = "") -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}" if reason else f"{source} unavailable")


class FetchTimeout(DataUnavailable):
    """A single fetch exceeded its timeout."""


class DeviceWriteFailed(ChargePilotError):
    """The device API rejected or failed a scheduler write."""


class VerificationFailed(ChargePilotError):
    """A write was acknowledged but the read-back did not match the intended state."""


class CycleTimeout(ChargePilotError):
    """An automation cycle exceeded its wall-clock budget."""


class RuleValidationError(ChargePilotError):
    """A user-authored rule document failed validation."""
