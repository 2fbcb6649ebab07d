# tripfence/Core/exceptions.py
"""
Error taxonomy for the derivation engine.

None of these are user-facing. The pipeline catches them at stage
boundaries and turns them into operator logs.
"""


class TripfenceError(Exception):
    """Base class for engine errors."""


class PositionValidationError(TripfenceError):
    """Malformed or implausible position report. Dropped, never retried."""

    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"{device_id}: {reason}")


class StateConflict(TripfenceError):
    """Concurrent mutation detected on a device's geofence status row."""

    def __init__(self, device_id: str, expected_version: int):
        self.device_id = device_id
        self.expected_version = expected_version
        super().__init__(
            f"Geofence status for {device_id} changed under us "
            f"(expected version {expected_version})"
        )


class ZoneLookupFailure(TripfenceError):
    """Zone reference data missing or corrupt. Matching fails open."""

    def __init__(self, message: str, zone_id: str = None):
        self.zone_id = zone_id
        super().__init__(message)


class EventSinkFailure(TripfenceError):
    """Downstream publish failed. The detection itself stays committed."""
