"""Error taxonomy for traffic aggregation and the status fallback chain.

None of these ever reach an HTTP caller as a failed response: each one is
caught at the layer that knows how to degrade for it.
"""

from typing import Optional


class BridgeWatchError(Exception):
    """Base class for all bridgewatch errors."""


class CoordinateValidationError(BridgeWatchError):
    """Raised when a monitoring point is not a valid ``lat,lon`` pair."""

    def __init__(self, direction: str, point: str) -> None:
        self.direction = direction
        self.point = point
        super().__init__(f"Invalid coordinates for {direction}: {point!r}")


class ExternalSourceError(BridgeWatchError):
    """Raised when the traffic source times out, fails, or returns an unusable body."""

    def __init__(self, direction: str, reason: str) -> None:
        self.direction = direction
        self.reason = reason
        super().__init__(f"Traffic source error for {direction}: {reason}")


class MissingCredentialError(ExternalSourceError):
    """Raised when the traffic source credential is not configured."""

    def __init__(self, direction: str, env_name: str) -> None:
        self.env_name = env_name
        super().__init__(direction, f"environment variable {env_name!r} is not set")


class PersistenceError(BridgeWatchError):
    """Raised when the historical-record store cannot be read or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(message)


class TotalUnavailabilityError(BridgeWatchError):
    """Raised when live data failed and no cached snapshot exists."""
