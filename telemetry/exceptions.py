"""Tracking pipeline exceptions."""


class TrackingError(Exception):
    """Base class for pipeline errors."""


class SourceFetchError(TrackingError):
    """A provider request failed (transport, timeout or HTTP status)."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class PayloadError(TrackingError):
    """A provider payload could not be interpreted."""


class SubscriptionError(TrackingError):
    """A subscribe/unsubscribe request was malformed."""
