from __future__ import annotations


class BridgeError(Exception):
    """Base class for failures surfaced by the bridge."""


class NotConnected(BridgeError):
    """Operation attempted while the session is not authenticated."""

    def __init__(self, message: str = "session not connected") -> None:
        super().__init__(message)


class ConnectionRejected(BridgeError):
    pass


class SessionTerminated(BridgeError):
    pass


class TransientDisconnect(BridgeError):
    """Raised by adapters from ``open()`` for a retryable network failure.

    Any other unexpected exception from ``open()`` is treated the same way.
    """


class UpstreamOperationFailed(BridgeError):
    """A send or profile lookup failed inside the session client."""
