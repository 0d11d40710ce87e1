"""Exception hierarchy for latmon."""

from __future__ import annotations


class LatmonError(Exception):
    """Base class for all latmon errors."""


class TransportError(LatmonError):
    """Dial, handshake, read or write failure on the network path."""

    # body bytes decoded before the failure, when raised mid-read
    partial: bytes = b""


class ProtocolError(LatmonError):
    """The peer sent bytes that are not valid HTTP/1.1 framing."""

    partial: bytes = b""


class UnexpectedEOFError(ProtocolError):
    """The stream ended in the middle of a status line, header block or chunk."""


class PersistenceError(LatmonError):
    """Writing a batch artifact (CSV or chart) failed."""


class TargetUnreachableError(LatmonError):
    """A target failed more consecutive pings than the configured limit."""

    def __init__(self, target: str, failures: int, last_error: BaseException | None = None) -> None:
        self.target = target
        self.failures = failures
        self.last_error = last_error
        super().__init__(f"{target}: {failures} consecutive failures; last error: {last_error}")


class PingCancelled(LatmonError):
    """Raised inside a ping attempt once its pinger has been asked to stop."""
