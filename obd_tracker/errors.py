"""Error taxonomy for the telemetry engine.

None of these escape ``TelemetryEngine``'s public methods; the engine
turns them into connection-state changes, presenter updates and log
entries.
"""

from __future__ import annotations

from typing import Any


class TrackerError(Exception):
    """Base class for all engine errors."""


class TransportError(TrackerError):
    """Connect, handshake, discovery or write failure on a transport."""


class ProtocolError(TrackerError):
    """Malformed or unparseable adapter response for one parameter."""


class AdapterNotResponding(TrackerError):
    """The adapter failed the post-initialization connectivity probe."""


class UploadError(TrackerError):
    """A single upload attempt failed to connect or send."""


class PartialDataError(TrackerError):
    """A collection cycle produced no successfully decoded parameter."""

    def __init__(self, message: str, sample: Any = None) -> None:
        super().__init__(message)
        self.sample = sample
