"""Error taxonomy surfaced by the telemetry pipeline.

Every error carries the ``source`` it was raised for (``"video"`` or
``"track-file"``) so the caller can tell the user which input was at fault.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from geotelemetry.telemetry_data import StreamRecord


class TelemetryError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        message = super().__str__()
        if self.source:
            return f"{self.source}: {message}"
        return message


class InputMissingError(TelemetryError):
    """Neither a video nor a track-file source was supplied."""


class FormatError(TelemetryError):
    """The outer container or track-file root structure is unrecognizable."""


class DecodeError(TelemetryError):
    """Structural corruption found while walking binary GPMF records.

    ``partial`` holds the stream records decoded before the corruption point.
    """

    def __init__(
        self,
        message: str,
        source: str | None = "video",
        partial: list[StreamRecord] | None = None,
    ) -> None:
        super().__init__(message, source)
        self.partial: list[StreamRecord] = partial or []


class NoTelemetryFoundError(TelemetryError):
    """All sources were read cleanly but none contained position data."""
