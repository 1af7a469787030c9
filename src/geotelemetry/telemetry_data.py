"""Telemetry data models shared by the decoders, the normalizer and the pipeline.

Raw models (:class:`RawContainer`, :class:`StreamRecord`, :class:`RawSample`,
:class:`TrackPoint`) describe what the decoders found. :class:`NormalizedSample`
and :class:`NormalizedResult` are the canonical output and serialize with the
camel-case keys the HTTP layer returns (``speedKmh``, ``timeMs``, ...).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import pandas as pd
import pandera.pandas as pa
import pydantic

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TelemetrySource(StrEnum):
    EMBEDDED = "embedded"
    EMBEDDED_WITH_TIME = "embedded-with-time"
    TRACK_FILE = "track-file"


class StreamCategory(StrEnum):
    POSITION_FIX = "position-fix"
    INERTIAL = "inertial"
    ORIENTATION = "orientation"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Raw decoder output
# ---------------------------------------------------------------------------


class RawContainer(pydantic.BaseModel):
    """One opaque metadata payload located inside a video buffer."""

    model_config = pydantic.ConfigDict(frozen=True)

    format_tag: str
    payload: bytes
    start_ms: float | None = None
    """Track-clock start of the payload window, when the container has one."""

    duration_ms: float | None = None


class RawSample(pydantic.BaseModel):
    values: list[float]
    relative_time_ms: float | None = None
    absolute_time: str | None = None


class StreamRecord(pydantic.BaseModel):
    """One ``STRM`` of one device within one GPMF payload."""

    stream_name: str
    stream_type: StreamCategory = StreamCategory.OTHER
    samples: list[RawSample] = pydantic.Field(default_factory=list)

    device_id: int | None = None
    device_name: str | None = None
    units: list[str] = pydantic.Field(default_factory=list)

    gps_fix: int | None = None
    """GPSF: 0 = no lock, 2 = 2D, 3 = 3D."""

    gps_precision: float | None = None
    """GPSP / 100 (dilution of precision)."""


class TrackPoint(pydantic.BaseModel):
    """One ``trkpt`` (or IGC B record) in document order."""

    lat: float
    lon: float
    elevation: float | None = None
    iso_time: str | None = None


# ---------------------------------------------------------------------------
# Normalized output
# ---------------------------------------------------------------------------


class NormalizedSample(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    lat: float = pydantic.Field(ge=-90.0, le=90.0)
    lon: float = pydantic.Field(ge=-180.0, le=180.0)
    alt: float | None = None
    speed_kmh: float | None = pydantic.Field(default=None, alias="speedKmh")
    time_ms: int | None = pydantic.Field(default=None, alias="timeMs")
    iso_time: str | None = pydantic.Field(default=None, alias="isoTime")


normalized_samples_schema = pa.DataFrameSchema(
    columns={
        "lat": pa.Column(float, checks=pa.Check.in_range(-90.0, 90.0)),
        "lon": pa.Column(float, checks=pa.Check.in_range(-180.0, 180.0)),
        "alt": pa.Column(float, nullable=True),
        "speed_kmh": pa.Column(float, nullable=True),
        "time_ms": pa.Column(
            float,
            checks=pa.Check(
                lambda s: s.fillna(0).is_monotonic_increasing,
                name="is_monotonic",
                error="time_ms must be non-decreasing. Did the normalizer sort?",
            ),
            nullable=True,
        ),
    },
    # iso_time is carried along unchecked
    strict=False,
    coerce=True,
)


class NormalizedResult(pydantic.BaseModel):
    samples: list[NormalizedSample] = pydantic.Field(default_factory=list)
    source: TelemetrySource
    device_name: str | None = None
    warnings: list[str] = pydantic.Field(default_factory=list)

    @pydantic.computed_field(alias="totalSamples")  # type: ignore[prop-decorator]
    @property
    def total_samples(self) -> int:
        return len(self.samples)

    def to_payload(self) -> dict[str, Any]:
        """Serialize as ``{samples, totalSamples, source}`` with absent fields omitted."""
        payload = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"device_name", "warnings"},
        )
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload

    def to_dataframe(self) -> pd.DataFrame:
        """Return the samples as a validated DataFrame (one row per sample)."""
        df = pd.DataFrame(
            [s.model_dump() for s in self.samples],
            columns=list(NormalizedSample.model_fields),
        )
        return normalized_samples_schema.validate(df)
