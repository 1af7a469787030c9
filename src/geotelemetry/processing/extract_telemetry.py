"""
Telemetry pipeline — video and/or track file → :class:`NormalizedResult`.

1. Embedded attempt (when a video is given): locate GPMF payloads, decode
   them, normalize the position-fix streams.
2. Track-file attempt, only when the embedded attempt produced no samples.
3. Backfill missing speeds on whichever sample set was chosen.

The provenance tag records which attempt produced the samples:
``embedded-with-time`` when embedded samples carry absolute time,
``embedded`` when they do not, ``track-file`` otherwise.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

from geotelemetry.errors import (
    DecodeError,
    FormatError,
    InputMissingError,
    NoTelemetryFoundError,
)
from geotelemetry.processing.backfill_kinematics import backfill_speed
from geotelemetry.processing.decode_gpmf import decode_gpmf_payloads
from geotelemetry.processing.decode_track_file import decode_track_file
from geotelemetry.processing.extract_mp4_container import (
    BufferLike,
    extract_metadata_payloads,
)
from geotelemetry.processing.normalize_samples import (
    normalize_stream_records,
    normalize_track_points,
)
from geotelemetry.processing.stream_profiles import StreamFamilyProfile
from geotelemetry.telemetry_data import (
    NormalizedResult,
    NormalizedSample,
    TelemetrySource,
)

logger = logging.getLogger(__name__)


def _extract_embedded(
    video: BufferLike, profiles: Sequence[StreamFamilyProfile] | None
) -> tuple[list[NormalizedSample], str | None, DecodeError | None]:
    """Return ``(samples, device_name, decode_error)`` for the embedded attempt."""
    containers = extract_metadata_payloads(video)
    if not containers:
        logger.info("Video carries no GPMF telemetry track")
        return [], None, None

    decode_error: DecodeError | None = None
    try:
        records = decode_gpmf_payloads(containers)
    except DecodeError as exc:
        records = exc.partial
        decode_error = exc

    samples = normalize_stream_records(records, profiles=profiles)
    device_name = next((r.device_name for r in records if r.device_name), None)
    logger.info(
        "Embedded telemetry: %d position samples from %d payloads (device: %s)",
        len(samples),
        len(containers),
        device_name or "?",
    )
    return samples, device_name, decode_error


def extract_telemetry(
    video: BufferLike | None = None,
    track_text: str | None = None,
    *,
    profiles: Sequence[StreamFamilyProfile] | None = None,
) -> NormalizedResult:
    """Run the full pipeline over a video buffer and/or track-file text.

    Raises
    ------
    InputMissingError
        Neither *video* nor *track_text* was given.
    FormatError
        The track file (or, without a track file to fall back to, the video
        container) is unrecognizable. Also raised for an unreadable video when
        the track file holds no points.
    DecodeError
        The GPMF data is corrupt and no sample survived from any source.
    NoTelemetryFoundError
        Every source was read cleanly but none held position data.
    """
    if video is None and track_text is None:
        raise InputMissingError("neither a video nor a track file was supplied")

    t0 = time.monotonic()
    warnings: list[str] = []
    samples: list[NormalizedSample] = []
    device_name: str | None = None
    decode_error: DecodeError | None = None
    format_error: FormatError | None = None
    source = TelemetrySource.TRACK_FILE

    if video is not None:
        try:
            samples, device_name, decode_error = _extract_embedded(video, profiles)
        except FormatError as exc:
            if track_text is None:
                raise
            logger.warning("Unreadable video container, falling back to track file: %s", exc)
            warnings.append(str(exc))
            format_error = exc

        if decode_error is not None:
            logger.warning("Corrupt GPMF data: %s", decode_error)
            warnings.append(f"partial embedded telemetry: {decode_error}")

        if samples:
            has_time = any(s.iso_time is not None for s in samples)
            source = (
                TelemetrySource.EMBEDDED_WITH_TIME if has_time else TelemetrySource.EMBEDDED
            )

    if not samples and track_text is not None:
        points = decode_track_file(track_text)
        samples = normalize_track_points(points)
        source = TelemetrySource.TRACK_FILE
        logger.info("Track file: %d position samples", len(samples))

    if not samples:
        if decode_error is not None:
            raise decode_error
        if format_error is not None:
            raise format_error
        attempted = [
            name
            for name, given in (("video", video is not None), ("track-file", track_text is not None))
            if given
        ]
        raise NoTelemetryFoundError(
            "no position samples found", source=", ".join(attempted)
        )

    backfill_speed(samples)

    result = NormalizedResult(
        samples=samples,
        source=source,
        device_name=device_name,
        warnings=warnings,
    )
    logger.info(
        "Extraction complete — %d samples (%s) in %.2f s",
        result.total_samples,
        result.source,
        time.monotonic() - t0,
    )
    return result
