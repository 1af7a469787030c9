"""Map decoded stream records and track points onto :class:`NormalizedSample`.

Both entry points are pure: the same input always yields the same output, and
the output is stably sorted by ``time_ms`` with absent times sorting as 0.
Samples without a usable latitude and longitude are dropped, never filled in.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from geotelemetry.config import config
from geotelemetry.processing.stream_profiles import (
    ALTITUDE_TO_M,
    DEFAULT_PROFILES,
    SPEED_TO_KMH,
    ProfileRegistry,
    StreamFamilyProfile,
)
from geotelemetry.telemetry_data import (
    NormalizedSample,
    RawSample,
    StreamRecord,
    TrackPoint,
)

logger = logging.getLogger(__name__)

_GPS_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)


def _slot(values: Sequence[float], idx: int | None) -> float | None:
    if idx is None or idx >= len(values):
        return None
    value = values[idx]
    if not math.isfinite(value):
        return None
    return float(value)


def _valid_position(lat: float | None, lon: float | None) -> bool:
    return (
        lat is not None
        and lon is not None
        and -90.0 <= lat <= 90.0
        and -180.0 <= lon <= 180.0
    )


def _gps_time(values: Sequence[float], profile: StreamFamilyProfile) -> str | None:
    days = _slot(values, profile.gps_days_slot)
    seconds = _slot(values, profile.gps_seconds_slot)
    if days is None or seconds is None or days <= 0:
        return None
    return (_GPS_EPOCH + timedelta(days=days, seconds=seconds)).isoformat()


def _unit_at(units: Sequence[str], idx: int | None) -> str | None:
    if idx is None or idx >= len(units):
        return None
    return units[idx].strip()


def _profile_for_units(
    profile: StreamFamilyProfile, units: Sequence[str]
) -> StreamFamilyProfile:
    """Let the units a stream declares (SIUN/UNIT) override *profile*'s.

    Only units the conversion tables know are taken; anything else leaves the
    profile's declaration in force.
    """
    update = {}
    alt_unit = _unit_at(units, profile.alt_slot)
    if alt_unit in ALTITUDE_TO_M and alt_unit != profile.altitude_unit:
        update["altitude_unit"] = alt_unit
    speed_unit = _unit_at(units, profile.speed_slot)
    if speed_unit in SPEED_TO_KMH and speed_unit != profile.speed_unit:
        update["speed_unit"] = speed_unit
    if not update:
        return profile
    logger.debug("%s stream declares units %s", profile.family, update)
    return profile.model_copy(update=update)


def _sort_by_time(samples: list[NormalizedSample]) -> list[NormalizedSample]:
    # sorted() is stable: equal timestamps keep their source order
    return sorted(samples, key=lambda s: s.time_ms if s.time_ms is not None else 0)


def normalize_raw_sample(
    raw: RawSample, profile: StreamFamilyProfile
) -> NormalizedSample | None:
    """Apply *profile*'s slot table to one raw sample, or ``None`` if it has no position."""
    lat = _slot(raw.values, profile.lat_slot)
    lon = _slot(raw.values, profile.lon_slot)
    if not _valid_position(lat, lon):
        return None

    alt = _slot(raw.values, profile.alt_slot)
    speed = _slot(raw.values, profile.speed_slot)
    time_ms = (
        int(round(raw.relative_time_ms)) if raw.relative_time_ms is not None else None
    )

    return NormalizedSample(
        lat=lat,
        lon=lon,
        alt=alt * profile.altitude_factor if alt is not None else None,
        speed_kmh=speed * profile.speed_factor if speed is not None else None,
        time_ms=time_ms,
        iso_time=_gps_time(raw.values, profile) or raw.absolute_time,
    )


def normalize_stream_records(
    records: Iterable[StreamRecord],
    *,
    profiles: Sequence[StreamFamilyProfile] | None = None,
    min_gps_fix: int | None = None,
    max_gps_precision: float | None = None,
) -> list[NormalizedSample]:
    """Normalize every position-fix stream in *records*.

    Streams are selected by name against *profiles*; all matching streams are
    merged before the stable sort by ``time_ms``. A stream whose GPS fix is
    below *min_gps_fix*, or whose dilution of precision exceeds
    *max_gps_precision*, is left out. Units a stream declares itself take
    precedence over the profile's.
    """
    registry = ProfileRegistry(DEFAULT_PROFILES if profiles is None else profiles)
    if min_gps_fix is None:
        min_gps_fix = config.MIN_GPS_FIX
    if max_gps_precision is None:
        max_gps_precision = config.MAX_GPS_PRECISION

    samples: list[NormalizedSample] = []
    dropped = 0
    low_fix = 0
    for record in records:
        profile = registry.resolve(record.stream_name)
        if profile is None:
            continue
        if record.gps_fix is not None and record.gps_fix < min_gps_fix:
            low_fix += len(record.samples)
            continue
        if (
            max_gps_precision is not None
            and record.gps_precision is not None
            and record.gps_precision > max_gps_precision
        ):
            low_fix += len(record.samples)
            continue
        profile = _profile_for_units(profile, record.units)
        for raw in record.samples:
            sample = normalize_raw_sample(raw, profile)
            if sample is None:
                dropped += 1
                continue
            samples.append(sample)

    if dropped:
        logger.debug("Dropped %d samples without a valid lat/lon", dropped)
    if low_fix:
        logger.info(
            "Dropped %d samples from streams below the GPS quality gate (fix >= %d, precision <= %s)",
            low_fix,
            min_gps_fix,
            max_gps_precision,
        )
    return _sort_by_time(samples)


def _parse_time(iso_time: str | None) -> datetime | None:
    if iso_time is None:
        return None
    try:
        ts = datetime.fromisoformat(iso_time)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def normalize_track_points(points: Sequence[TrackPoint]) -> list[NormalizedSample]:
    """Normalize track-file points.

    ``time_ms`` counts from the earliest timed point. Track files carry no
    speed, so ``speed_kmh`` is left for the backfill step.
    """
    times = [_parse_time(p.iso_time) for p in points]
    timed = [t for t in times if t is not None]
    origin = min(timed) if timed else None

    samples: list[NormalizedSample] = []
    for point, ts in zip(points, times):
        if not _valid_position(point.lat, point.lon):
            continue
        time_ms = None
        if ts is not None and origin is not None:
            time_ms = int(round((ts - origin).total_seconds() * 1000.0))
        samples.append(
            NormalizedSample(
                lat=point.lat,
                lon=point.lon,
                alt=point.elevation,
                time_ms=time_ms,
                iso_time=ts.isoformat() if ts is not None else None,
            )
        )
    return _sort_by_time(samples)
