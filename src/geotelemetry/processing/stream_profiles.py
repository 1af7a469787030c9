"""Declared slot tables for position-fix stream families.

A profile says which value slot of a decoded stream sample holds latitude,
longitude, altitude and speed, and in which units. Stream records are matched
to a profile by name pattern, never by position or by probing values, so a
container listing its streams in a different order decodes the same way.

Profiles are plain data: pass a different sequence to the normalizer to
support another vendor's layout without touching the decoding code.

| Family | Slots (after SCAL) | Units |
|--------|--------------------|-------|
| GPS5 | lat, lon, alt, speed2d, speed3d | deg, deg, m, m/s, m/s |
| GPS9 | lat, lon, alt, speed2d, speed3d, days, secs, dop, fix | deg, deg, m, m/s, m/s, days since 2000, s, –, – |
"""

from __future__ import annotations

import re
from typing import Sequence

import pydantic

from geotelemetry.telemetry_data import StreamCategory

# Conversion factors into canonical units
SPEED_TO_KMH: dict[str, float] = {
    "m/s": 3.6,
    "km/h": 1.0,
    "knots": 1.852,
    "mph": 1.609344,
}

ALTITUDE_TO_M: dict[str, float] = {
    "m": 1.0,
    "ft": 0.3048,
}


class StreamFamilyProfile(pydantic.BaseModel):
    """Slot layout and units of one position-fix stream family."""

    model_config = pydantic.ConfigDict(frozen=True)

    family: str
    name_pattern: str
    category: StreamCategory = StreamCategory.POSITION_FIX

    lat_slot: int
    lon_slot: int
    alt_slot: int | None = None
    speed_slot: int | None = None

    # Per-sample GPS time (days since 2000-01-01, seconds since midnight)
    gps_days_slot: int | None = None
    gps_seconds_slot: int | None = None

    altitude_unit: str = "m"
    altitude_divisor: float = 1.0
    """Extra divisor for containers that store altitude unscaled."""

    speed_unit: str = "m/s"

    @pydantic.field_validator("altitude_unit")
    @classmethod
    def _known_altitude_unit(cls, v: str) -> str:
        if v not in ALTITUDE_TO_M:
            raise ValueError(f"unknown altitude unit {v!r}")
        return v

    @pydantic.field_validator("speed_unit")
    @classmethod
    def _known_speed_unit(cls, v: str) -> str:
        if v not in SPEED_TO_KMH:
            raise ValueError(f"unknown speed unit {v!r}")
        return v

    @pydantic.field_validator("altitude_divisor")
    @classmethod
    def _nonzero_divisor(cls, v: float) -> float:
        if v == 0:
            raise ValueError("altitude_divisor must be non-zero")
        return v

    def matches(self, stream_name: str) -> bool:
        return re.fullmatch(self.name_pattern, stream_name) is not None

    @property
    def speed_factor(self) -> float:
        return SPEED_TO_KMH[self.speed_unit]

    @property
    def altitude_factor(self) -> float:
        return ALTITUDE_TO_M[self.altitude_unit] / self.altitude_divisor


GPS5_PROFILE = StreamFamilyProfile(
    family="GPS5",
    name_pattern=r"GPS5",
    lat_slot=0,
    lon_slot=1,
    alt_slot=2,
    speed_slot=3,
)

GPS9_PROFILE = StreamFamilyProfile(
    family="GPS9",
    name_pattern=r"GPS9",
    lat_slot=0,
    lon_slot=1,
    alt_slot=2,
    speed_slot=3,
    gps_days_slot=5,
    gps_seconds_slot=6,
)

DEFAULT_PROFILES: tuple[StreamFamilyProfile, ...] = (GPS5_PROFILE, GPS9_PROFILE)


class ProfileRegistry:
    """Resolves stream names to the first matching profile."""

    def __init__(self, profiles: Sequence[StreamFamilyProfile] = DEFAULT_PROFILES):
        self.profiles = tuple(profiles)

    def resolve(self, stream_name: str) -> StreamFamilyProfile | None:
        for profile in self.profiles:
            if profile.matches(stream_name):
                return profile
        return None
