import typing

import pydantic_settings


class GeoTelemetryConfig(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(env_prefix="GEOTELEMETRY_")

    # --- Binary container limits ---

    # Nesting guard for GPMF KLV containers (DEVC > STRM > ... ).
    MAX_KLV_DEPTH: int = 8

    # --- Time base ---
    # Units: milliseconds

    # Payload window assumed for bare GPMF dumps without an MP4 track clock.
    DEFAULT_PAYLOAD_DURATION_MS: float = 1000.0

    # --- GPS quality ---

    # Minimum GPSF fix (0 = no lock, 2 = 2D, 3 = 3D) a stream needs to be used.
    MIN_GPS_FIX: int = 0

    # Maximum GPSP dilution of precision (GPSP / 100) a stream may report; None
    # keeps every stream. Values under 5.0 are a good fix.
    MAX_GPS_PRECISION: float | None = None

    # --- Track files ---

    # "absent" keeps missing <ele> as None, "zero" substitutes 0.0 m.
    TRACK_MISSING_ELEVATION: typing.Literal["absent", "zero"] = "absent"

    # --- Kinematics ---
    # Units: Meters

    EARTH_RADIUS_M: float = 6_371_000.0


config = GeoTelemetryConfig()
