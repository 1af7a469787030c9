"""Derive missing speeds from consecutive positions.

Each sample's speed depends only on its immediate predecessor, so a long
sequence can be processed in chunks as long as every chunk after the first is
seeded with the last sample of the chunk before it (``previous``).
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from geotelemetry.config import config
from geotelemetry.telemetry_data import NormalizedSample

logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6


def haversine_m(
    lat1: npt.ArrayLike,
    lon1: npt.ArrayLike,
    lat2: npt.ArrayLike,
    lon2: npt.ArrayLike,
    radius_m: float | None = None,
) -> np.ndarray:
    """Vectorized Haversine distance calculation in meters."""
    R = config.EARTH_RADIUS_M if radius_m is None else radius_m
    lat1, lon1 = np.asarray(lat1, dtype=np.float64), np.asarray(lon1, dtype=np.float64)
    lat2, lon2 = np.asarray(lat2, dtype=np.float64), np.asarray(lon2, dtype=np.float64)
    phi1, phi2 = np.radians(lat1), np.radians(lat2)
    dphi = np.radians(lat2 - lat1)
    dlambda = np.radians(lon2 - lon1)

    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlambda / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return R * c


def backfill_speed(
    samples: list[NormalizedSample], *, previous: NormalizedSample | None = None
) -> list[NormalizedSample]:
    """Fill ``speed_kmh`` in place where it is missing; returns *samples*.

    *samples* must already be sorted by ``time_ms``. A non-positive or unknown
    time step leaves the speed absent. The first sample keeps an absent speed
    unless *previous* supplies its predecessor.
    """
    if not samples:
        return samples

    chain = ([previous] if previous is not None else []) + samples
    lat = np.array([s.lat for s in chain], dtype=np.float64)
    lon = np.array([s.lon for s in chain], dtype=np.float64)
    t_ms = np.array(
        [s.time_ms if s.time_ms is not None else np.nan for s in chain],
        dtype=np.float64,
    )

    dist_m = haversine_m(lat[:-1], lon[:-1], lat[1:], lon[1:])
    dt_s = np.diff(t_ms) / 1000.0
    valid = np.isfinite(dt_s) & (dt_s > 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        speed_kmh = np.where(valid, dist_m / dt_s * MS_TO_KMH, np.nan)

    filled = 0
    # speed_kmh[k] belongs to chain[k + 1]
    for sample, speed, ok in zip(chain[1:], speed_kmh, valid):
        if sample.speed_kmh is None and ok:
            sample.speed_kmh = float(speed)
            filled += 1

    if filled:
        logger.debug("Backfilled speed for %d of %d samples", filled, len(samples))
    return samples
