"""
Tests for speed backfill from consecutive positions.
"""

import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from geotelemetry.processing.backfill_kinematics import backfill_speed, haversine_m
from geotelemetry.telemetry_data import NormalizedSample
from gpmf_builders import offset_north


def _samples(lats, times, speeds=None):
    speeds = speeds if speeds is not None else [None] * len(lats)
    return [
        NormalizedSample(lat=lat, lon=-3.0, time_ms=t, speed_kmh=v)
        for lat, t, v in zip(lats, times, speeds)
    ]


class TestHaversine:
    def test_one_degree_of_latitude(self):
        expected = 6_371_000.0 * math.pi / 180.0
        assert_allclose(haversine_m(0.0, 0.0, 1.0, 0.0), expected, rtol=1e-12)

    def test_vectorized(self):
        d = haversine_m(np.zeros(3), np.zeros(3), np.array([0.0, 1.0, 0.0]), np.array([0.0, 0.0, 1.0]))
        assert d.shape == (3,)
        assert d[0] == 0.0
        assert_allclose(d[1], d[2])

    def test_custom_radius(self):
        assert_allclose(haversine_m(0.0, 0.0, 1.0, 0.0, radius_m=1.0), math.pi / 180.0)


class TestBackfillSpeed:
    """Tests for filling absent speeds."""

    def test_ten_meters_per_second(self):
        """10 m north per second is 36 km/h; the first sample has no predecessor."""
        lat0 = 51.0
        lats = [lat0, offset_north(lat0, 10.0), offset_north(lat0, 20.0)]
        samples = backfill_speed(_samples(lats, [0, 1000, 2000]))

        assert samples[0].speed_kmh is None
        assert samples[1].speed_kmh == pytest.approx(36.0, abs=1e-3)
        assert samples[2].speed_kmh == pytest.approx(36.0, abs=1e-3)

    def test_existing_speed_kept(self):
        lats = [51.0, offset_north(51.0, 10.0)]
        samples = backfill_speed(_samples(lats, [0, 1000], speeds=[None, 5.0]))
        assert samples[1].speed_kmh == 5.0

    def test_zero_time_step_leaves_speed_absent(self):
        lats = [51.0, offset_north(51.0, 10.0)]
        samples = backfill_speed(_samples(lats, [1000, 1000]))
        assert samples[1].speed_kmh is None

    def test_unknown_time_leaves_speed_absent(self):
        lats = [51.0, offset_north(51.0, 10.0), offset_north(51.0, 20.0)]
        samples = backfill_speed(_samples(lats, [0, None, 2000]))
        assert samples[1].speed_kmh is None
        assert samples[2].speed_kmh is None

    def test_no_nan_or_inf(self):
        lats = [51.0, 51.0, offset_north(51.0, 5.0), offset_north(51.0, 5.0)]
        samples = backfill_speed(_samples(lats, [0, 0, 500, 1500]))
        for s in samples:
            assert s.speed_kmh is None or math.isfinite(s.speed_kmh)
        assert samples[3].speed_kmh == pytest.approx(0.0)

    def test_chunked_matches_whole_run(self):
        """Seeding each chunk with its predecessor gives the whole-run result."""
        lats = [offset_north(51.0, 7.0 * i) for i in range(6)]
        times = [0, 1000, 2000, 3000, 4000, 5000]
        whole = backfill_speed(_samples(lats, times))

        chunk_a = backfill_speed(_samples(lats[:3], times[:3]))
        chunk_b = backfill_speed(_samples(lats[3:], times[3:]), previous=chunk_a[-1])

        chunked = chunk_a + chunk_b
        assert chunked[0].speed_kmh is None and whole[0].speed_kmh is None
        assert_allclose(
            [s.speed_kmh for s in chunked[1:]], [s.speed_kmh for s in whole[1:]], rtol=1e-12
        )

    def test_empty(self):
        assert backfill_speed([]) == []
