"""
Track-file decoding — GPX (and IGC) text into ordered track points.

GPX: every ``<trk>/<trkseg>/<trkpt>`` in document order; segments are
concatenated, never re-sorted. Namespaces are ignored so GPX 1.0 and 1.1 both
parse.

IGC: ``B`` fix records (validity ``A`` only) dated by the ``HFDTE`` header.

    B record format: BHHMMSSDDMMMMMNSDDDMMMMMEWAPPPPPGGGGG
                      time   lat      lon     v baro gps

Points without a parseable latitude/longitude are skipped. Elevation that is
missing stays ``None`` unless the ``"zero"`` policy is requested, so absent
and sea-level elevation remain distinguishable.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone
from typing import Literal

from geotelemetry.config import config
from geotelemetry.errors import FormatError
from geotelemetry.telemetry_data import TrackPoint

logger = logging.getLogger(__name__)

ElevationPolicy = Literal["absent", "zero"]

_TRACK_SOURCE = "track-file"


def _local_name(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on tags."""
    return tag.rsplit("}", 1)[-1]


def _parse_float(text: str | None) -> float | None:
    if text is None:
        return None
    try:
        return float(text.strip())
    except ValueError:
        return None


def _parse_iso_time(text: str | None) -> str | None:
    """Normalize a GPX ``<time>`` to ISO-8601 UTC, or ``None`` if unparseable."""
    if text is None or not text.strip():
        return None
    try:
        ts = datetime.fromisoformat(text.strip())
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _apply_elevation_policy(
    elevation: float | None, policy: ElevationPolicy
) -> float | None:
    if elevation is None and policy == "zero":
        return 0.0
    return elevation


# ---------------------------------------------------------------------------
# GPX
# ---------------------------------------------------------------------------


def _decode_gpx(text: str, policy: ElevationPolicy) -> list[TrackPoint]:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise FormatError(f"unparsable GPX document: {exc}", source=_TRACK_SOURCE) from exc

    tracks = [el for el in root.iter() if _local_name(el.tag) == "trk"]
    if not tracks:
        raise FormatError("GPX document has no <trk> element", source=_TRACK_SOURCE)

    points: list[TrackPoint] = []
    skipped = 0
    for trk in tracks:
        for seg in trk:
            if _local_name(seg.tag) != "trkseg":
                continue
            for pt in seg:
                if _local_name(pt.tag) != "trkpt":
                    continue
                lat = _parse_float(pt.get("lat"))
                lon = _parse_float(pt.get("lon"))
                if lat is None or lon is None:
                    skipped += 1
                    continue
                elevation = None
                iso_time = None
                for child in pt:
                    name = _local_name(child.tag)
                    if name == "ele":
                        elevation = _parse_float(child.text)
                    elif name == "time":
                        iso_time = _parse_iso_time(child.text)
                points.append(
                    TrackPoint(
                        lat=lat,
                        lon=lon,
                        elevation=_apply_elevation_policy(elevation, policy),
                        iso_time=iso_time,
                    )
                )

    if skipped:
        logger.warning("GPX: skipped %d trkpt elements without lat/lon", skipped)
    logger.debug("GPX: %d track points in %d tracks", len(points), len(tracks))
    return points


# ---------------------------------------------------------------------------
# IGC
# ---------------------------------------------------------------------------

_HFDTE_RE = re.compile(r"^HFDTE(?:DATE:)?(\d{2})(\d{2})(\d{2})")


def parse_igc_coordinate(coord_str: str, is_longitude: bool = False) -> float:
    """Parse IGC coordinate format to decimal degrees.

    Latitude ``5216203N`` is 52°16.203'N; longitude ``02054885E`` is 020°54.885'E.
    """
    if is_longitude:
        # Longitude format: DDDMMMMM[EW]
        degrees = int(coord_str[:3])
        minutes = int(coord_str[3:8]) / 1000.0
        direction = coord_str[8]
    else:
        # Latitude format: DDMMMMM[NS]
        degrees = int(coord_str[:2])
        minutes = int(coord_str[2:7]) / 1000.0
        direction = coord_str[7]

    decimal = degrees + minutes / 60.0
    if direction in ("S", "W"):
        decimal = -decimal
    return decimal


def _parse_igc_altitude(alt_str: str) -> float | None:
    alt_str = alt_str.strip()
    if alt_str.isdigit() or (alt_str[:1] == "-" and alt_str[1:].isdigit()):
        return float(int(alt_str))
    return None


def _decode_igc(text: str, policy: ElevationPolicy) -> list[TrackPoint]:
    flight_date: date | None = None
    previous_seconds: int | None = None
    day_offset = 0
    b_records = 0
    points: list[TrackPoint] = []

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue

        match = _HFDTE_RE.match(line)
        if match:
            dd, mm, yy = (int(g) for g in match.groups())
            try:
                flight_date = date(2000 + yy, mm, dd)
            except ValueError:
                logger.warning("IGC: invalid HFDTE date %r", line)
            continue

        if not line.startswith("B"):
            continue
        b_records += 1
        if len(line) < 35 or line[24] != "A":
            continue  # Skip malformed records and invalid (V) fixes

        try:
            latitude = parse_igc_coordinate(line[7:15], is_longitude=False)
            longitude = parse_igc_coordinate(line[15:24], is_longitude=True)
            hh, mi, ss = int(line[1:3]), int(line[3:5]), int(line[5:7])
        except ValueError:
            continue

        seconds = hh * 3600 + mi * 60 + ss
        if previous_seconds is not None and seconds < previous_seconds:
            day_offset += 1  # UTC midnight rollover
        previous_seconds = seconds

        iso_time = None
        if flight_date is not None:
            ts = datetime(
                flight_date.year, flight_date.month, flight_date.day, tzinfo=timezone.utc
            ) + timedelta(days=day_offset, seconds=seconds)
            iso_time = ts.isoformat()

        gps_altitude = _parse_igc_altitude(line[30:35])
        baro_altitude = _parse_igc_altitude(line[25:30])
        elevation = gps_altitude if gps_altitude is not None else baro_altitude

        points.append(
            TrackPoint(
                lat=latitude,
                lon=longitude,
                elevation=_apply_elevation_policy(elevation, policy),
                iso_time=iso_time,
            )
        )

    if b_records == 0:
        raise FormatError("IGC file has no B fix records", source=_TRACK_SOURCE)
    if flight_date is None:
        logger.warning("IGC: no HFDTE date header — fixes carry no timestamps")
    logger.debug("IGC: %d valid fixes of %d B records", len(points), b_records)
    return points


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_track_file(
    text: str, *, missing_elevation: ElevationPolicy | None = None
) -> list[TrackPoint]:
    """Decode GPX or IGC *text* into track points in document order.

    Raises :class:`FormatError` when the text is neither format or has no track.
    """
    policy = missing_elevation or config.TRACK_MISSING_ELEVATION
    body = text.lstrip("\ufeff").lstrip()
    if body.startswith("<"):
        return _decode_gpx(body, policy)
    if body.startswith("A"):
        return _decode_igc(body, policy)
    raise FormatError("unrecognized track file (expected GPX or IGC)", source=_TRACK_SOURCE)
