"""
Builders for synthetic GPMF payloads, MP4 containers and GPX documents.

Only what the tests need is implemented: big-endian KLV items padded to 32
bits, DEVC/STRM nesting, and a minimal faststart MP4 with a single `gpmd`
metadata track (plus an optional video track that must be ignored).
"""

from __future__ import annotations

import math
import struct
from typing import Sequence

GPS5_SCAL = (10_000_000, 10_000_000, 1000, 1000, 100)
GPS9_SCAL = (10_000_000, 10_000_000, 1000, 1000, 100, 1, 1000, 100, 1)


# ---------------------------------------------------------------------------
# KLV
# ---------------------------------------------------------------------------


def klv(fourcc: str, type_char: str, sample_size: int, repeat: int, data: bytes) -> bytes:
    header = (
        fourcc.encode("latin1")
        + bytes([ord(type_char), sample_size])
        + struct.pack(">H", repeat)
    )
    return header + data + b"\x00" * ((-len(data)) % 4)


def nest(fourcc: str, *children: bytes) -> bytes:
    body = b"".join(children)
    return klv(fourcc, "\x00", 4, len(body) // 4, body)


def string_klv(fourcc: str, text: str, type_char: str = "c") -> bytes:
    data = text.encode("latin1")
    return klv(fourcc, type_char, len(data), 1, data)


def strings_klv(fourcc: str, texts: Sequence[str]) -> bytes:
    """Repeated ``c`` item, every entry padded to the longest (e.g. SIUN)."""
    width = max(len(t) for t in texts)
    data = b"".join(t.encode("latin1").ljust(width, b"\x00") for t in texts)
    return klv(fourcc, "c", width, len(texts), data)


def numeric_klv(fourcc: str, type_char: str, rows: Sequence[Sequence[float]]) -> bytes:
    fmt_char = {"l": "i", "L": "I", "s": "h", "S": "H", "f": "f", "J": "Q", "B": "B"}[type_char]
    width = len(rows[0]) if rows else 1
    sample_size = struct.calcsize(">" + fmt_char) * width
    data = b"".join(struct.pack(">" + fmt_char * width, *row) for row in rows)
    return klv(fourcc, type_char, sample_size, len(rows), data)


def scal_klv(divisors: Sequence[int]) -> bytes:
    return numeric_klv("SCAL", "l", [[d] for d in divisors])


def gps5_stream(
    samples: Sequence[Sequence[float]],
    *,
    stmp_us: int | None = None,
    gpsu: str | None = None,
    gpsf: int | None = 3,
    gpsp: int = 150,
    units: Sequence[str] | None = None,
    fourcc: str = "GPS5",
) -> bytes:
    """One STRM holding GPS5 samples given in physical units.

    Each sample is ``(lat, lon, alt, speed2d[, speed3d])``.
    """
    rows = []
    for sample in samples:
        values = list(sample) + [0.0] * (5 - len(sample))
        rows.append([int(round(v * s)) for v, s in zip(values, GPS5_SCAL)])
    items = []
    if stmp_us is not None:
        items.append(numeric_klv("STMP", "J", [[stmp_us]]))
    items.append(string_klv("STNM", "GPS (Lat., Long., Alt., 2D speed, 3D speed)"))
    if gpsf is not None:
        items.append(numeric_klv("GPSF", "L", [[gpsf]]))
    if gpsu is not None:
        items.append(string_klv("GPSU", gpsu, type_char="U"))
    items.append(numeric_klv("GPSP", "S", [[gpsp]]))
    if units is not None:
        items.append(strings_klv("SIUN", units))
    items.append(scal_klv(GPS5_SCAL))
    items.append(klv(fourcc, "l", 20, len(rows), b"".join(struct.pack(">5i", *r) for r in rows)))
    return nest("STRM", *items)


def gps9_stream(samples: Sequence[Sequence[float]]) -> bytes:
    """One STRM of GPS9 (complex type ``lllllllSS``).

    Each sample is ``(lat, lon, alt, speed2d, speed3d, days, seconds, dop, fix)``.
    """
    payload = b""
    for sample in samples:
        scaled = [int(round(v * s)) for v, s in zip(sample, GPS9_SCAL)]
        payload += struct.pack(">7i2H", *scaled)
    return nest(
        "STRM",
        string_klv("TYPE", "lllllllSS"),
        scal_klv(GPS9_SCAL),
        klv("GPS9", "?", 32, len(samples), payload),
    )


def accl_stream(n: int = 4) -> bytes:
    rows = [[100 * i, -200, 9810] for i in range(n)]
    return nest(
        "STRM",
        scal_klv([1000]),
        numeric_klv("ACCL", "s", rows),
    )


def device(*streams: bytes, dvid: int = 1, name: str = "HERO9 Black", key: str = "DEVC") -> bytes:
    return nest(
        key,
        numeric_klv("DVID", "L", [[dvid]]),
        string_klv("DVNM", name),
        *streams,
    )


# ---------------------------------------------------------------------------
# MP4
# ---------------------------------------------------------------------------


def box(fourcc: bytes, body: bytes = b"") -> bytes:
    return struct.pack(">I", 8 + len(body)) + fourcc + body


def full_box(fourcc: bytes, body: bytes) -> bytes:
    return box(fourcc, b"\x00\x00\x00\x00" + body)


def _trak(handler: bytes, sample_format: bytes, sizes, offsets, durations, timescale) -> bytes:
    mdhd = full_box(b"mdhd", struct.pack(">IIIIHH", 0, 0, timescale, sum(durations), 0, 0))
    hdlr = full_box(b"hdlr", struct.pack(">I", 0) + handler + b"\x00" * 12 + b"\x00")
    stsd = full_box(b"stsd", struct.pack(">I", 1) + box(sample_format, b"\x00" * 6 + struct.pack(">H", 1)))
    stts = full_box(
        b"stts", struct.pack(">I", len(durations)) + b"".join(struct.pack(">II", 1, d) for d in durations)
    )
    stsz = full_box(
        b"stsz", struct.pack(">II", 0, len(sizes)) + b"".join(struct.pack(">I", s) for s in sizes)
    )
    stsc = full_box(b"stsc", struct.pack(">I", 1) + struct.pack(">III", 1, 1, 1))
    stco = full_box(
        b"stco", struct.pack(">I", len(offsets)) + b"".join(struct.pack(">I", o) for o in offsets)
    )
    stbl = box(b"stbl", stsd + stts + stsz + stsc + stco)
    minf = box(b"minf", stbl)
    mdia = box(b"mdia", mdhd + hdlr + minf)
    return box(b"trak", full_box(b"tkhd", b"\x00" * 80) + mdia)


def build_mp4(
    payloads: Sequence[bytes],
    *,
    durations: Sequence[int] | None = None,
    timescale: int = 1000,
    with_video_track: bool = True,
    with_gpmd_track: bool = True,
) -> bytes:
    """Faststart MP4: ``ftyp``, ``moov``, then ``mdat`` holding every payload."""
    if durations is None:
        durations = [1001] * len(payloads)
    ftyp = box(b"ftyp", b"mp41" + struct.pack(">I", 0) + b"mp41isom")
    video_sample = b"\x00\x00\x00\x01" + b"\x65" * 28
    sizes = [len(p) for p in payloads]

    def moov_for(base: int) -> bytes:
        traks = b""
        pos = base
        if with_video_track:
            traks += _trak(b"vide", b"avc1", [len(video_sample)], [pos], [1001], timescale)
            pos += len(video_sample)
        if with_gpmd_track:
            offsets = []
            for size in sizes:
                offsets.append(pos)
                pos += size
            traks += _trak(b"meta", b"gpmd", sizes, offsets, list(durations), timescale)
        mvhd = full_box(b"mvhd", b"\x00" * 96)
        return box(b"moov", mvhd + traks)

    # moov size does not depend on the offsets it stores
    moov_len = len(moov_for(0))
    mdat_data_start = len(ftyp) + moov_len + 8
    moov = moov_for(mdat_data_start)
    mdat_body = (video_sample if with_video_track else b"") + b"".join(payloads)
    return ftyp + moov + box(b"mdat", mdat_body)


# ---------------------------------------------------------------------------
# GPX
# ---------------------------------------------------------------------------


def gpx_document(segments: Sequence[Sequence[dict]], *, namespace: bool = True) -> str:
    """GPX 1.1 text with one ``trk`` holding *segments* of point dicts.

    Point dicts take ``lat``, ``lon`` and optionally ``ele`` and ``time``.
    """
    xmlns = ' xmlns="http://www.topografix.com/GPX/1/1"' if namespace else ""
    parts = [f'<?xml version="1.0" encoding="UTF-8"?>\n<gpx version="1.1" creator="tests"{xmlns}>', "<trk><name>ride</name>"]
    for segment in segments:
        parts.append("<trkseg>")
        for pt in segment:
            attrs = " ".join(f'{k}="{pt[k]}"' for k in ("lat", "lon") if k in pt)
            inner = ""
            if "ele" in pt:
                inner += f"<ele>{pt['ele']}</ele>"
            if "time" in pt:
                inner += f"<time>{pt['time']}</time>"
            parts.append(f"<trkpt {attrs}>{inner}</trkpt>")
        parts.append("</trkseg>")
    parts.append("</trk></gpx>")
    return "\n".join(parts)


def offset_north(lat: float, meters: float, radius_m: float = 6_371_000.0) -> float:
    """Latitude *meters* north of *lat* along a meridian (great circle)."""
    return lat + math.degrees(meters / radius_m)
