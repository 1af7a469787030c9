"""
MP4 metadata container reader — locates GPMF payloads embedded in a video buffer.

The GoPro MP4 contains a `meta` track (sample description type `gpmd`) holding
GPMF payloads. Each track sample is one payload covering a time window given
by the track's `stts` (sample durations) against the `mdhd` timescale. Payload
bytes are addressed through the sample table:

| Box | Content |
|-----|---------|
| `stsz` | size of every sample (or one shared size) |
| `stsc` | samples-per-chunk runs, keyed by first chunk (1-based) |
| `stco` / `co64` | absolute file offset of every chunk |
| `stts` | (count, delta) runs of sample durations in timescale units |

Only the sample table is read; audio and video samples in `mdat` are never
touched. A buffer that starts with a `DEVC` KLV is taken to be a bare GPMF dump
(as written by `ffmpeg -map 0:<gpmd> -f rawvideo`) and split into one payload
per top-level device group, laid end to end on the default payload window.
"""

from __future__ import annotations

import logging
import mmap
import struct
from dataclasses import dataclass, field
from typing import Iterator

from geotelemetry.config import config
from geotelemetry.errors import FormatError
from geotelemetry.telemetry_data import RawContainer

logger = logging.getLogger(__name__)

BufferLike = bytes | bytearray | memoryview | mmap.mmap

GPMD_FORMAT = "gpmd"
BARE_GPMF_FORMAT = "gpmf"

# Boxes allowed at the top level of an ISO-BMFF file; anything else in the
# first header means the buffer is not a container we understand.
_TOP_LEVEL_BOXES = {
    b"ftyp",
    b"moov",
    b"mdat",
    b"free",
    b"skip",
    b"wide",
    b"uuid",
    b"pnot",
    b"meta",
    b"styp",
    b"sidx",
}


# ---------------------------------------------------------------------------
# Box walking
# ---------------------------------------------------------------------------


def _iter_boxes(
    view: memoryview, start: int, end: int, *, strict: bool
) -> Iterator[tuple[bytes, int, int]]:
    """Yield ``(fourcc, data_start, box_end)`` for sibling boxes in ``[start, end)``.

    With *strict*, a box whose declared size overruns *end* raises
    :class:`FormatError`; otherwise the walk stops there (truncated file).
    """
    pos = start
    while pos + 8 <= end:
        size = struct.unpack_from(">I", view, pos)[0]
        fourcc = bytes(view[pos + 4 : pos + 8])
        header = 8
        if size == 1:  # 64-bit extended size
            if pos + 16 > end:
                break
            size = struct.unpack_from(">Q", view, pos + 8)[0]
            header = 16
        elif size == 0:  # box extends to the end of its parent
            size = end - pos
        box_end = pos + size
        if size < header or box_end > end:
            if strict:
                raise FormatError(
                    f"box {fourcc!r} at offset {pos} declares size {size}, "
                    f"overrunning its parent (ends at {end})",
                    source="video",
                )
            logger.debug("Box %r at offset %d is truncated — stopping walk", fourcc, pos)
            break
        yield fourcc, pos + header, box_end
        pos = box_end


def _find_box(view: memoryview, start: int, end: int, target: bytes) -> tuple[int, int] | None:
    """Return ``(data_start, box_end)`` of the first *target* child, or ``None``."""
    for fourcc, data_start, box_end in _iter_boxes(view, start, end, strict=True):
        if fourcc == target:
            return data_start, box_end
    return None


def _unpack_table(
    view: memoryview, start: int, end: int, count: int, fmt: str, box: str
) -> list[tuple]:
    """Unpack *count* fixed-size entries of *fmt* starting at *start*."""
    entry_size = struct.calcsize(fmt)
    if count < 0 or start + count * entry_size > end:
        raise FormatError(
            f"{box} declares {count} entries but only {max(end - start, 0)} bytes follow",
            source="video",
        )
    return list(struct.iter_unpack(fmt, view[start : start + count * entry_size]))


# ---------------------------------------------------------------------------
# Track sample table
# ---------------------------------------------------------------------------


@dataclass
class _TrackTable:
    """Sample table of one ``trak``, enough to address every sample."""

    handler: bytes = b""
    sample_format: bytes = b""
    timescale: int = 1000
    durations: list[int] = field(default_factory=list)  # per sample
    sizes: list[int] = field(default_factory=list)  # per sample
    chunk_runs: list[tuple[int, int]] = field(default_factory=list)  # (first_chunk, per_chunk)
    chunk_offsets: list[int] = field(default_factory=list)

    def sample_offsets(self) -> list[int]:
        offsets: list[int] = []
        n_chunks = len(self.chunk_offsets)
        for run_idx, (first_chunk, per_chunk) in enumerate(self.chunk_runs):
            last_chunk = (
                self.chunk_runs[run_idx + 1][0] - 1
                if run_idx + 1 < len(self.chunk_runs)
                else n_chunks
            )
            for chunk in range(max(first_chunk, 1), min(last_chunk, n_chunks) + 1):
                offset = self.chunk_offsets[chunk - 1]
                for _ in range(per_chunk):
                    if len(offsets) >= len(self.sizes):
                        return offsets
                    offsets.append(offset)
                    offset += self.sizes[len(offsets) - 1]
        return offsets


def _check_sample_count(view: memoryview, count: int, box: str) -> None:
    # every sample occupies at least one byte of the file
    if count > len(view):
        raise FormatError(
            f"{box} declares {count} samples in a {len(view)}-byte buffer", source="video"
        )


def _parse_stbl(view: memoryview, start: int, end: int, table: _TrackTable) -> None:
    for fourcc, ds, be in _iter_boxes(view, start, end, strict=True):
        if be - ds < 8:
            raise FormatError(f"{fourcc!r} box is too short ({be - ds} bytes)", source="video")
        if fourcc == b"stsd":
            # version/flags(4) entry_count(4) then sample entries as boxes
            for entry_fourcc, _eds, _ebe in _iter_boxes(view, ds + 8, be, strict=True):
                table.sample_format = entry_fourcc
                break
        elif fourcc == b"stts":
            count = struct.unpack_from(">I", view, ds + 4)[0]
            for n, delta in _unpack_table(view, ds + 8, be, count, ">II", "stts"):
                _check_sample_count(view, len(table.durations) + n, "stts")
                table.durations.extend([delta] * n)
        elif fourcc == b"stsz":
            shared, count = struct.unpack_from(">II", view, ds + 4)
            if shared:
                _check_sample_count(view, count, "stsz")
                table.sizes = [shared] * count
            else:
                table.sizes = [
                    s for (s,) in _unpack_table(view, ds + 12, be, count, ">I", "stsz")
                ]
        elif fourcc == b"stsc":
            count = struct.unpack_from(">I", view, ds + 4)[0]
            table.chunk_runs = [
                (first, per_chunk)
                for first, per_chunk, _desc in _unpack_table(
                    view, ds + 8, be, count, ">III", "stsc"
                )
            ]
        elif fourcc in (b"stco", b"co64"):
            count = struct.unpack_from(">I", view, ds + 4)[0]
            fmt = ">I" if fourcc == b"stco" else ">Q"
            table.chunk_offsets = [
                o for (o,) in _unpack_table(view, ds + 8, be, count, fmt, fourcc.decode())
            ]


def _parse_trak(view: memoryview, start: int, end: int) -> _TrackTable:
    table = _TrackTable()
    mdia = _find_box(view, start, end, b"mdia")
    if mdia is None:
        return table
    for fourcc, ds, be in _iter_boxes(view, mdia[0], mdia[1], strict=True):
        if fourcc == b"mdhd" and be - ds >= 24:
            version = view[ds]
            # v0: created(4) modified(4) timescale(4); v1: created(8) modified(8) timescale(4)
            ts_offset = ds + (20 if version == 1 else 12)
            if ts_offset + 4 <= be:
                table.timescale = struct.unpack_from(">I", view, ts_offset)[0] or 1000
        elif fourcc == b"hdlr":
            table.handler = bytes(view[ds + 8 : ds + 12])
        elif fourcc == b"minf":
            stbl = _find_box(view, ds, be, b"stbl")
            if stbl is not None:
                _parse_stbl(view, stbl[0], stbl[1], table)
    return table


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _is_bare_gpmf(view: memoryview) -> bool:
    # DEVC KLV header: fourcc + type 0 (nested)
    return bytes(view[:4]) == b"DEVC" and view[4] == 0


def _split_bare_gpmf(view: memoryview) -> list[RawContainer]:
    """One container per top-level KLV group of a bare GPMF dump.

    A dump concatenates the track samples, normally one device group per
    second, so group *k* is given the window starting at
    ``k * DEFAULT_PAYLOAD_DURATION_MS``. A group cut off by the end of the buffer
    is kept as it is.
    """
    duration_ms = config.DEFAULT_PAYLOAD_DURATION_MS
    containers: list[RawContainer] = []
    pos = 0
    end = len(view)
    while pos + 8 <= end:
        if bytes(view[pos : pos + 4]) == b"\x00\x00\x00\x00":
            break  # zero padding
        data_len = view[pos + 5] * struct.unpack_from(">H", view, pos + 6)[0]
        group_end = min(pos + 8 + data_len + (-data_len) % 4, end)
        if view[pos + 4] == 0:
            containers.append(
                RawContainer(
                    format_tag=BARE_GPMF_FORMAT,
                    payload=bytes(view[pos:group_end]),
                    start_ms=len(containers) * duration_ms,
                    duration_ms=duration_ms,
                )
            )
        else:
            logger.debug("Skipping top-level %r leaf in bare GPMF dump", bytes(view[pos : pos + 4]))
        pos = group_end
    return containers


def _check_outer_framing(view: memoryview) -> None:
    size = struct.unpack_from(">I", view, 0)[0]
    fourcc = bytes(view[4:8])
    printable = all(0x20 <= c < 0x7F for c in fourcc)
    if not printable or fourcc not in _TOP_LEVEL_BOXES or (size not in (0, 1) and size < 8):
        raise FormatError(
            f"unrecognized container: first box {fourcc!r} with size {size}",
            source="video",
        )


def extract_metadata_payloads(buffer: BufferLike) -> list[RawContainer]:
    """Locate every GPMF payload in *buffer*.

    Returns an empty list when the container has no ``gpmd`` track: absence of
    telemetry is a valid outcome. Raises :class:`FormatError` only when the
    outer framing cannot be parsed at all.
    """
    with memoryview(buffer) as view:
        if len(view) < 8:
            raise FormatError(
                f"buffer of {len(view)} bytes is too short for a container header",
                source="video",
            )

        if _is_bare_gpmf(view):
            containers = _split_bare_gpmf(view)
            logger.debug(
                "Buffer is a bare GPMF dump (%d bytes, %d device groups)",
                len(view),
                len(containers),
            )
            return containers

        _check_outer_framing(view)

        moov = None
        for fourcc, ds, be in _iter_boxes(view, 0, len(view), strict=False):
            if fourcc == b"moov":
                moov = (ds, be)
                break
        if moov is None:
            logger.warning("No moov box found — container carries no track metadata")
            return []

        containers: list[RawContainer] = []
        for fourcc, ds, be in _iter_boxes(view, moov[0], moov[1], strict=True):
            if fourcc != b"trak":
                continue
            table = _parse_trak(view, ds, be)
            if table.handler != b"meta" or table.sample_format != b"gpmd":
                continue
            containers.extend(_slice_samples(view, table))

    logger.debug("Located %d GPMF payloads", len(containers))
    return containers


def _slice_samples(view: memoryview, table: _TrackTable) -> list[RawContainer]:
    offsets = table.sample_offsets()
    containers: list[RawContainer] = []
    skipped = 0
    t_units = 0
    for idx, (offset, size) in enumerate(zip(offsets, table.sizes)):
        delta = table.durations[idx] if idx < len(table.durations) else 0
        start_ms = t_units * 1000.0 / table.timescale
        t_units += delta
        if offset + size > len(view):
            skipped += 1
            continue
        containers.append(
            RawContainer(
                format_tag=GPMD_FORMAT,
                payload=bytes(view[offset : offset + size]),
                start_ms=start_ms,
                duration_ms=delta * 1000.0 / table.timescale if delta else None,
            )
        )
    if skipped:
        logger.warning(
            "gpmd track: %d of %d payloads lie beyond the end of the buffer (truncated file?)",
            skipped,
            len(offsets),
        )
    return containers
