"""
GPMF payload decoding — KLV tree → device → stream → sample records.

#### KLV layout

Every GPMF item is an 8-byte header followed by big-endian data padded to a
32-bit boundary:

| Bytes | Field |
|-------|-------|
| 0–3 | FourCC key, e.g. `DEVC`, `STRM`, `GPS5` |
| 4 | type char (`\\x00` = nested container) |
| 5 | structure size in bytes |
| 6–7 | repeat count |

Payloads are organized as nested `DEVC > STRM` containers. Each stream carries
sticky metadata ahead of its data item:

- **SCAL** — scaling divisor(s) to convert raw integers to physical units.
- **STMP** — microsecond timestamp of the first sample.
- **TYPE** — per-element types of a complex (`?`) structure, e.g. `GPS9`.
- **GPSU** — UTC time of the payload's first GPS sample (`GPS5` streams).
- **GPSF** / **GPSP** — GPS fix and precision for the payload.

The walk uses an explicit stack over a flat node arena, so hostile nesting
cannot exhaust the interpreter stack; depth is capped by
``config.MAX_KLV_DEPTH``.
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Sequence

import numpy as np

from geotelemetry.config import config
from geotelemetry.errors import DecodeError
from geotelemetry.telemetry_data import (
    RawContainer,
    RawSample,
    StreamCategory,
    StreamRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# GPMF binary type → Python struct format character
# ---------------------------------------------------------------------------
_TYPE_FMT: dict[str, str] = {
    "b": "b",
    "B": "B",
    "s": "h",
    "S": "H",
    "l": "i",
    "L": "I",
    "f": "f",
    "d": "d",
    "j": "q",
    "J": "Q",
    "q": "i",  # Q15.16 fixed point
    "Q": "q",  # Q31.32 fixed point
}

# Fixed-point types are stored as integers scaled by these factors
_FIXED_POINT: dict[str, float] = {
    "q": float(1 << 16),
    "Q": float(1 << 32),
}

_STRING_TYPES = {"c", "U", "F"}

# Metadata KLV keys found alongside data inside a STRM
_META_KEYS = {
    "TSMP",
    "STMP",
    "SCAL",
    "ORIN",
    "ORIO",
    "MTRX",
    "STNM",
    "SIUN",
    "UNIT",
    "TYPE",
    "DVNM",
    "DVID",
    "GPSU",
    "GPSF",
    "GPSP",
    "GPSA",
    "TMPC",
    "EMPT",
    "TICK",
    "TOCK",
}

_STREAM_CATEGORIES: dict[str, StreamCategory] = {
    "GPS5": StreamCategory.POSITION_FIX,
    "GPS9": StreamCategory.POSITION_FIX,
    "ACCL": StreamCategory.INERTIAL,
    "GYRO": StreamCategory.INERTIAL,
    "MAGN": StreamCategory.INERTIAL,
    "CORI": StreamCategory.ORIENTATION,
    "IORI": StreamCategory.ORIENTATION,
    "GRAV": StreamCategory.ORIENTATION,
}


# ---------------------------------------------------------------------------
# Low-level GPMF KLV walk
# ---------------------------------------------------------------------------


@dataclass
class KLVNode:
    """One KLV item; containers list their children as arena indices."""

    fourcc: str
    type_char: str
    sample_size: int
    repeat: int
    start: int  # first data byte
    end: int  # one past the last data byte (padding excluded)
    depth: int
    parent: int  # arena index, -1 at top level
    children: list[int] = field(default_factory=list)

    @property
    def is_container(self) -> bool:
        return self.type_char == "\x00"


@dataclass
class KLVTree:
    nodes: list[KLVNode] = field(default_factory=list)
    roots: list[int] = field(default_factory=list)
    error: str | None = None
    """Set when the walk stopped on a structurally invalid length field."""

    truncated: bool = False
    """Set when trailing items were cut off by the end of the buffer."""

    def children(self, idx: int) -> list[KLVNode]:
        return [self.nodes[c] for c in self.nodes[idx].children]


def walk_klv(data: bytes, max_depth: int | None = None) -> KLVTree:
    """Walk the KLV items of *data* into a flat arena.

    An item running past the end of *data* is truncated trailing data: a
    container is still descended up to the end of the buffer, a leaf keeps its
    complete samples, and the walk stops there. A nested item overrunning a
    container that is itself complete, or nesting deeper than *max_depth*, is
    corruption and is reported through :attr:`KLVTree.error`.
    """
    if max_depth is None:
        max_depth = config.MAX_KLV_DEPTH
    tree = KLVTree()
    # (start, end, parent index, depth, cut off by the buffer end), popped in document order
    stack: list[tuple[int, int, int, int, bool]] = [(0, len(data), -1, 0, True)]

    while stack:
        start, end, parent, depth, at_buffer_end = stack.pop()
        nested: list[tuple[int, int, int, int, bool]] = []
        pos = start
        while pos + 8 <= end:
            key = data[pos : pos + 4]
            if key == b"\x00\x00\x00\x00":
                break  # zero padding
            fourcc = key.decode("latin1", errors="replace")
            type_char = chr(data[pos + 4])
            sample_size = data[pos + 5]
            repeat = struct.unpack_from(">H", data, pos + 6)[0]
            data_len = sample_size * repeat
            data_end = pos + 8 + data_len

            truncated = data_end > end
            if truncated:
                if not at_buffer_end:
                    tree.error = (
                        f"{fourcc} at offset {pos} declares {data_len} bytes, "
                        f"overrunning its container (ends at {end})"
                    )
                    return tree
                logger.debug(
                    "Truncated trailing %s item at offset %d (%d of %d bytes present)",
                    fourcc,
                    pos,
                    end - pos - 8,
                    data_len,
                )
                tree.truncated = True
                if type_char == "\x00":
                    data_end = end
                else:
                    # keep only the complete samples
                    repeat = (end - pos - 8) // sample_size
                    data_end = pos + 8 + sample_size * repeat

            node = KLVNode(
                fourcc=fourcc,
                type_char=type_char,
                sample_size=sample_size,
                repeat=repeat,
                start=pos + 8,
                end=data_end,
                depth=depth,
                parent=parent,
            )
            idx = len(tree.nodes)
            tree.nodes.append(node)
            if parent == -1:
                tree.roots.append(idx)
            else:
                tree.nodes[parent].children.append(idx)

            if node.is_container:
                if depth + 1 > max_depth:
                    tree.error = (
                        f"{node.fourcc} at offset {pos} nests deeper than {max_depth} levels"
                    )
                    return tree
                nested.append((node.start, node.end, idx, depth + 1, truncated))

            if truncated:
                break  # nothing complete follows
            padding = (4 - (data_len % 4)) % 4
            pos = data_end + padding

        stack.extend(reversed(nested))

    return tree


def _unpack_values(
    type_char: str, sample_size: int, repeat: int, data: bytes, complex_type: str | None = None
) -> np.ndarray | None:
    """Unpack a leaf KLV item into an ndarray of shape ``(repeat, elems_per_sample)``.

    Complex structures (``?``) are laid out by *complex_type*, the string of the
    stream's preceding ``TYPE`` item.
    """
    if type_char == "?":
        if not complex_type:
            return None
        elem_types = list(complex_type)
    else:
        fmt_char = _TYPE_FMT.get(type_char)
        if fmt_char is None:
            return None
        elem_size = struct.calcsize(">" + fmt_char)
        elem_types = [type_char] * (sample_size // elem_size)

    if any(t not in _TYPE_FMT for t in elem_types) or not elem_types:
        return None
    fmt = ">" + "".join(_TYPE_FMT[t] for t in elem_types)
    if struct.calcsize(fmt) != sample_size or repeat == 0:
        return None
    nbytes = sample_size * repeat
    if nbytes > len(data):
        return None

    arr = np.array(list(struct.iter_unpack(fmt, data[:nbytes])), dtype=np.float64)
    arr = arr.reshape(repeat, len(elem_types))
    for col, t in enumerate(elem_types):
        if t in _FIXED_POINT:
            arr[:, col] /= _FIXED_POINT[t]
    return arr


def _decode_string(data: bytes, sample_size: int, repeat: int) -> str:
    return (
        data[: sample_size * repeat].decode("latin1", errors="replace").rstrip("\x00")
    )


def _decode_strings(data: bytes, sample_size: int, repeat: int) -> list[str]:
    """Split a repeated ``c`` item (e.g. SIUN) into one string per entry."""
    return [
        data[i * sample_size : (i + 1) * sample_size]
        .decode("latin1", errors="replace")
        .rstrip("\x00")
        for i in range(repeat)
    ]


# ---------------------------------------------------------------------------
# GPSU parsing
# ---------------------------------------------------------------------------

_GPSU_RE = re.compile(r"^(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})\.(\d+)$")


def parse_gpsu(gpsu: str) -> datetime | None:
    """Parse a GPMF ``GPSU`` string into a UTC :class:`datetime`.

    Format: ``YYMMDDHHMMSS.sss``  e.g. ``"250508104822.180"``
    """
    m = _GPSU_RE.match(gpsu.strip())
    if m is None:
        return None
    yy, mo, dd, hh, mi, ss, frac = m.groups()
    microsecond = int(frac.ljust(6, "0")[:6])
    try:
        return datetime(
            2000 + int(yy),
            int(mo),
            int(dd),
            int(hh),
            int(mi),
            int(ss),
            microsecond,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Timestamp generation and scaling
# ---------------------------------------------------------------------------


def _make_timestamps(n: int, start_ms: float, duration_ms: float) -> np.ndarray:
    """Distribute *n* samples evenly across the payload window.

    Samples span from ``start_ms`` to ``start_ms + (n-1)/n * duration_ms``.
    """
    if n == 0:
        return np.empty(0)
    step = duration_ms / n
    return start_ms + np.arange(n) * step


def _apply_scal(values: np.ndarray, scal: np.ndarray | None) -> np.ndarray:
    """Divide *values* by *scal*, broadcasting along the component axis."""
    if scal is None or scal.size == 0:
        return values
    scal = np.where(scal == 0, 1.0, scal)
    if scal.size == 1:
        return values / scal[0]
    if scal.size != values.shape[1]:
        logger.debug(
            "SCAL has %d entries for %d components — leaving values unscaled",
            scal.size,
            values.shape[1],
        )
        return values
    # scal has one entry per component column
    return values / scal[np.newaxis, :]


# ---------------------------------------------------------------------------
# Stream-level interpretation
# ---------------------------------------------------------------------------


@dataclass
class _StreamState:
    """Sticky metadata seen so far inside one STRM."""

    stmp_us: int | None = None
    tsmp: int | None = None
    scal: np.ndarray | None = None
    complex_type: str | None = None
    units: list[str] = field(default_factory=list)
    gpsu: datetime | None = None
    gpsf: int | None = None
    gpsp: float | None = None


def _read_meta(node: KLVNode, payload: bytes, state: _StreamState) -> None:
    raw = payload[node.start : node.end]
    tc, ss, rp = node.type_char, node.sample_size, node.repeat
    key = node.fourcc
    if key == "TYPE" and tc == "c":
        state.complex_type = _decode_string(raw, ss, rp)
    elif key in ("SIUN", "UNIT") and tc == "c":
        state.units = _decode_strings(raw, ss, rp)
    elif key == "GPSU" and tc in ("U", "c"):
        state.gpsu = parse_gpsu(_decode_string(raw, ss, rp))
    else:
        vals = _unpack_values(tc, ss, rp, raw)
        if vals is None or vals.size == 0:
            return
        if key == "SCAL":
            state.scal = vals.flatten()
        elif key == "STMP":
            state.stmp_us = int(vals.flat[0])
        elif key == "TSMP":
            state.tsmp = int(vals.flat[0])
        elif key == "GPSF":
            state.gpsf = int(vals.flat[0])
        elif key == "GPSP":
            state.gpsp = float(vals.flat[0]) / 100.0


def _build_record(
    node: KLVNode,
    payload: bytes,
    state: _StreamState,
    container: RawContainer,
    device_id: int | None,
    device_name: str | None,
) -> StreamRecord | None:
    raw = payload[node.start : node.end]
    values = _unpack_values(
        node.type_char, node.sample_size, node.repeat, raw, state.complex_type
    )
    if values is None and node.repeat > 0:
        logger.debug(
            "Skipping %s: undecodable type %r (size %d)",
            node.fourcc,
            node.type_char,
            node.sample_size,
        )
        return None

    samples: list[RawSample] = []
    if values is not None:
        scaled = _apply_scal(values, state.scal)
        n = scaled.shape[0]
        if state.stmp_us is not None:
            start_ms = state.stmp_us / 1000.0
        else:
            start_ms = container.start_ms or 0.0
        duration_ms = container.duration_ms or config.DEFAULT_PAYLOAD_DURATION_MS
        timestamps = _make_timestamps(n, start_ms, duration_ms)
        offsets = timestamps - timestamps[0]
        for i in range(n):
            absolute = None
            if state.gpsu is not None:
                absolute = (
                    state.gpsu + timedelta(milliseconds=float(offsets[i]))
                ).isoformat()
            samples.append(
                RawSample(
                    values=scaled[i].tolist(),
                    relative_time_ms=float(timestamps[i]),
                    absolute_time=absolute,
                )
            )

    return StreamRecord(
        stream_name=node.fourcc,
        stream_type=_STREAM_CATEGORIES.get(node.fourcc, StreamCategory.OTHER),
        samples=samples,
        device_id=device_id,
        device_name=device_name,
        units=state.units,
        gps_fix=state.gpsf,
        gps_precision=state.gpsp,
    )


def _decode_device(
    tree: KLVTree, idx: int, payload: bytes, container: RawContainer
) -> list[StreamRecord]:
    device_id: int | None = None
    device_name: str | None = None
    records: list[StreamRecord] = []

    children = tree.children(idx)
    for child in children:
        raw = payload[child.start : child.end]
        if child.fourcc == "DVNM" and child.type_char == "c":
            device_name = _decode_string(raw, child.sample_size, child.repeat)
        elif child.fourcc == "DVID":
            if child.type_char == "F":
                device_id = int.from_bytes(raw[:4], "big")
            else:
                vals = _unpack_values(child.type_char, child.sample_size, child.repeat, raw)
                if vals is not None and vals.size > 0:
                    device_id = int(vals.flat[0])

    # Iterate STRM containers
    for child_idx in tree.nodes[idx].children:
        strm = tree.nodes[child_idx]
        if not strm.is_container:
            continue  # skip non-container items at DEVC level
        state = _StreamState()
        for item in tree.children(child_idx):
            if item.is_container:
                continue  # skip nested containers
            if item.fourcc in _META_KEYS:
                _read_meta(item, payload, state)
            elif item.type_char in _STRING_TYPES:
                continue
            else:
                record = _build_record(
                    item, payload, state, container, device_id, device_name
                )
                if record is not None:
                    records.append(record)
    return records


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_gpmf_payload(
    container: RawContainer, *, max_depth: int | None = None
) -> list[StreamRecord]:
    """Decode one GPMF payload into stream records.

    Device groups are every top-level container, whatever their key. Raises
    :class:`DecodeError` on corrupt length fields; the error's ``partial``
    holds the records of the streams decoded before the corruption point.
    """
    payload = container.payload
    tree = walk_klv(payload, max_depth)

    records: list[StreamRecord] = []
    for root in tree.roots:
        if tree.nodes[root].is_container:
            records.extend(_decode_device(tree, root, payload, container))

    if tree.error is not None:
        raise DecodeError(tree.error, partial=records)
    if tree.truncated:
        logger.warning(
            "GPMF payload is truncated; kept %d samples decoded before the cut",
            sum(len(r.samples) for r in records),
        )
    return records


def decode_gpmf_payloads(
    containers: Sequence[RawContainer], *, max_depth: int | None = None
) -> list[StreamRecord]:
    """Decode every payload in order, stopping at the first corrupt one.

    The :class:`DecodeError` raised for a corrupt payload carries the records
    of all payloads decoded before it plus the partial records of that payload.
    """
    records: list[StreamRecord] = []
    for n, container in enumerate(containers):
        try:
            records.extend(decode_gpmf_payload(container, max_depth=max_depth))
        except DecodeError as exc:
            logger.warning("GPMF payload %d of %d is corrupt: %s", n + 1, len(containers), exc)
            raise DecodeError(
                f"payload {n + 1} of {len(containers)}: {exc.args[0]}",
                partial=records + exc.partial,
            ) from exc

    stream_counts: dict[str, int] = {}
    for record in records:
        stream_counts[record.stream_name] = (
            stream_counts.get(record.stream_name, 0) + len(record.samples)
        )
    logger.info("Decoded %d GPMF payloads", len(containers))
    for fourcc in sorted(stream_counts):
        logger.debug("  %-5s  %7d samples", fourcc, stream_counts[fourcc])
    return records
