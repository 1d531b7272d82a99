from __future__ import annotations

# Cylinder pressure reconstruction for dive profiles. Sensors report tank
# pressure intermittently; the gaps are filled by spreading the known pressure
# drops over the depth-weighted workload ("pressure-time") of each interval.
#
# Calling sequence:
#   populate_pressure_information() -> integrate_pressure_time()
#                                   -> build_segments()
#                                   -> fill_missing_tank_pressures() -> fill_missing_segment_pressures()
#                                                                    -> get_pr_interpolate_data()

import bisect
import functools
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np


# -----------------
# Constants
# -----------------

MAX_CYLINDERS = 20
SURFACE_THRESHOLD = 750  # mm
SURFACE_PRESSURE = 1013  # mbar
SEAWATER_SALINITY = 10300  # g per 10 l
FRESHWATER_SALINITY = 10000


# -----------------
# Data structures
# -----------------

class Track(Enum):
    MAIN = "main"
    DILUENT = "diluent"


@dataclass(frozen=True)
class CylinderKey:
    """Identifies one segment chain: a primary cylinder by index, or the diluent."""

    kind: str
    index: Optional[int] = None

    @classmethod
    def primary(cls, index: int) -> "CylinderKey":
        return cls("primary", int(index))

    @classmethod
    def diluent(cls) -> "CylinderKey":
        return cls("diluent", None)

    @property
    def is_diluent(self) -> bool:
        return self.kind == "diluent"

    @property
    def label(self) -> str:
        if self.is_diluent:
            return "diluent"
        return f"cyl{self.index}"

    def sort_key(self) -> Tuple[int, int]:
        if self.is_diluent:
            return (1, 0)
        return (0, int(self.index or 0))


@dataclass
class ProfileEntry:
    sec: int
    depth: int
    cylinder_index: int = 0
    sensor_pressure: int = 0
    diluent_pressure: int = 0
    pressure_time: int = 0
    interpolated_pressure: Optional[int] = None
    interpolated_diluent_pressure: Optional[int] = None


@dataclass
class PressureSegment:
    start: int
    t_start: int
    t_end: int
    end: int = 0
    pressure_time: int = 0


@dataclass
class InterpolationWindow:
    start: int
    end: int
    pressure_time: int = 0
    acc_pressure_time: int = 0


@dataclass
class DiveConditions:
    surface_pressure: int = SURFACE_PRESSURE
    salinity: int = SEAWATER_SALINITY


@dataclass
class InterpolationResult:
    tracks: List[str] = field(default_factory=list)
    missing: Dict[str, bool] = field(default_factory=dict)
    segments: Dict[str, int] = field(default_factory=dict)
    interpolated: Dict[str, int] = field(default_factory=dict)


SegmentTable = Dict[CylinderKey, List[PressureSegment]]
DepthModel = Callable[[int], float]
TraceCallback = Callable[[str, Dict[str, Any]], None]


def _no_trace(event: str, payload: Dict[str, Any]) -> None:
    return None


def _round_half_away(value: float) -> int:
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


# -----------------
# Depth model
# -----------------

def depth_to_mbar(depth: int, conditions: Optional[DiveConditions] = None) -> int:
    """Ambient pressure (mbar) at ``depth`` mm of water.

    Zero salinity or surface pressure in ``conditions`` fall back to sea water
    at standard atmospheric pressure.
    """
    surface_pressure = SURFACE_PRESSURE
    salinity = SEAWATER_SALINITY
    if conditions is not None:
        surface_pressure = conditions.surface_pressure or SURFACE_PRESSURE
        salinity = conditions.salinity or SEAWATER_SALINITY
    specific_weight = salinity * 0.981 / 100000.0
    return _round_half_away(surface_pressure + depth * specific_weight)


# -----------------
# Workload integration
# -----------------

def _mean_depth(a: int, b: int) -> int:
    return (int(a) + int(b)) // 2


def calc_pressure_time(
    a: ProfileEntry,
    b: ProfileEntry,
    depth_model: DepthModel,
    surface_threshold: int = SURFACE_THRESHOLD,
) -> int:
    """Pressure-time between two consecutive entries.

    Only ratios of these values are ever used, so the unit does not matter as
    long as every interval of a dive is measured the same way.
    """
    elapsed = int(b.sec) - int(a.sec)
    depth = _mean_depth(a.depth, b.depth)
    if depth <= surface_threshold:
        return 0
    return _round_half_away(depth * elapsed * depth_model(depth))


def integrate_pressure_time(
    entries: Sequence[ProfileEntry],
    depth_model: DepthModel,
    surface_threshold: int = SURFACE_THRESHOLD,
) -> np.ndarray:
    """Write each entry's pressure-time contribution (interval ending at it).

    The first entry has no preceding interval and always gets 0. Returns the
    contributions as an int64 array aligned with ``entries``.
    """
    n = len(entries)
    out = np.zeros(n, dtype=np.int64)
    if n >= 2:
        secs = np.fromiter((int(e.sec) for e in entries), dtype=np.int64, count=n)
        depths = np.fromiter((int(e.depth) for e in entries), dtype=np.int64, count=n)
        elapsed = np.diff(secs)
        if np.any(elapsed < 0):
            logging.debug("Profile time goes backwards at %d interval(s)", int(np.count_nonzero(elapsed < 0)))
        mean_depth = (depths[:-1] + depths[1:]) // 2
        active = np.flatnonzero((mean_depth > surface_threshold) & (elapsed != 0))
        for k in active:
            depth = int(mean_depth[k])
            out[k + 1] = _round_half_away(depth * int(elapsed[k]) * depth_model(depth))
    for entry, value in zip(entries, out):
        entry.pressure_time = int(value)
    return out


# -----------------
# Segment building
# -----------------

def _raw_pressure(entry: ProfileEntry, track: Track) -> int:
    if track is Track.MAIN:
        return int(entry.sensor_pressure or 0)
    if track is Track.DILUENT:
        return int(entry.diluent_pressure or 0)
    raise ValueError(f"Unknown pressure track: {track!r}")


def _store_interpolated(entry: ProfileEntry, track: Track, value: Optional[int]) -> bool:
    if value is None:
        return False
    if track is Track.DILUENT:
        entry.interpolated_diluent_pressure = int(value)
    else:
        entry.interpolated_pressure = int(value)
    return True


def _cylinder_key(entry: ProfileEntry, track: Track) -> Optional[CylinderKey]:
    if track is Track.DILUENT:
        return CylinderKey.diluent()
    index = int(entry.cylinder_index)
    if index < 0 or index >= MAX_CYLINDERS:
        return None
    return CylinderKey.primary(index)


def build_segments(
    entries: Sequence[ProfileEntry],
    track: Track = Track.MAIN,
) -> Tuple[SegmentTable, bool]:
    """Split the profile into per-cylinder pressure segments.

    A segment starts on the first entry, on every cylinder change, and when a
    sensor comes back after having been silent (transmitter recovery). Each
    entry's ``pressure_time`` (see ``integrate_pressure_time``) is charged to
    the segment open before it, so the interval ending at a cylinder switch
    belongs to the cylinder being left.

    Returns the segment table and whether any entry lacked a reading.
    """
    table: SegmentTable = {}
    missing_pr = False
    current: Optional[PressureSegment] = None
    current_key: Optional[CylinderKey] = None
    warned: set = set()

    for i, entry in enumerate(entries):
        pressure = _raw_pressure(entry, track)

        if current is not None:
            current.pressure_time += int(entry.pressure_time)
            current.t_end = int(entry.sec)

        key = _cylinder_key(entry, track)
        if i == 0 or key != current_key:
            current_key = key
            current = PressureSegment(start=pressure, t_start=int(entry.sec), t_end=int(entry.sec))
            if key is not None:
                table.setdefault(key, []).append(current)
            elif entry.cylinder_index not in warned:
                warned.add(entry.cylinder_index)
                logging.warning(
                    "Cylinder index %s outside 0..%d; its pressures are not tracked",
                    entry.cylinder_index,
                    MAX_CYLINDERS - 1,
                )
            continue

        if not pressure:
            missing_pr = True
            continue

        current.end = pressure

        # Continuous reading, nothing else to do
        if _raw_pressure(entries[i - 1], track):
            continue

        # Transmitter recovered after a dropout: open a new tracking run
        current = PressureSegment(start=pressure, t_start=int(entry.sec), t_end=int(entry.sec))
        if key is not None:
            table[key].append(current)

    return table, missing_pr


def dump_segments(table: SegmentTable) -> List[str]:
    lines: List[str] = []
    for key in sorted(table, key=lambda k: k.sort_key()):
        for seg in table[key]:
            lines.append(
                f"{key.label}: start {seg.start} end {seg.end} "
                f"t_start {seg.t_start} t_end {seg.t_end} pt {seg.pressure_time}"
            )
    return lines


# -----------------
# Gap filling
# -----------------

def fill_missing_segment_pressures(segments: List[PressureSegment]) -> int:
    """Resolve missing start/end pressures of one cylinder's segments in place.

    Many segments have both pressures. After switching away from a cylinder,
    though, we may have a segment with only a start pressure followed by one or
    more segments without either, until a segment finally has an end pressure.
    The total drop over such a run is spread over its segments in proportion
    to their pressure-time, so busier segments get the larger share.

    A run that never finds an end pressure is assumed to have no net change;
    a run without any pressure-time keeps its start pressure until the known
    end.

    Returns the number of runs processed.
    """
    runs = 0
    i = 0
    n = len(segments)
    while i < n:
        start = segments[i].start
        j = i
        pt_sum = 0
        while True:
            pt_sum += segments[j].pressure_time
            end = segments[j].end
            if end:
                break
            end = start
            if j + 1 >= n:
                break
            j += 1

        if not start:
            start = end

        segments[i].start = start
        segments[j].end = end
        pt = 0
        for k in range(i, j + 1):
            seg = segments[k]
            pt += seg.pressure_time
            pressure = start
            if k == j:
                pressure = end
            elif pt_sum:
                pressure = _round_half_away(start - (start - end) * pt / pt_sum)
            seg.end = pressure
            if k < j:
                segments[k + 1].start = pressure

        runs += 1
        i = j + 1
    return runs


def get_pr_interpolate_data(
    segment: PressureSegment,
    entries: Sequence[ProfileEntry],
    cur: int,
    track: Track = Track.MAIN,
    lo: int = 0,
) -> InterpolationWindow:
    """Interpolation window for entry ``cur`` inside ``segment``.

    ``start`` is the last real reading before ``cur`` (or the segment start),
    ``end`` the next real reading after it (or the segment end).
    ``acc_pressure_time`` is the workload from ``start`` up to and including
    ``cur``; ``pressure_time`` the workload from ``start`` to ``end``. ``lo``
    may point at the first entry at or after ``segment.t_start``.
    """
    window = InterpolationWindow(start=segment.start, end=segment.end)

    for i in range(lo, len(entries)):
        entry = entries[i]
        pressure = _raw_pressure(entry, track)

        if entry.sec < segment.t_start:
            continue
        if entry.sec >= segment.t_end:
            window.pressure_time += entry.pressure_time
            break
        if entry.sec == segment.t_start:
            window.acc_pressure_time = 0
            window.pressure_time = 0
            if pressure:
                window.start = pressure
            continue
        if i < cur:
            if pressure:
                window.start = pressure
                window.acc_pressure_time = 0
                window.pressure_time = 0
            else:
                window.acc_pressure_time += entry.pressure_time
                window.pressure_time += entry.pressure_time
            continue
        if i == cur:
            window.acc_pressure_time += entry.pressure_time
            window.pressure_time += entry.pressure_time
            continue
        window.pressure_time += entry.pressure_time
        if pressure:
            window.end = pressure
            break
    return window


def fill_missing_tank_pressures(
    entries: Sequence[ProfileEntry],
    table: SegmentTable,
    track: Track = Track.MAIN,
    first_index: int = 1,
    trace: Optional[TraceCallback] = None,
) -> int:
    """Fill the interpolated slot of every entry lacking a reading on ``track``.

    Segment boundaries are reconciled first, then each entry without a reading
    is interpolated within its segment by accumulated pressure-time. Entries
    in segments without any workload carry the last known pressure forward.
    Entries before ``first_index`` are profile fillers and are skipped.

    Returns the number of entries given an interpolated value.
    """
    trace = trace or _no_trace
    cur_pr: Dict[CylinderKey, Optional[int]] = {}
    for key, segments in table.items():
        if not segments:
            cur_pr[key] = None
            continue
        runs = fill_missing_segment_pressures(segments)
        logging.debug("%s %s: %d segment(s), %d run(s) redistributed", track.value, key.label, len(segments), runs)
        cur_pr[key] = segments[0].start or None
    trace("redistributed", {"track": track.value, "segments": dump_segments(table)})

    times = [int(e.sec) for e in entries]
    cursors: Dict[CylinderKey, int] = {}
    filled = 0

    for i in range(max(0, first_index), len(entries)):
        entry = entries[i]
        key = _cylinder_key(entry, track)
        if key is None:
            continue
        pressure = _raw_pressure(entry, track)
        if pressure:
            cur_pr[key] = pressure
            continue

        segments = table.get(key, [])
        idx = cursors.get(key, 0)
        while idx < len(segments) and segments[idx].t_end < entry.sec:
            idx += 1
        cursors[key] = idx
        segment = segments[idx] if idx < len(segments) else None

        if segment is None or not segment.pressure_time or not segment.start:
            if _store_interpolated(entry, track, cur_pr.get(key)):
                filled += 1
            continue

        lo = bisect.bisect_left(times, segment.t_start)
        window = get_pr_interpolate_data(segment, entries, i, track, lo=lo)
        if window.pressure_time:
            rate = (window.end - window.start) / window.pressure_time
            cur_pr[key] = _round_half_away(window.start + rate * window.acc_pressure_time)
        if _store_interpolated(entry, track, cur_pr.get(key)):
            filled += 1

    trace("interpolated", {"track": track.value, "filled": filled})
    return filled


# -----------------
# Orchestration
# -----------------

def populate_pressure_information(
    entries: Sequence[ProfileEntry],
    *,
    conditions: Optional[DiveConditions] = None,
    depth_model: Optional[DepthModel] = None,
    track_diluent: bool = False,
    surface_threshold: int = SURFACE_THRESHOLD,
    first_index: int = 1,
    trace: Optional[TraceCallback] = None,
) -> InterpolationResult:
    """Fill missing cylinder (and optionally diluent) pressures of one dive.

    Only ``pressure_time`` and the interpolated slots of ``entries`` are
    written; sensor readings pass through untouched. ``depth_model`` defaults
    to ``depth_to_mbar`` bound to ``conditions``. The segment chains are
    scratch state and are dropped before returning.
    """
    result = InterpolationResult()
    if not entries:
        return result
    trace = trace or _no_trace
    if depth_model is None:
        depth_model = functools.partial(depth_to_mbar, conditions=conditions or DiveConditions())

    integrate_pressure_time(entries, depth_model, surface_threshold)

    tracks = [Track.MAIN]
    if track_diluent:
        tracks.append(Track.DILUENT)

    for track in tracks:
        table, missing_pr = build_segments(entries, track)
        result.tracks.append(track.value)
        result.missing[track.value] = missing_pr
        for key, segments in table.items():
            result.segments[key.label] = len(segments)
        trace("segments", {"track": track.value, "segments": dump_segments(table)})
        logging.debug(
            "%s track: %d chain(s), %d segment(s), missing readings: %s",
            track.value,
            len(table),
            sum(len(s) for s in table.values()),
            missing_pr,
        )
        filled = 0
        if missing_pr:
            filled = fill_missing_tank_pressures(entries, table, track, first_index=first_index, trace=trace)
        result.interpolated[track.value] = filled
        table.clear()

    return result
