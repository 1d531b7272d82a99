from __future__ import annotations

# Profile I/O and reporting around the pressure engine (gp_pressure).

import csv
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from gp_pressure import ProfileEntry


REQUIRED_COLUMNS = ("time_s", "depth_mm", "cylinder", "pressure_mbar")
OPTIONAL_COLUMNS = ("diluent_mbar",)
OUTPUT_COLUMNS = REQUIRED_COLUMNS + OPTIONAL_COLUMNS + (
    "pressure_time",
    "interpolated_mbar",
    "interpolated_diluent_mbar",
)


@dataclass
class CylinderUsage:
    label: str
    start_mbar: Optional[int]
    end_mbar: Optional[int]
    used_mbar: Optional[int]
    seconds: int
    readings: int
    interpolated: int
    pressure_time: int


def setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)


# -----------------
# CSV profiles
# -----------------

def _parse_int(raw: Optional[str], column: str, path: str, line: int) -> int:
    text = (raw or "").strip()
    if not text:
        return 0
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(round(float(text)))
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"{path}:{line}: column {column!r} is not a number: {text!r}") from exc


def load_profile_csv(path: str) -> List[ProfileEntry]:
    """Read a dive profile. Blank pressure cells mean "no reading"."""
    with open(path, "r", newline="") as fh:
        reader = csv.DictReader(fh)
        missing = set(REQUIRED_COLUMNS) - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"{path}: missing columns {sorted(missing)}")
        entries: List[ProfileEntry] = []
        for raw in reader:
            line = reader.line_num
            entries.append(
                ProfileEntry(
                    sec=_parse_int(raw.get("time_s"), "time_s", path, line),
                    depth=_parse_int(raw.get("depth_mm"), "depth_mm", path, line),
                    cylinder_index=_parse_int(raw.get("cylinder"), "cylinder", path, line),
                    sensor_pressure=_parse_int(raw.get("pressure_mbar"), "pressure_mbar", path, line),
                    diluent_pressure=_parse_int(raw.get("diluent_mbar"), "diluent_mbar", path, line),
                )
            )

    for idx in range(1, len(entries)):
        if entries[idx].sec < entries[idx - 1].sec:
            logging.warning(
                "%s: time goes backwards at row %d (%ss < %ss)",
                path,
                idx + 1,
                entries[idx].sec,
                entries[idx - 1].sec,
            )
            break
    logging.debug("Loaded %d profile entries from %s", len(entries), path)
    return entries


def _blank_if_none(value: Optional[int]) -> Any:
    return "" if value is None else int(value)


def _blank_if_zero(value: int) -> Any:
    return int(value) if value else ""


def write_profile_csv(path: str, entries: Sequence[ProfileEntry]) -> None:
    with open(path, "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(OUTPUT_COLUMNS)
        writer.writerows(
            [
                e.sec,
                e.depth,
                e.cylinder_index,
                _blank_if_zero(e.sensor_pressure),
                _blank_if_zero(e.diluent_pressure),
                e.pressure_time,
                _blank_if_none(e.interpolated_pressure),
                _blank_if_none(e.interpolated_diluent_pressure),
            ]
            for e in entries
        )


# -----------------
# Reporting
# -----------------

def _known(sensor: int, interpolated: Optional[int]) -> Optional[int]:
    if sensor:
        return int(sensor)
    return interpolated


def _make_usage(
    label: str,
    values: List[Optional[int]],
    seconds: int,
    readings: int,
    interpolated: int,
    pressure_time: int,
) -> CylinderUsage:
    known = [v for v in values if v is not None]
    start = known[0] if known else None
    end = known[-1] if known else None
    used = start - end if known else None
    return CylinderUsage(
        label=label,
        start_mbar=start,
        end_mbar=end,
        used_mbar=used,
        seconds=seconds,
        readings=readings,
        interpolated=interpolated,
        pressure_time=pressure_time,
    )


def summarize_cylinders(entries: Sequence[ProfileEntry]) -> List[CylinderUsage]:
    """Per-cylinder gas usage, in order of first use, diluent last.

    Time and pressure-time of the interval ending at an entry are charged to
    the cylinder in use at the interval's start.
    """
    if not entries:
        return []
    n = len(entries)
    secs = np.fromiter((int(e.sec) for e in entries), dtype=np.int64, count=n)
    cyl = np.fromiter((int(e.cylinder_index) for e in entries), dtype=np.int64, count=n)
    pt = np.fromiter((int(e.pressure_time) for e in entries), dtype=np.int64, count=n)
    elapsed = np.zeros(n, dtype=np.int64)
    elapsed[1:] = np.diff(secs)
    owner = np.empty(n, dtype=np.int64)
    owner[0] = -1
    owner[1:] = cyl[:-1]

    usages: List[CylinderUsage] = []
    for index in dict.fromkeys(int(c) for c in cyl):
        on = [e for e in entries if e.cylinder_index == index]
        charged = owner == index
        usages.append(
            _make_usage(
                f"cyl{index}",
                [_known(e.sensor_pressure, e.interpolated_pressure) for e in on],
                seconds=int(elapsed[charged].sum()),
                readings=sum(1 for e in on if e.sensor_pressure),
                interpolated=sum(1 for e in on if not e.sensor_pressure and e.interpolated_pressure is not None),
                pressure_time=int(pt[charged].sum()),
            )
        )

    if any(e.diluent_pressure for e in entries):
        usages.append(
            _make_usage(
                "diluent",
                [_known(e.diluent_pressure, e.interpolated_diluent_pressure) for e in entries],
                seconds=int(secs[-1] - secs[0]),
                readings=sum(1 for e in entries if e.diluent_pressure),
                interpolated=sum(
                    1 for e in entries if not e.diluent_pressure and e.interpolated_diluent_pressure is not None
                ),
                pressure_time=int(pt.sum()),
            )
        )
    return usages


def format_usage(usage: CylinderUsage) -> str:
    def fmt(value: Optional[int]) -> str:
        return "--" if value is None else f"{value / 1000.0:.1f} bar"

    return (
        f"{usage.label:>8}: {fmt(usage.start_mbar)} -> {fmt(usage.end_mbar)} "
        f"(used {fmt(usage.used_mbar)}, {usage.seconds}s, "
        f"{usage.readings} readings, {usage.interpolated} interpolated)"
    )


def sidecar_path(output: str) -> str:
    return output[:-4] + ".json" if output.lower().endswith(".csv") else output + ".json"


def write_json_sidecar(path: str, meta: Dict[str, Any], usage: Sequence[CylinderUsage]) -> bool:
    try:
        with open(path, "w", encoding="utf-8") as jf:
            json.dump({"meta": meta, "cylinders": [asdict(u) for u in usage]}, jf, indent=2)
        logging.info("Wrote JSON: %s", path)
        return True
    except Exception as exc:
        logging.warning("Failed to write JSON sidecar: %s", exc)
        return False
