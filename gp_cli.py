from __future__ import annotations

# CLI orchestration for gaspressures. The engine lives in gp_pressure (core)
# and CSV/report handling in gp_profile.

import functools
import logging
from typing import Any, Dict, List, Optional

import typer

from gp_pressure import (
    SURFACE_PRESSURE,
    SURFACE_THRESHOLD,
    SEAWATER_SALINITY,
    DiveConditions,
    Track,
    build_segments,
    depth_to_mbar,
    dump_segments,
    fill_missing_segment_pressures,
    integrate_pressure_time,
    populate_pressure_information,
)
from gp_profile import (
    format_usage,
    load_profile_csv,
    setup_logging,
    sidecar_path,
    summarize_cylinders,
    write_json_sidecar,
    write_profile_csv,
)


def _default_output(profile_csv: str) -> str:
    if profile_csv.lower().endswith(".csv"):
        return profile_csv[:-4] + "_filled.csv"
    return profile_csv + "_filled.csv"


def _log_trace(event: str, payload: Dict[str, Any]) -> None:
    lines = payload.get("segments")
    if lines is None:
        logging.info("trace %s: %s", event, payload)
        return
    logging.info("trace %s (%s track):", event, payload.get("track"))
    for line in lines:
        logging.info("  %s", line)


def _run(
    profile_csv: str,
    output: Optional[str],
    diluent: bool = False,
    salinity: int = SEAWATER_SALINITY,
    surface_pressure: int = SURFACE_PRESSURE,
    surface_threshold: int = SURFACE_THRESHOLD,
    first_index: int = 0,
    json_sidecar: bool = False,
    trace: bool = False,
    verbose: bool = False,
    log_file: Optional[str] = None,
) -> int:
    setup_logging(verbose, log_file=log_file)

    try:
        entries = load_profile_csv(profile_csv)
    except (OSError, ValueError) as exc:
        logging.error(str(exc))
        return 2

    if not entries:
        logging.warning("Profile %s has no entries; nothing to interpolate.", profile_csv)

    conditions = DiveConditions(surface_pressure=surface_pressure, salinity=salinity)
    result = populate_pressure_information(
        entries,
        conditions=conditions,
        track_diluent=diluent,
        surface_threshold=surface_threshold,
        first_index=first_index,
        trace=_log_trace if trace else None,
    )
    for track in result.tracks:
        if result.missing.get(track):
            logging.info("%s track: interpolated %d entries", track, result.interpolated.get(track, 0))
        else:
            logging.info("%s track: no missing readings", track)

    output = output or _default_output(profile_csv)
    try:
        write_profile_csv(output, entries)
    except OSError as exc:
        logging.error(f"Failed to write profile: {exc}")
        return 2
    logging.info("Wrote: %s", output)

    usage = summarize_cylinders(entries)
    for row in usage:
        logging.info("%s", format_usage(row))

    if json_sidecar:
        meta = {
            "command": "interpolate",
            "input": profile_csv,
            "output_csv": output,
            "n_samples": len(entries),
            "tracks": result.tracks,
            "segments": result.segments,
            "interpolated": result.interpolated,
            "params": {
                "diluent": diluent,
                "salinity": salinity,
                "surface_pressure": surface_pressure,
                "surface_threshold": surface_threshold,
                "first_index": first_index,
            },
        }
        write_json_sidecar(sidecar_path(output), meta, usage)

    return 0


def _dump_segments_command(
    profile_csv: str,
    diluent: bool = False,
    salinity: int = SEAWATER_SALINITY,
    surface_pressure: int = SURFACE_PRESSURE,
    surface_threshold: int = SURFACE_THRESHOLD,
    verbose: bool = False,
) -> List[str]:
    setup_logging(verbose)
    entries = load_profile_csv(profile_csv)
    conditions = DiveConditions(surface_pressure=surface_pressure, salinity=salinity)
    integrate_pressure_time(entries, functools.partial(depth_to_mbar, conditions=conditions), surface_threshold)
    tracks = [Track.MAIN, Track.DILUENT] if diluent else [Track.MAIN]
    lines: List[str] = []
    for track in tracks:
        table, _ = build_segments(entries, track)
        for segments in table.values():
            fill_missing_segment_pressures(segments)
        lines.extend(dump_segments(table))
    return lines


def _build_typer_app():
    app = typer.Typer(add_completion=False, help="Fill missing cylinder pressures in dive profiles.")

    @app.command()
    def interpolate(
        profile_csv: str = typer.Argument(..., help="Profile CSV (time_s, depth_mm, cylinder, pressure_mbar[, diluent_mbar])"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="Output CSV path (defaults to <input>_filled.csv)"),
        diluent: bool = typer.Option(False, "--diluent/--no-diluent", help="Also fill the rebreather diluent track"),
        salinity: int = typer.Option(SEAWATER_SALINITY, "--salinity", help="Water salinity in g/10l (10000 fresh, 10300 sea)"),
        surface_pressure: int = typer.Option(SURFACE_PRESSURE, "--surface-pressure", help="Surface pressure in mbar"),
        surface_threshold: int = typer.Option(SURFACE_THRESHOLD, "--surface-threshold", help="Depth (mm) at or above which no gas use is counted"),
        first_index: int = typer.Option(0, "--first-index", help="Rows before this index are fillers and are not interpolated"),
        json_sidecar: bool = typer.Option(False, "--json/--no-json", help="Write JSON report next to the CSV"),
        trace: bool = typer.Option(False, "--trace", help="Log segment chains at each stage"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        code = _run(
            profile_csv,
            output,
            diluent=diluent,
            salinity=salinity,
            surface_pressure=surface_pressure,
            surface_threshold=surface_threshold,
            first_index=first_index,
            json_sidecar=json_sidecar,
            trace=trace,
            verbose=verbose,
            log_file=log_file,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def segments(
        profile_csv: str = typer.Argument(..., help="Profile CSV"),
        diluent: bool = typer.Option(False, "--diluent/--no-diluent", help="Include the diluent chain"),
        salinity: int = typer.Option(SEAWATER_SALINITY, "--salinity", help="Water salinity in g/10l"),
        surface_pressure: int = typer.Option(SURFACE_PRESSURE, "--surface-pressure", help="Surface pressure in mbar"),
        surface_threshold: int = typer.Option(SURFACE_THRESHOLD, "--surface-threshold", help="Surface threshold depth (mm)"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Print the reconciled pressure segments of each cylinder."""
        try:
            lines = _dump_segments_command(profile_csv, diluent, salinity, surface_pressure, surface_threshold, verbose)
        except (OSError, ValueError) as exc:
            logging.error(str(exc))
            raise typer.Exit(2)
        for line in lines:
            typer.echo(line)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
