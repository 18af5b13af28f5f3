"""Command line interface for the o2mon package."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .calibration import compute_coefficients
from .config import MonitorConfig, load_config
from .errors import O2MonitorError
from .models import CalibrationRequest
from .plc.registers import RegisterService
from .reporting import export_history
from .runner import MonitorHost

logger = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Oxygen chamber monitor utilities.",
)
plc_app = typer.Typer(help="Direct PLC register access.")
calibration_app = typer.Typer(help="Three-point calibration helpers.")
app.add_typer(plc_app, name="plc")
app.add_typer(calibration_app, name="calibration")


def _load(config_path: Optional[Path], override: Optional[List[str]], demo: bool = False) -> MonitorConfig:
    overrides = list(override or [])
    if demo:
        overrides.append("plc.demo=true")
    try:
        cfg = load_config(config_path, overrides or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Failed to load configuration: {exc}") from exc
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return cfg


CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to monitor JSON config.")
SET_OPTION = typer.Option(
    None, "--set", help="Override config keys, e.g. --set plc.host=10.0.0.5 --set poller.interval_ms=250"
)
DEMO_OPTION = typer.Option(False, "--demo", help="Simulate the PLC instead of talking to hardware.")


@app.command()
def run(
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    demo: bool = DEMO_OPTION,
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after N seconds."),
    stats_every: float = typer.Option(60.0, "--stats-every", help="Stats log interval (seconds)."),
) -> None:
    """Poll the PLC, calibrate readings, evaluate alarms and broadcast snapshots."""

    cfg = _load(config_path, override, demo)
    host = MonitorHost(cfg)
    try:
        host.run(stats_log_interval=stats_every, duration=duration)
    except O2MonitorError as exc:
        typer.echo(f"Monitor failed: {exc}")
        raise typer.Exit(code=1) from exc


@plc_app.command("read")
def plc_read(
    count: int = typer.Option(19, "--count", "-n", min=1, max=50, help="Number of values to read."),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    demo: bool = DEMO_OPTION,
) -> None:
    cfg = _load(config_path, override, demo)
    service = RegisterService(cfg.plc)
    try:
        values = service.read_raw_values(count)
    except O2MonitorError as exc:
        typer.echo(f"Read FAILED: {exc}")
        typer.echo(json.dumps(service.connection_status(), indent=2))
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps({"data": values, "count": len(values)}))


@plc_app.command("write")
def plc_write(
    register: str = typer.Argument(..., help="Register address, e.g. M00407"),
    value: int = typer.Argument(..., min=0, max=0xFFFF, help="16-bit value"),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    demo: bool = DEMO_OPTION,
) -> None:
    cfg = _load(config_path, override, demo)
    service = RegisterService(cfg.plc)
    try:
        ok = service.write_register(register, value)
    except O2MonitorError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if not ok:
        typer.echo(f"Write to {register} FAILED")
        raise typer.Exit(code=1)
    typer.echo(f"Wrote {value} to {register}")


@plc_app.command("status")
def plc_status(
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    demo: bool = DEMO_OPTION,
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Attempt one read first."),
) -> None:
    cfg = _load(config_path, override, demo)
    service = RegisterService(cfg.plc)
    if probe:
        try:
            service.read_raw_values(1)
        except O2MonitorError as exc:
            logger.warning("Probe read failed: %s", exc)
    typer.echo(json.dumps(service.connection_status(), indent=2))


@calibration_app.command("compute")
def calibration_compute(
    zero: float = typer.Argument(..., help="Raw value at 0% O2"),
    mid: float = typer.Argument(..., help="Raw value at the mid point"),
    hundred: Optional[float] = typer.Argument(None, help="Raw value at 100% O2 (derived when omitted)"),
    mid_calibrated: float = typer.Option(21.0, "--mid-calibrated", help="O2 % of the mid point"),
    raw: Optional[List[float]] = typer.Option(None, "--raw", help="Raw values to convert"),
) -> None:
    """Print coefficients for a point set, optionally converting raw values."""

    try:
        request = CalibrationRequest(
            zero_point_raw=zero,
            mid_point_raw=mid,
            hundred_point_raw=hundred,
            mid_point_calibrated=mid_calibrated,
        )
        hundred_raw = request.resolved_hundred_point()
        coeff = compute_coefficients(zero, mid, hundred_raw, mid_calibrated)
    except O2MonitorError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Points: 0%({zero:g}) -> {mid_calibrated:g}%({mid:g}) -> 100%({hundred_raw:g})")
    typer.echo(f"Slope: {coeff.slope:.6f}")
    typer.echo(f"Offset: {coeff.offset:.6f}")
    for value in raw or []:
        typer.echo(f"{value:g} -> {coeff.apply(value):.2f}%")


@app.command("export")
def export(
    out_dir: Path = typer.Option(Path("o2mon_report"), "--out", help="Target directory for the report."),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    demo: bool = DEMO_OPTION,
    duration: float = typer.Option(5.0, "--duration", help="Seconds to monitor before exporting."),
    chamber: Optional[int] = typer.Option(None, "--chamber", help="Restrict to one chamber id."),
) -> None:
    """Monitor for a short window, then write alarm and calibration history."""

    cfg = _load(config_path, override, demo)
    host = MonitorHost(cfg)
    host.run(stats_log_interval=max(duration, 1.0), duration=duration)
    export_history(host.alarms, host.engine, out_dir, chamber_id=chamber)
    typer.echo(f"Report written to {out_dir}")


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
