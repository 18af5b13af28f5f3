"""Report writers for alarm and calibration history."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import pandas as pd

from .alarms import AlarmStateMachine
from .calibration import CalibrationEngine

ALARM_COLUMNS = [
    "id",
    "chamber_id",
    "kind",
    "is_active",
    "is_muted",
    "muted_until",
    "triggered_at",
    "resolved_at",
    "o2_level_when_triggered",
]
CALIBRATION_COLUMNS = [
    "id",
    "chamber_id",
    "zero_point_raw",
    "mid_point_raw",
    "mid_point_calibrated",
    "hundred_point_raw",
    "slope",
    "offset",
    "is_active",
    "calibrated_by",
    "calibrated_at",
    "notes",
]


def alarm_frame(alarms: AlarmStateMachine, chamber_id: Optional[int] = None, limit: int = 1000) -> pd.DataFrame:
    rows = [alarm.as_dict() for alarm in alarms.alarm_history(chamber_id=chamber_id, limit=limit)]
    return pd.DataFrame(rows, columns=ALARM_COLUMNS)


def calibration_frame(engine: CalibrationEngine, chamber_id: Optional[int] = None) -> pd.DataFrame:
    rows = [
        {
            "id": points.id,
            "chamber_id": points.chamber_id,
            "zero_point_raw": points.zero_point_raw,
            "mid_point_raw": points.mid_point_raw,
            "mid_point_calibrated": points.mid_point_calibrated,
            "hundred_point_raw": points.hundred_point_raw,
            "slope": points.slope,
            "offset": points.offset,
            "is_active": points.is_active,
            "calibrated_by": points.calibrated_by,
            "calibrated_at": points.calibrated_at.isoformat(),
            "notes": points.notes,
        }
        for points in engine.store.list_calibrations(chamber_id)
    ]
    return pd.DataFrame(rows, columns=CALIBRATION_COLUMNS)


def export_history(
    alarms: AlarmStateMachine,
    engine: CalibrationEngine,
    output_dir: Path,
    *,
    chamber_id: Optional[int] = None,
) -> None:
    """Persist alarm/calibration CSVs and a markdown summary to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    alarm_df = alarm_frame(alarms, chamber_id)
    calibration_df = calibration_frame(engine, chamber_id)
    stats_df = engine.calibration_stats(chamber_id)
    alarm_df.to_csv(output_dir / "alarms.csv", index=False)
    calibration_df.to_csv(output_dir / "calibrations.csv", index=False)
    stats_df.to_csv(output_dir / "calibration_stats.csv", index=False)
    _write_report_md(alarm_df, stats_df, output_dir, chamber_id=chamber_id)


def _write_report_md(
    alarm_df: pd.DataFrame,
    stats_df: pd.DataFrame,
    output_dir: Path,
    *,
    chamber_id: Optional[int],
) -> None:
    lines: list[str] = []
    lines.append("# O2 Monitor History Report")
    if chamber_id is not None:
        lines.append(f"*Chamber:* {chamber_id}  ")
    lines.append(f"*Alarms:* {len(alarm_df)} ({int(alarm_df['is_active'].sum()) if len(alarm_df) else 0} active)  ")
    lines.append("")

    lines.append("## Alarms by kind")
    lines.append("| Kind | Total | Active |")
    lines.append("| --- | ---: | ---: |")
    if len(alarm_df):
        grouped = alarm_df.groupby("kind")["is_active"].agg(["count", "sum"])
        for kind, row in grouped.iterrows():
            lines.append(f"| {kind} | {int(row['count'])} | {int(row['sum'])} |")
    lines.append("")

    lines.append("## Calibrations (last 30 days)")
    lines.append("| Chamber | Count | Last |")
    lines.append("| --- | ---: | --- |")
    for _, row in stats_df.iterrows():
        lines.append(
            f"| {row['chamber_id']} | {int(row['total_calibrations'])} | {row['last_calibration']} |"
        )

    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
