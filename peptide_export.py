"""Export helpers for peptide schedules.

Turns a `SimulationResult` into a Markdown report, a CSV ledger or a pandas
DataFrame for display. Nothing here changes the result it is given.
"""
from datetime import date, datetime
from io import StringIO
import csv
import logging
import os
import re
from typing import Dict, List, Optional, Sequence

import pandas as pd

from peptide_schedule import (
    BacWaterItem,
    ProtocolStep,
    SimulationResult,
    SyringeBoxItem,
    Vial,
    reorder_date,
)

logger = logging.getLogger(__name__)

EXPORT_DIR = "outputs"


def format_step_range(step: ProtocolStep) -> str:
    if step.end_week is None:
        return f"Week {step.start_week}+"
    if step.start_week == step.end_week:
        return f"Week {step.start_week}"
    return f"Weeks {step.start_week}-{step.end_week}"


def format_long_date(d: Optional[date]) -> str:
    """'Mar 4, 2026' style date, or 'N/A'."""
    if d is None:
        return "N/A"
    return f"{d:%b} {d.day}, {d.year}"


def _short_date(d: date) -> str:
    return f"{d:%b} {d.day}"


def _num(value: float) -> str:
    return f"{value:g}"


def format_markdown(
    result: SimulationResult,
    vials: Sequence[Vial],
    bac_water: Sequence[BacWaterItem],
    syringe_boxes: Sequence[SyringeBoxItem],
    protocol_steps: Sequence[ProtocolStep],
    start_date: date,
    current_date: date,
    discount_percent: float = 0.0,
    reorder_lead_weeks: int = 2,
    generated_at: Optional[datetime] = None,
) -> str:
    """Return a Markdown report of the settings, summary, actions and schedule."""
    generated_at = generated_at or datetime.now()
    lines: List[str] = ["# PeptideCalc Schedule Export", ""]
    lines.append(f"**Generated:** {generated_at:%Y-%m-%d %H:%M}")
    lines.append("")

    lines.append("## Settings")
    lines.append(f"**Start Date:** {start_date.isoformat()} (Current Date: {current_date.isoformat()})")
    owned_boxes = sum(1 for b in syringe_boxes if b.on_hand)
    lines.append(f"**Syringes:** {owned_boxes} box(es) on hand")
    if discount_percent > 0:
        lines.append(f"**Discount Applied:** {_num(discount_percent)}%")
    lines.append(f"**Reorder Lead Time:** {reorder_lead_weeks} weeks")
    lines.append("")

    lines.append("### Inventory")
    for v in vials:
        lines.append(f"- **{v.name}**: {_num(v.mg)}mg (${_num(v.cost)}) + {_num(v.water_added_ml)}ml water")
    for b in bac_water:
        lines.append(f"- **{b.name}**: {_num(b.size_ml)}ml (${_num(b.cost)})")
    for s in syringe_boxes:
        status = "(On hand)" if s.on_hand else "(Planned)"
        lines.append(f"- **{s.name}**: {s.count_per_box}ct (${_num(s.cost)}) {status}")
    lines.append("")

    lines.append("### Protocol")
    for step in protocol_steps:
        end = step.end_week if step.end_week is not None else "+"
        lines.append(f"- Weeks {step.start_week}-{end}: {_num(step.dosage_mg)}mg")
    lines.append("")

    lines.append("## Summary")
    lines.append(f"- **Weeks Covered:** {result.weeks_covered}")
    lines.append(f"- **Total Cost:** ${result.total_cash_cost:,.2f}")
    lines.append(f"- **Avg Weekly Cost:** ${result.avg_weekly_cost:.2f}")
    lines.append(f"- **Runout Date:** {format_long_date(result.runout_date)}")
    lines.append("")

    lines.append("## Supply Actions & Reorder Dates")
    actions: List[str] = []
    warn_date = reorder_date(result)
    if warn_date is not None:
        actions.append(f"- **{format_long_date(warn_date)}**: Reorder Peptides ({reorder_lead_weeks} week lead time)")
    for row in result.schedule:
        when = format_long_date(row.date)
        if row.is_new_baw:
            actions.append(f"- **{when}**: Need by / Open New Bacteriostatic Water")
        if row.is_new_syringe_box:
            actions.append(f"- **{when}**: Need by / Open New Syringe Box")
        if row.did_purchase_baw:
            actions.append(f"- **{when}**: Reorder Bacteriostatic Water")
        if row.did_purchase_syringes:
            actions.append(f"- **{when}**: Reorder Syringes")
        if row.did_purchase_vial:
            actions.append(f"- **{when}**: Reorder Peptides")
    lines.extend(actions or ["(No immediate reorders or new supply openings projected)"])
    lines.append("")

    lines.append("## Detailed Schedule")
    lines.append("| Date | Wk | Dose | Stock State | Cost |")
    lines.append("|---|---|---|---|---|")
    for row in result.schedule:
        dose = f"{_num(row.dose_mg)}mg ({row.dose_units}u)"
        stock = (f"{row.vial_name}: {max(0.0, row.vial_mg_remaining_after):.1f}mg / "
                 f"{max(0.0, row.vial_ml_remaining_after):.2f}mL")
        lines.append(f"| {_short_date(row.date)} | {row.protocol_week} | {dose} | {stock} | ${row.weekly_amortized_cost:.2f} |")

    return "\n".join(lines) + "\n"


def schedule_records(result: SimulationResult) -> List[dict]:
    """Flatten schedule rows into CSV-friendly dicts of primitives."""
    records = []
    for row in result.schedule:
        records.append({
            "week": row.week,
            "protocol_week": row.protocol_week,
            "date": row.date.isoformat(),
            "dose_mg": row.dose_mg,
            "dose_ml": round(row.dose_ml, 4),
            "dose_units": row.dose_units,
            "vial": row.vial_name,
            "vial_mg_before": round(row.vial_mg_remaining_before, 4),
            "vial_mg_after": round(row.vial_mg_remaining_after, 4),
            "vial_ml_after": round(row.vial_ml_remaining_after, 4),
            "cumulative_cost": round(row.cumulative_cost, 2),
            "weekly_cost": round(row.weekly_amortized_cost, 2),
            "new_vial": row.is_new_vial,
            "new_bac_water": row.is_new_baw,
            "new_syringe_box": row.is_new_syringe_box,
            "reorder_warning": row.is_reorder_warning,
            "bought_vial": row.did_purchase_vial,
            "bought_bac_water": row.did_purchase_baw,
            "bought_syringes": row.did_purchase_syringes,
            "warnings": "; ".join(row.warnings),
            "notes": "; ".join(row.notes),
        })
    return records


def summary_header(result: SimulationResult, title: str = "") -> Dict[str, object]:
    return {
        "Title": title,
        "GeneratedAtUTC": datetime.utcnow().isoformat(),
        "WeeksCovered": result.weeks_covered,
        "TotalCashCost": round(result.total_cash_cost, 2),
        "AvgWeeklyCost": round(result.avg_weekly_cost, 2),
        "RunoutDate": result.runout_date.isoformat() if result.runout_date else "N/A",
    }


def format_csv(records: List[dict], summary: Optional[dict] = None) -> str:
    """Render the weekly ledger as CSV.

    `records` come from `schedule_records`; their keys, in order, are the
    columns. A `summary_header` dict, when given, is written above the table
    as `# Key: value` lines and a blank separator line, so spreadsheet
    imports can skip it as comments.
    """
    if not records and not summary:
        return ""

    output = StringIO()
    if summary:
        output.write("".join(f"# {key}: {value}\n" for key, value in summary.items()))
        output.write("\n")

    if records:
        writer = csv.DictWriter(output, fieldnames=list(records[0]), lineterminator="\n")
        writer.writeheader()
        writer.writerows(records)

    return output.getvalue()


def coerce_arrow_friendly_dataframe(rows: List[dict]) -> "pd.DataFrame":
    """Return a DataFrame with column types coerced for Arrow compatibility.

    Streamlit relies on Arrow tables for fast rendering. Mixed object columns
    (like numbers plus empty strings) trigger conversion errors. We replace empty
    strings with NA, coerce numeric-like columns to numeric dtypes, and cast the
    remaining object columns to pandas' nullable string dtype.
    """
    if not rows:
        return pd.DataFrame()

    df = pd.DataFrame(rows)
    for col in df.columns:
        if df[col].dtype != object:
            continue

        series = df[col].replace("", pd.NA)
        non_na = series.dropna()
        if not non_na.empty:
            numeric_coerced = pd.to_numeric(non_na, errors="coerce")
            if not numeric_coerced.isna().any():
                df[col] = pd.to_numeric(series, errors="coerce")
                continue

        df[col] = series.astype("string")

    return df


def clean_cell(value):
    """Plain Python value for a DataFrame cell; missing markers (None, NaN, NaT, pd.NA) become None."""
    if value is None or (pd.api.types.is_scalar(value) and pd.isna(value)):
        return None
    if hasattr(value, "item"):
        return value.item()
    return value


def schedule_dataframe(result: SimulationResult) -> "pd.DataFrame":
    return coerce_arrow_friendly_dataframe(schedule_records(result))


def slugify(value: Optional[str], default: str = "peptide_schedule") -> str:
    """Export filename stem from user input: extension dropped, lower-case,
    spaces and dashes folded to `_`, other punctuation removed.

    Falls back to `default` when nothing usable is left.
    """
    stem = os.path.splitext((value or "").strip())[0].lower()
    stem = re.sub(r"[\s-]+", "_", stem)
    stem = re.sub(r"[^a-z0-9_]", "", stem)
    return stem.strip("_") or default


def save_export(content: str, filename: Optional[str] = None, extension: str = "csv",
                directory: str = EXPORT_DIR) -> str:
    """Save export content to disk under `directory` and return the file path."""
    os.makedirs(directory, exist_ok=True)
    if not filename:
        timestamp = datetime.utcnow().strftime("%Y%m%dT%H%M%SZ")
        filename = f"peptide_schedule_{timestamp}.{extension}"
    path = os.path.join(directory, filename)
    with open(path, "w", encoding="utf-8", newline="") as fh:
        fh.write(content)
    logger.info("wrote export %s", path)
    return path


def list_saved_exports(directory: str = EXPORT_DIR) -> List[str]:
    if not os.path.isdir(directory):
        return []
    files = [f for f in os.listdir(directory) if f.lower().endswith((".csv", ".md"))]
    return sorted(files, key=lambda f: os.path.getmtime(os.path.join(directory, f)), reverse=True)
