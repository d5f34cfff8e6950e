from __future__ import annotations

from typing import Tuple

import pandas as pd

from oee_dashboard.metrics import SHIFT_MINUTES, classify_oee

BREAKDOWN_KEYS = ("machine_id", "sector", "shift_id", "date")

METRIC_COLUMNS = ["availability", "performance", "quality", "oee"]


def _to_num(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").fillna(0.0)


def add_oee_columns(
    records: pd.DataFrame,
    *,
    col_planned: str = "planned_production",
    col_actual: str = "actual_production",
    col_downtime: str = "downtime_minutes",
    col_defects: str = "defective_units",
) -> pd.DataFrame:
    """Return a copy of ``records`` with per-row OEE metric columns.

    Mirrors :func:`oee_dashboard.metrics.compute_oee` in vectorised form:
    unusable numbers become 0, divisions by zero yield 0 and every metric is
    clipped to ``[0, 100]``.
    """

    df = records.copy()
    for col in [col_planned, col_actual, col_downtime, col_defects]:
        if col in df.columns:
            df[col] = _to_num(df[col])
        else:
            df[col] = 0.0

    planned = df[col_planned]
    actual = df[col_actual]

    availability = (SHIFT_MINUTES - df[col_downtime]) / SHIFT_MINUTES * 100
    performance = (actual / planned.where(planned > 0) * 100).fillna(0.0)
    quality = ((actual - df[col_defects]) / actual.where(actual > 0) * 100).fillna(0.0)

    df["availability"] = availability.clip(lower=0.0, upper=100.0)
    df["performance"] = performance.clip(lower=0.0, upper=100.0)
    df["quality"] = quality.clip(lower=0.0, upper=100.0)
    # OEE uses the unclipped factors, then clips the product.
    df["oee"] = (availability * performance * quality / 10000).clip(lower=0.0, upper=100.0)
    return df


def compute_oee_breakdown(
    records: pd.DataFrame,
    *,
    by: str = "machine_id",
    machines: pd.DataFrame | None = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Compute per-record metrics and a grouped breakdown.

    Returns (grouped_df, detail_df).

    grouped_df columns:
    - the ``by`` key (plus ``name``/``code``/``sector`` when grouping by
      machine and ``machines`` is supplied)
    - records
    - availability, performance, quality, oee (means over the group)
    - status (OEE tier label), sorted DESC by oee

    detail_df is ``records`` with the four metric columns appended (and the
    machine ``sector`` joined in when available).
    """

    if by not in BREAKDOWN_KEYS:
        raise ValueError(f"Unsupported breakdown key: {by}")

    grouped_columns = [by, "records", *METRIC_COLUMNS, "status"]
    if records is None or len(records) == 0:
        return pd.DataFrame(columns=grouped_columns), pd.DataFrame(
            columns=[*BREAKDOWN_KEYS, *METRIC_COLUMNS]
        )

    detail = add_oee_columns(records)

    machine_info = None
    if machines is not None and len(machines) > 0 and "id" in machines.columns:
        keep = [col for col in ("id", "name", "code", "sector") if col in machines.columns]
        machine_info = machines[keep].rename(columns={"id": "machine_id"})
        if "machine_id" in detail.columns:
            join_cols = [col for col in machine_info.columns if col not in detail.columns]
            if join_cols:
                detail = detail.merge(
                    machine_info[["machine_id", *join_cols]], on="machine_id", how="left"
                )

    if by not in detail.columns:
        detail[by] = None

    grouped = (
        detail.groupby(by, dropna=False)
        .agg(
            records=("oee", "size"),
            availability=("availability", "mean"),
            performance=("performance", "mean"),
            quality=("quality", "mean"),
            oee=("oee", "mean"),
        )
        .reset_index()
    )

    if by == "machine_id" and machine_info is not None:
        grouped = grouped.merge(machine_info, on="machine_id", how="left")

    grouped["status"] = grouped["oee"].map(lambda value: classify_oee(value).label)
    grouped = grouped.sort_values(by="oee", ascending=False).reset_index(drop=True)
    return grouped, detail


def breakdown_records(grouped: pd.DataFrame) -> list[dict]:
    """Convert a grouped breakdown to JSON-safe dictionaries."""

    if grouped is None or grouped.empty:
        return []
    cleaned = grouped.astype(object).where(pd.notna(grouped), None)
    return cleaned.to_dict(orient="records")
