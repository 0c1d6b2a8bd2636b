from __future__ import annotations

from typing import Iterable

import pandas as pd


NUMERIC_COLUMNS = ("score", "pass_rate", "defects_count", "total_inspected")
STATUSES = ("approved", "rejected", "draft")


def _to_num(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce")


def _clean(value):
    """Convert pandas scalars to JSON friendly Python values."""
    if value is None or pd.isna(value):
        return None
    if hasattr(value, "item"):
        value = value.item()
    if isinstance(value, float):
        return round(value, 2)
    return value


def reports_frame(reports: Iterable[dict]) -> pd.DataFrame:
    """Return ``reports`` as a DataFrame with numeric and date columns coerced."""

    df = pd.DataFrame(list(reports))
    for col in NUMERIC_COLUMNS:
        df[col] = _to_num(df[col]) if col in df.columns else pd.Series(dtype=float)
    for col in ("product_name", "shift", "status"):
        if col not in df.columns:
            df[col] = None
    if "report_date" in df.columns:
        df["report_day"] = pd.to_datetime(df["report_date"], errors="coerce").dt.date
    else:
        df["report_day"] = pd.NaT
    return df


def _group_summary(df: pd.DataFrame, key: str) -> list[dict]:
    if df.empty:
        return []

    grouped = df.assign(**{key: df[key].fillna("Unspecified")}).groupby(key, dropna=False)
    agg = grouped.agg(
        reports=("status", "size"),
        approved=("status", lambda s: int((s == "approved").sum())),
        average_score=("score", "mean"),
        total_inspected=("total_inspected", "sum"),
        total_defects=("defects_count", "sum"),
    ).reset_index()

    # Pass rate from totals; reports without counts fall back to their own rate.
    inspected = agg["total_inspected"]
    rate = 100.0 * (1 - agg["total_defects"] / inspected.where(inspected > 0))
    agg["pass_rate"] = rate.fillna(grouped["pass_rate"].mean().reset_index(drop=True))

    agg = agg.sort_values(by=key).reset_index(drop=True)
    return [
        {column: _clean(value) for column, value in row.items()}
        for row in agg.to_dict(orient="records")
    ]


def summarize_reports(reports: Iterable[dict]) -> dict:
    """Aggregate QC reports into totals plus per product, shift and day views."""

    df = reports_frame(reports)
    total = int(len(df))

    summary = {"total_reports": total}
    for status in STATUSES:
        summary[f"{status}_reports"] = int((df["status"] == status).sum()) if total else 0
    summary["average_score"] = _clean(df["score"].mean()) if total else None
    summary["average_pass_rate"] = _clean(df["pass_rate"].mean()) if total else None
    summary["total_defects"] = _clean(df["defects_count"].sum()) if total else 0
    summary["total_inspected"] = _clean(df["total_inspected"].sum()) if total else 0

    by_day: list[dict] = []
    if total:
        dated = df.dropna(subset=["report_day"])
        if not dated.empty:
            counts = dated.groupby("report_day").size().sort_index(ascending=False)
            by_day = [
                {"report_day": day.isoformat(), "reports": int(count)}
                for day, count in counts.items()
            ]

    return {
        "summary": summary,
        "by_product": _group_summary(df, "product_name"),
        "by_shift": _group_summary(df, "shift"),
        "by_day": by_day,
    }
