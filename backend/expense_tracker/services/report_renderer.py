"""
Report data computation and artifact storage.
"""
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

logger = logging.getLogger(__name__)

TOP_MERCHANTS = 10


def _parse_date(value: Any, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = pd.Timestamp(value).to_pydatetime()
    if end_of_day and len(str(value)) <= 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return parsed


def _payment_label(method: str) -> str:
    return method.replace("_", " ").title()


def _grouped(df: pd.DataFrame, column: str) -> pd.DataFrame:
    grouped = df.groupby(column, sort=False)["amount"].agg(total="sum", count="count").reset_index()
    return grouped.sort_values("total", ascending=False, kind="stable")


def summarize_expenses(expenses: List[Mapping[str, Any]], start_date: str, end_date: str) -> Dict[str, Any]:
    """
    Aggregate expense rows (with ``category_name`` and ``category_color``) into
    summary, category breakdown, monthly trends, top merchants and payment methods.
    """
    summary = {
        "total_expenses": 0.0,
        "transaction_count": len(expenses),
        "average_transaction": 0.0,
        "date_range": {"start_date": start_date, "end_date": end_date},
    }
    if not expenses:
        return {
            "summary": summary,
            "category_breakdown": [],
            "monthly_trends": [],
            "top_merchants": [],
            "payment_methods": [],
        }

    df = pd.DataFrame(expenses)
    df["amount"] = df["amount"].astype(float)
    total = float(df["amount"].sum())
    summary["total_expenses"] = total
    summary["average_transaction"] = total / len(df)

    def share(value: float) -> float:
        return value / total * 100 if total else 0.0

    colors = df.drop_duplicates("category_name").set_index("category_name")["category_color"].to_dict()
    category_breakdown = [
        {
            "category_name": row["category_name"],
            "total": float(row["total"]),
            "count": int(row["count"]),
            "percentage": share(float(row["total"])),
            "color": colors.get(row["category_name"]),
        }
        for row in _grouped(df, "category_name").to_dict("records")
    ]

    df["month"] = pd.to_datetime(df["transaction_date"]).dt.strftime("%Y-%m-01")
    monthly = df.groupby("month")["amount"].agg(total="sum", count="count").reset_index().sort_values("month")
    monthly_trends = [
        {"month": row["month"], "total": float(row["total"]), "count": int(row["count"])}
        for row in monthly.to_dict("records")
    ]

    with_merchant = df[df["merchant"].notna() & (df["merchant"] != "")] if "merchant" in df else df.iloc[0:0]
    top_merchants = [
        {"merchant": row["merchant"], "total": float(row["total"]), "count": int(row["count"])}
        for row in _grouped(with_merchant, "merchant").head(TOP_MERCHANTS).to_dict("records")
    ] if not with_merchant.empty else []

    df["payment_label"] = df["payment_method"].astype(str).map(_payment_label)
    payment_methods = [
        {
            "method": row["payment_label"],
            "total": float(row["total"]),
            "count": int(row["count"]),
            "percentage": share(float(row["total"])),
        }
        for row in _grouped(df, "payment_label").to_dict("records")
    ]

    return {
        "summary": summary,
        "category_breakdown": category_breakdown,
        "monthly_trends": monthly_trends,
        "top_merchants": top_merchants,
        "payment_methods": payment_methods,
    }


class ReportRenderer:
    def __init__(self, store, reports_dir: str = "./reports"):
        self.store = store
        self.reports_dir = reports_dir

    def compute_report_data(self, user_id: str, parameters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Args:
            user_id: Owner of the expenses
            parameters: ``start_date`` and ``end_date`` (ISO dates), optional ``categories`` id list
        """
        parameters = parameters or {}
        if not parameters.get("start_date") or not parameters.get("end_date"):
            raise ValueError("Report parameters need start_date and end_date")
        start = _parse_date(parameters["start_date"])
        end = _parse_date(parameters["end_date"], end_of_day=True)
        expenses = self.store.expenses_in_range(user_id, start, end, parameters.get("categories") or None)
        return summarize_expenses(expenses, str(parameters["start_date"]), str(parameters["end_date"]))

    def artifact_path(self, report_id: str) -> str:
        return os.path.join(self.reports_dir, f"{report_id}.json")

    def write_artifact(self, report_id: str, report_data: Mapping[str, Any]) -> str:
        os.makedirs(self.reports_dir, exist_ok=True)
        path = self.artifact_path(report_id)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report_data, f, indent=2, default=str)
        return path

    def persist_artifact(self, report_id: str, path: str) -> None:
        self.store.set_report_artifact(report_id, path)
        logger.info(f"Report {report_id} artifact stored at {path}")
