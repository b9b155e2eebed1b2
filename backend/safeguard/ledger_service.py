import uuid
from typing import Dict, List, Optional

from sqlalchemy import func, select

from safeguard.approval_rules import METRIC_FIELDS
from safeguard.db import SessionLocal
from safeguard.workflow_models import LiveMetric


def calculate_growth(current: float, previous: float) -> Optional[float]:
    """Percentage change from ``previous`` to ``current``, one decimal place.

    None when there is nothing to compare against.
    """
    if not previous:
        return None
    return round((current - previous) / previous * 100, 1)


def _field_order(field: str) -> tuple:
    if field in METRIC_FIELDS:
        return (0, METRIC_FIELDS.index(field))
    return (1, field)


def summarize_live_metrics(year: int, category: Optional[str] = None) -> Dict:
    stmt = (
        select(LiveMetric.field, LiveMetric.year, func.sum(LiveMetric.value))
        .where(LiveMetric.year.in_([year, year - 1]))
        .group_by(LiveMetric.field, LiveMetric.year)
    )
    if category:
        stmt = stmt.where(LiveMetric.category == category)

    db = SessionLocal()
    try:
        rows = list(db.execute(stmt))
    finally:
        db.close()

    totals: Dict[str, Dict[str, float]] = {}
    for field, row_year, total in rows:
        bucket = totals.setdefault(field, {"current": 0.0, "previous": 0.0})
        key = "current" if row_year == year else "previous"
        bucket[key] = float(total or 0)

    items = []
    for field in sorted(totals.keys(), key=_field_order):
        current = round(totals[field]["current"], 2)
        previous = round(totals[field]["previous"], 2)
        items.append(
            {
                "field": field,
                "current": current,
                "previous": previous,
                "growth_percent": calculate_growth(current, previous),
            }
        )
    return {"year": year, "category": category, "metrics": items}


def list_live_metrics(submission_id: uuid.UUID) -> List[Dict]:
    db = SessionLocal()
    try:
        rows = list(
            db.scalars(
                select(LiveMetric)
                .where(LiveMetric.submission_id == submission_id)
                .order_by(LiveMetric.field.asc())
            )
        )
        return [
            {
                "id": str(r.id),
                "submission_id": str(r.submission_id) if r.submission_id else None,
                "field": r.field,
                "value": float(r.value),
                "approved_by": str(r.approved_by),
                "approved_at": r.approved_at.isoformat() if r.approved_at else None,
                "category": r.category,
                "location": r.location,
                "year": r.year,
            }
            for r in rows
        ]
    finally:
        db.close()
