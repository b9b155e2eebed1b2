"""Approval state machine for submissions and their metrics.

Everything here is pure: functions read and mutate the objects they are
handed (ORM rows in production, ``SimpleNamespace`` in tests) and never touch
the database. ``workflow_service`` wraps them in transactions.

Submission status is never set directly. It is derived from the final
decision and the metric approval states by ``derive_submission_status`` and
written back by ``refresh_status`` after every mutation.
"""
import datetime as dt
import decimal
import math
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from safeguard.workflow_errors import InvalidArgument, InvalidStateTransition


METRIC_PENDING = "pending"
METRIC_APPROVED = "approved"
METRIC_REJECTED = "rejected"

STATUS_PENDING = "pending"
STATUS_PARTIALLY_APPROVED = "partially_approved"
STATUS_READY_FOR_FINAL = "ready_for_final"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
SUBMISSION_STATUS_VALUES = {
    STATUS_PENDING,
    STATUS_PARTIALLY_APPROVED,
    STATUS_READY_FOR_FINAL,
    STATUS_APPROVED,
    STATUS_REJECTED,
}

FINAL_PENDING = "pending"
FINAL_APPROVED = "approved"
FINAL_REJECTED = "rejected"

PRIORITY_VALUES = {"low", "normal", "high"}
METRIC_DECIMAL_PLACES = 2

METRIC_FIELDS = (
    "individualsReached",
    "scholarshipsDistributed",
    "schoolsReached",
    "communitiesEngaged",
    "presentationsConducted",
    "leadersTrained",
    "safeSchooling",
    "universityScholarships",
    "vocationalTraining",
    "traumaCare",
    "safeHomes",
    "newSurvivors",
    "careStaff",
    "totalStaff",
    "counselingSupport",
    "financialPackages",
    "familyReintegration",
    "repatriation",
)
NARRATIVE_FIELDS = ("description", "location")


def normalize_reason(reason: Optional[str]) -> str:
    text = str(reason or "").strip()
    if not text:
        raise InvalidArgument("reason_required")
    return text


def parse_metric_value(raw) -> Optional[float]:
    """Return the numeric value of a form entry, or None when it was left blank."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise InvalidArgument("invalid_metric_value")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            raise InvalidArgument("invalid_metric_value")
    if math.isnan(value) or math.isinf(value):
        raise InvalidArgument("invalid_metric_value")
    if value < 0:
        raise InvalidArgument("negative_metric_value")
    # Stored as NUMERIC(18, 2); finer input would be rounded silently.
    digits = decimal.Decimal(repr(value) if isinstance(raw, (int, float)) else text).normalize()
    if digits.as_tuple().exponent < -METRIC_DECIMAL_PLACES:
        raise InvalidArgument("too_many_decimal_places")
    return value


def collect_metric_values(numbers: Optional[Dict]) -> List[Tuple[str, float]]:
    """Turn the submitted number fields into (field, value) pairs, dropping blanks."""
    pairs = []
    for field, raw in (numbers or {}).items():
        if field not in METRIC_FIELDS:
            raise InvalidArgument("unknown_field")
        value = parse_metric_value(raw)
        if value is None:
            continue
        pairs.append((field, value))
    return pairs


def derive_submission_status(final_status: str, metric_statuses: Iterable[str]) -> str:
    if final_status == FINAL_APPROVED:
        return STATUS_APPROVED
    if final_status == FINAL_REJECTED:
        return STATUS_REJECTED
    statuses = list(metric_statuses)
    total = len(statuses)
    approved_count = sum(1 for s in statuses if s == METRIC_APPROVED)
    rejected_count = sum(1 for s in statuses if s == METRIC_REJECTED)
    # A rejected metric keeps the submission out of final review for good;
    # the submitter has to start a new submission.
    if total > 0 and approved_count == total and rejected_count == 0:
        return STATUS_READY_FOR_FINAL
    if approved_count > 0:
        return STATUS_PARTIALLY_APPROVED
    return STATUS_PENDING


def refresh_status(submission) -> str:
    submission.status = derive_submission_status(
        submission.final_status,
        [m.approval_status for m in submission.metrics],
    )
    return submission.status


def is_closed(submission) -> bool:
    return submission.final_status != FINAL_PENDING


def ensure_open(submission):
    if is_closed(submission):
        raise InvalidStateTransition("submission_closed")


def approve_metric(metric, approver_id: uuid.UUID, now: dt.datetime):
    if metric.approval_status != METRIC_PENDING:
        raise InvalidStateTransition("metric_not_pending")
    metric.approval_status = METRIC_APPROVED
    metric.approved_by = approver_id
    metric.approved_at = now
    metric.rejection_reason = None
    metric.rejected_at = None
    return metric


def reject_metric(metric, reason: Optional[str], now: dt.datetime):
    # Rejections carry a reason but no actor; the audit log keeps who did it.
    text = normalize_reason(reason)
    if metric.approval_status != METRIC_PENDING:
        raise InvalidStateTransition("metric_not_pending")
    metric.approval_status = METRIC_REJECTED
    metric.rejection_reason = text
    metric.rejected_at = now
    metric.approved_by = None
    metric.approved_at = None
    return metric


def ensure_can_final_approve(submission):
    if refresh_status(submission) != STATUS_READY_FOR_FINAL:
        raise InvalidStateTransition("not_ready_for_final")


def publication_entries(submission, approver_id: uuid.UUID, now: dt.datetime) -> List[Dict]:
    """Ledger rows that final approval of ``submission`` publishes, one per approved metric."""
    year = submission.submitted_at.year
    return [
        {
            "submission_id": submission.id,
            "field": m.field,
            "value": m.value,
            "approved_by": approver_id,
            "approved_at": now,
            "category": submission.category,
            "location": submission.location,
            "year": year,
        }
        for m in submission.metrics
        if m.approval_status == METRIC_APPROVED
    ]


def mark_final_approved(submission, approver_id: uuid.UUID, now: dt.datetime):
    ensure_can_final_approve(submission)
    submission.final_status = FINAL_APPROVED
    submission.final_approved_by = approver_id
    submission.final_approved_at = now
    refresh_status(submission)
    return submission


def final_reject(submission, reason: Optional[str], now: dt.datetime):
    text = normalize_reason(reason)
    ensure_open(submission)
    submission.final_status = FINAL_REJECTED
    submission.final_rejection_reason = text
    submission.final_rejected_at = now
    refresh_status(submission)
    return submission
