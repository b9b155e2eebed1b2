import datetime as dt
import logging
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from safeguard import approval_rules
from safeguard.access_policy import ROLE_QUEUES, Action, Role, can_perform, parse_role
from safeguard.auth_service import AuthUser
from safeguard.blob_store import attachment_blob_key, delete_blob, write_blob
from safeguard.db import SessionLocal
from safeguard.workflow_errors import (
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    Unauthorized,
    WorkflowError,
)
from safeguard.workflow_models import (
    AuditLog,
    LiveMetric,
    Submission,
    SubmissionAttachment,
    SubmissionChange,
    SubmissionMetric,
)


ATTACHMENT_TYPES = {"file", "voice", "document"}
DEFAULT_LANGUAGE = "english"

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@contextmanager
def _write_session():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        raise InvalidStateTransition("concurrent_update") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Workflow write rolled back", exc_info=exc)
        raise PersistenceFailure("persistence_failure") from exc
    finally:
        db.close()


def _load_submission(db: Session, submission_id: uuid.UUID, for_update: bool = False) -> Submission:
    stmt = select(Submission).where(Submission.id == submission_id)
    if for_update:
        # Serialises status recomputation per submission on Postgres.
        stmt = stmt.with_for_update(of=Submission)
    sub = db.scalar(stmt)
    if not sub:
        raise NotFound("submission_not_found")
    return sub


def _authorize(user: AuthUser, action: Action, sub: Submission | None = None):
    if can_perform(user.role, action, sub, user.id):
        return
    if action == Action.VIEW:
        raise Unauthorized("forbidden_submission")
    raise Unauthorized("forbidden_action")


def _find_metric(sub: Submission, field: str) -> SubmissionMetric:
    for metric in sub.metrics:
        if metric.field == field:
            return metric
    raise NotFound("metric_not_found")


def _audit(db: Session, actor_id: uuid.UUID | None, submission_id: uuid.UUID, action: str, before: Dict | None, after: Dict | None):
    db.add(
        AuditLog(
            actor_user_id=actor_id,
            submission_id=submission_id,
            action=action,
            before_json=before,
            after_json=after,
        )
    )


def _format_value(value) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else str(number)


def _metric_state(metric: SubmissionMetric) -> Dict:
    return {"field": metric.field, "approval_status": metric.approval_status}


def _bump_version(sub: Submission):
    # The UPDATE is guarded by the previous value, see Submission.version.
    sub.version += 1


def create_submission(
    user: AuthUser,
    category: Optional[str],
    location: Optional[str],
    description: Optional[str] = None,
    priority: Optional[str] = None,
    language: Optional[str] = None,
    numbers: Optional[Dict] = None,
) -> Dict:
    _authorize(user, Action.SUBMIT)
    category = str(category or "").strip()
    if not category:
        raise InvalidArgument("category_required")
    location = str(location or "").strip()
    if not location:
        raise InvalidArgument("location_required")
    priority = str(priority or "normal").strip().lower()
    if priority not in approval_rules.PRIORITY_VALUES:
        raise InvalidArgument("invalid_priority")
    pairs = approval_rules.collect_metric_values(numbers)

    with _write_session() as db:
        now = _utcnow()
        sub = Submission(
            submitted_by=user.id,
            submitted_at=now,
            last_modified=now,
            category=category,
            location=location,
            description=str(description or "").strip(),
            priority=priority,
            language=str(language or "").strip() or DEFAULT_LANGUAGE,
            final_status=approval_rules.FINAL_PENDING,
            version=1,
        )
        for position, (field, value) in enumerate(pairs, start=1):
            sub.metrics.append(
                SubmissionMetric(
                    field=field,
                    value=value,
                    position=position,
                    approval_status=approval_rules.METRIC_PENDING,
                )
            )
        approval_rules.refresh_status(sub)
        db.add(sub)
        db.flush()
        _audit(
            db,
            user.id,
            sub.id,
            "submission_created",
            None,
            {"status": sub.status, "metrics": [field for field, _ in pairs]},
        )
        payload = serialize_submission(sub)
    logger.info("Submission %s created by %s (%s) with %d metric(s)", payload["id"], user.id, user.role, len(pairs))
    return payload


def record_change(
    submission_id: uuid.UUID,
    user: AuthUser,
    field: Optional[str],
    new_value,
    reason: Optional[str],
    old_value: Optional[str] = None,
) -> Dict:
    """Amend a submitted value and append the matching change record.

    Metric approvals are left untouched so a correction does not send the
    metric back through review.
    """
    reason_text = approval_rules.normalize_reason(reason)
    field = str(field or "").strip()
    if field not in approval_rules.METRIC_FIELDS and field not in approval_rules.NARRATIVE_FIELDS:
        raise InvalidArgument("unknown_field")

    with _write_session() as db:
        sub = _load_submission(db, submission_id, for_update=True)
        _authorize(user, Action.AMEND, sub)
        approval_rules.ensure_open(sub)
        now = _utcnow()

        if field in approval_rules.NARRATIVE_FIELDS:
            current_text = str(getattr(sub, field) or "")
            new_text = str(new_value or "").strip()
            if field == "location" and not new_text:
                raise InvalidArgument("location_required")
            if old_value is not None and str(old_value).strip() != current_text:
                raise InvalidArgument("stale_old_value")
            setattr(sub, field, new_text)
        else:
            metric = _find_metric(sub, field)
            number = approval_rules.parse_metric_value(new_value)
            if number is None:
                raise InvalidArgument("invalid_metric_value")
            if old_value is not None and approval_rules.parse_metric_value(old_value) != float(metric.value):
                raise InvalidArgument("stale_old_value")
            current_text = _format_value(metric.value)
            new_text = _format_value(number)
            metric.value = number

        sub.changes.append(
            SubmissionChange(
                sequence=len(sub.changes) + 1,
                field=field,
                old_value=current_text,
                new_value=new_text,
                reason=reason_text,
                changed_by=user.id,
                created_at=now,
            )
        )
        sub.last_modified = now
        _bump_version(sub)
        _audit(
            db,
            user.id,
            sub.id,
            "submission_change_recorded",
            {"field": field, "value": current_text},
            {"field": field, "value": new_text, "reason": reason_text},
        )
        db.flush()
        payload = serialize_submission(sub)
    logger.info("Change to %s recorded on submission %s by %s", field, submission_id, user.id)
    return payload


def approve_metric(submission_id: uuid.UUID, field: str, user: AuthUser) -> Dict:
    with _write_session() as db:
        sub = _load_submission(db, submission_id, for_update=True)
        _authorize(user, Action.REVIEW_METRIC, sub)
        approval_rules.ensure_open(sub)
        metric = _find_metric(sub, field)
        before = {**_metric_state(metric), "submission_status": sub.status}
        approval_rules.approve_metric(metric, user.id, _utcnow())
        approval_rules.refresh_status(sub)
        _bump_version(sub)
        _audit(db, user.id, sub.id, "metric_approved", before, {**_metric_state(metric), "submission_status": sub.status})
        db.flush()
        payload = serialize_submission(sub)
    logger.info("Metric %s on submission %s approved by %s; status=%s", field, submission_id, user.id, payload["status"])
    return payload


def reject_metric(submission_id: uuid.UUID, field: str, user: AuthUser, reason: Optional[str]) -> Dict:
    reason_text = approval_rules.normalize_reason(reason)
    with _write_session() as db:
        sub = _load_submission(db, submission_id, for_update=True)
        _authorize(user, Action.REVIEW_METRIC, sub)
        approval_rules.ensure_open(sub)
        metric = _find_metric(sub, field)
        before = {**_metric_state(metric), "submission_status": sub.status}
        approval_rules.reject_metric(metric, reason_text, _utcnow())
        approval_rules.refresh_status(sub)
        _bump_version(sub)
        _audit(
            db,
            user.id,
            sub.id,
            "metric_rejected",
            before,
            {**_metric_state(metric), "submission_status": sub.status, "reason": reason_text},
        )
        db.flush()
        payload = serialize_submission(sub)
    logger.info("Metric %s on submission %s rejected by %s", field, submission_id, user.id)
    return payload


def _publish_approved_metrics(db: Session, sub: Submission, approver_id: uuid.UUID, now: dt.datetime) -> int:
    already = set(db.scalars(select(LiveMetric.field).where(LiveMetric.submission_id == sub.id)))
    created = 0
    for entry in approval_rules.publication_entries(sub, approver_id, now):
        if entry["field"] in already:
            continue
        db.add(LiveMetric(**entry))
        created += 1
    try:
        db.flush()
    except IntegrityError as exc:
        raise InvalidStateTransition("already_published") from exc
    return created


def final_approve(submission_id: uuid.UUID, user: AuthUser) -> Dict:
    """Publish every approved metric to the live ledger and close the submission.

    Ledger inserts and the final-approval update share one transaction, so a
    failure part way through leaves the submission in ``ready_for_final``
    with no ledger rows.
    """
    with _write_session() as db:
        sub = _load_submission(db, submission_id, for_update=True)
        _authorize(user, Action.FINAL_APPROVE, sub)
        approval_rules.ensure_can_final_approve(sub)
        now = _utcnow()
        before = {"status": sub.status}
        published = _publish_approved_metrics(db, sub, user.id, now)
        approval_rules.mark_final_approved(sub, user.id, now)
        _bump_version(sub)
        _audit(db, user.id, sub.id, "submission_final_approved", before, {"status": sub.status, "published": published})
        db.flush()
        payload = serialize_submission(sub)
    payload["published_count"] = published
    logger.info("Submission %s final-approved by %s; %d metric(s) published", submission_id, user.id, published)
    return payload


def final_reject(submission_id: uuid.UUID, user: AuthUser, reason: Optional[str]) -> Dict:
    reason_text = approval_rules.normalize_reason(reason)
    with _write_session() as db:
        sub = _load_submission(db, submission_id, for_update=True)
        _authorize(user, Action.FINAL_REJECT, sub)
        before = {"status": sub.status}
        approval_rules.final_reject(sub, reason_text, _utcnow())
        _bump_version(sub)
        _audit(db, user.id, sub.id, "submission_final_rejected", before, {"status": sub.status, "reason": reason_text})
        db.flush()
        payload = serialize_submission(sub)
    logger.info("Submission %s final-rejected by %s", submission_id, user.id)
    return payload


def add_attachment(
    submission_id: uuid.UUID,
    user: AuthUser,
    attachment_type: str,
    file_name: str,
    file_type: str,
    content: bytes | None = None,
    google_doc_id: Optional[str] = None,
) -> Dict:
    attachment_type = str(attachment_type or "").strip().lower()
    if attachment_type not in ATTACHMENT_TYPES:
        raise InvalidArgument("invalid_attachment_type")
    file_name = str(file_name or "").strip()
    if not file_name:
        raise InvalidArgument("file_name_required")
    if attachment_type == "document" and not str(google_doc_id or "").strip():
        raise InvalidArgument("document_id_required")
    if attachment_type != "document" and not content:
        raise InvalidArgument("empty_attachment")

    blob_key = None
    try:
        with _write_session() as db:
            sub = _load_submission(db, submission_id, for_update=True)
            _authorize(user, Action.ATTACH, sub)
            approval_rules.ensure_open(sub)
            attachment = SubmissionAttachment(
                id=uuid.uuid4(),
                attachment_type=attachment_type,
                file_name=file_name,
                file_type=str(file_type or "application/octet-stream"),
                google_doc_id=str(google_doc_id).strip() if google_doc_id else None,
                created_at=_utcnow(),
            )
            if content:
                key = attachment_blob_key(sub.id, attachment.id, file_name)
                try:
                    write_blob(key, content)
                except ValueError as exc:
                    raise InvalidArgument(str(exc))
                blob_key = key
                attachment.file_path = blob_key
                attachment.file_size = len(content)
            else:
                attachment.file_size = 0
            sub.attachments.append(attachment)
            _audit(
                db,
                user.id,
                sub.id,
                "attachment_added",
                None,
                {"attachment_id": str(attachment.id), "attachment_type": attachment_type, "file_name": file_name},
            )
            db.flush()
            payload = serialize_attachment(attachment)
    except WorkflowError:
        # No attachment row was committed, so its bytes must not stay behind.
        if blob_key:
            delete_blob(blob_key)
        raise
    logger.info("Attachment %s (%s) added to submission %s", payload["id"], attachment_type, submission_id)
    return payload


def get_submission_for_user(submission_id: uuid.UUID, user: AuthUser) -> Dict:
    db = SessionLocal()
    try:
        sub = _load_submission(db, submission_id)
        _authorize(user, Action.VIEW, sub)
        return serialize_submission(sub)
    finally:
        db.close()


def list_submissions_for_role(user: AuthUser, status: Optional[str] = None, mine: bool = False) -> List[Dict]:
    """Submissions the caller may see, newest first.

    Agents get their own submissions, partners the partner review queue and
    admins the final-approval queue. ``mine`` restricts any role to its own
    submissions; an explicit ``status`` narrows the result further (admins
    may ask for any status).
    """
    role = parse_role(user.role)
    if role is None:
        raise Unauthorized("forbidden_role")
    if status is not None and status not in approval_rules.SUBMISSION_STATUS_VALUES:
        raise InvalidArgument("invalid_status")

    stmt = select(Submission)
    if role == Role.AGENT or mine:
        stmt = stmt.where(Submission.submitted_by == user.id)
        if status:
            stmt = stmt.where(Submission.status == status)
    elif role == Role.PARTNER:
        statuses = set(ROLE_QUEUES[Role.PARTNER])
        if status:
            statuses &= {status}
        stmt = stmt.where(Submission.status.in_(sorted(statuses)))
    else:
        statuses = {status} if status else set(ROLE_QUEUES[Role.ADMIN])
        stmt = stmt.where(Submission.status.in_(sorted(statuses)))
    stmt = stmt.order_by(Submission.submitted_at.desc())

    db = SessionLocal()
    try:
        rows = list(db.scalars(stmt))
        return [serialize_submission(s) for s in rows if can_perform(role, Action.VIEW, s, user.id)]
    finally:
        db.close()


def _iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_metric(metric: SubmissionMetric) -> Dict:
    return {
        "field": metric.field,
        "value": float(metric.value) if metric.value is not None else None,
        "approval": {
            "status": metric.approval_status,
            "approved_by": str(metric.approved_by) if metric.approved_by else None,
            "approved_at": _iso(metric.approved_at),
            "rejection_reason": metric.rejection_reason,
            "rejected_at": _iso(metric.rejected_at),
        },
    }


def serialize_change(change: SubmissionChange) -> Dict:
    return {
        "field": change.field,
        "old_value": change.old_value,
        "new_value": change.new_value,
        "reason": change.reason,
        "changed_by": str(change.changed_by) if change.changed_by else None,
        "timestamp": _iso(change.created_at),
    }


def serialize_attachment(attachment: SubmissionAttachment) -> Dict:
    return {
        "id": str(attachment.id),
        "attachment_type": attachment.attachment_type,
        "file_name": attachment.file_name,
        "file_type": attachment.file_type,
        "file_path": attachment.file_path,
        "file_size": attachment.file_size,
        "google_doc_id": attachment.google_doc_id,
        "created_at": _iso(attachment.created_at),
    }


def serialize_submission(sub: Submission) -> Dict:
    submitter = getattr(sub, "submitter", None)
    return {
        "id": str(sub.id),
        "submitted_by": str(sub.submitted_by),
        "submitted_by_name": (submitter.full_name or submitter.email) if submitter is not None else None,
        "submitted_at": _iso(sub.submitted_at),
        "last_modified": _iso(sub.last_modified),
        "category": sub.category,
        "location": sub.location,
        "description": sub.description,
        "priority": sub.priority,
        "language": sub.language,
        "status": sub.status,
        "final_approval": {
            "status": sub.final_status,
            "approved_by": str(sub.final_approved_by) if sub.final_approved_by else None,
            "approved_at": _iso(sub.final_approved_at),
            "rejection_reason": sub.final_rejection_reason,
            "rejected_at": _iso(sub.final_rejected_at),
        },
        "metrics": [serialize_metric(m) for m in sub.metrics],
        "changes": [serialize_change(c) for c in sub.changes],
        "attachments": [serialize_attachment(a) for a in sub.attachments],
    }
