from contextlib import asynccontextmanager
import datetime as dt
import logging
import os
import uuid
from typing import Dict, Literal, Optional, Union

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from safeguard.access_policy import Action, can_perform
from safeguard.auth_service import (
    AuthUser,
    JWT_SECRET,
    ensure_default_users,
    get_current_user,
    is_non_dev_env,
    is_weak_jwt_secret,
    require_role,
    should_seed_default_users,
)
from safeguard.celery_app import send_deadline_reminders
from safeguard.db import init_db
from safeguard.deadline_service import deadline_info
from safeguard.ledger_service import list_live_metrics, summarize_live_metrics
from safeguard.translation_client import translate_text
from safeguard.workflow_errors import WorkflowError
from safeguard.workflow_service import (
    add_attachment,
    approve_metric,
    create_submission,
    final_approve,
    final_reject,
    get_submission_for_user,
    list_submissions_for_role,
    record_change,
    reject_metric,
)

DATA_DIR = os.getenv("DATA_DIR", "./data")

logger = logging.getLogger(__name__)


def _startup_db_bootstrap():
    os.makedirs(DATA_DIR, exist_ok=True)
    app_env = os.getenv("APP_ENV", "dev")
    if is_non_dev_env(app_env) and is_weak_jwt_secret(JWT_SECRET):
        raise RuntimeError("Weak/default JWT_SECRET is not allowed outside dev/local/test environments")
    init_db()
    if should_seed_default_users(app_env, os.getenv("SEED_DEFAULT_USERS")):
        ensure_default_users()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _startup_db_bootstrap()
    yield


app = FastAPI(title="SafeGuard Impact Data API", lifespan=lifespan)


def _http_error(exc: WorkflowError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


# ---------------------------
# Health / identity
# ---------------------------
@app.get("/health")
def health():
    return {"ok": True}


@app.get("/auth/me")
def auth_me(user: AuthUser = Depends(get_current_user)):
    return {"id": str(user.id), "email": user.email, "role": user.role}


# ---------------------------
# Submissions
# ---------------------------
class SubmissionCreateRequest(BaseModel):
    category: str
    location: str
    description: str = ""
    priority: Literal["low", "normal", "high"] = "normal"
    language: Optional[str] = None
    numbers: Dict[str, Union[float, str, None]] = Field(default_factory=dict)


class ChangeRequest(BaseModel):
    field: str
    new_value: Union[float, str]
    reason: str
    old_value: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str = ""


class DocumentImportRequest(BaseModel):
    google_doc_id: str
    title: str
    file_type: str = "application/vnd.google-apps.document"


class TranslateRequest(BaseModel):
    text: str = ""
    target_language: str = "en"


@app.post("/submissions", status_code=201)
def submissions_create(payload: SubmissionCreateRequest, user: AuthUser = Depends(get_current_user)):
    try:
        return create_submission(
            user,
            category=payload.category,
            location=payload.location,
            description=payload.description,
            priority=payload.priority,
            language=payload.language,
            numbers=payload.numbers,
        )
    except WorkflowError as exc:
        raise _http_error(exc)


@app.get("/submissions")
def submissions_list(
    status: Optional[str] = None,
    mine: bool = False,
    user: AuthUser = Depends(get_current_user),
):
    try:
        items = list_submissions_for_role(user, status=status, mine=mine)
    except WorkflowError as exc:
        raise _http_error(exc)
    return {"items": items}


@app.get("/submissions/{submission_id}")
def submissions_get(submission_id: uuid.UUID, user: AuthUser = Depends(get_current_user)):
    try:
        return get_submission_for_user(submission_id, user)
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/changes")
def submissions_record_change(submission_id: uuid.UUID, payload: ChangeRequest, user: AuthUser = Depends(get_current_user)):
    try:
        return record_change(
            submission_id,
            user,
            field=payload.field,
            new_value=payload.new_value,
            reason=payload.reason,
            old_value=payload.old_value,
        )
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/metrics/{field}/approve")
def metrics_approve(submission_id: uuid.UUID, field: str, user: AuthUser = Depends(require_role("partner", "admin"))):
    try:
        return approve_metric(submission_id, field, user)
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/metrics/{field}/reject")
def metrics_reject(
    submission_id: uuid.UUID,
    field: str,
    payload: ReasonRequest,
    user: AuthUser = Depends(require_role("partner", "admin")),
):
    try:
        return reject_metric(submission_id, field, user, payload.reason)
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/final-approve")
def submissions_final_approve(submission_id: uuid.UUID, user: AuthUser = Depends(require_role("admin"))):
    try:
        return final_approve(submission_id, user)
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/final-reject")
def submissions_final_reject(
    submission_id: uuid.UUID,
    payload: ReasonRequest,
    user: AuthUser = Depends(require_role("admin")),
):
    try:
        return final_reject(submission_id, user, payload.reason)
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/attachments", status_code=201)
async def submissions_upload_attachment(
    submission_id: uuid.UUID,
    file: UploadFile = File(...),
    attachment_type: str = Form("file"),
    user: AuthUser = Depends(get_current_user),
):
    if attachment_type not in {"file", "voice"}:
        raise HTTPException(status_code=400, detail="invalid_attachment_type")
    content = await file.read()
    try:
        return add_attachment(
            submission_id,
            user,
            attachment_type=attachment_type,
            file_name=file.filename or "attachment",
            file_type=file.content_type or "application/octet-stream",
            content=content,
        )
    except WorkflowError as exc:
        raise _http_error(exc)


@app.post("/submissions/{submission_id}/documents", status_code=201)
def submissions_import_document(
    submission_id: uuid.UUID,
    payload: DocumentImportRequest,
    user: AuthUser = Depends(get_current_user),
):
    try:
        return add_attachment(
            submission_id,
            user,
            attachment_type="document",
            file_name=payload.title,
            file_type=payload.file_type,
            google_doc_id=payload.google_doc_id,
        )
    except WorkflowError as exc:
        raise _http_error(exc)


# ---------------------------
# Published metrics
# ---------------------------
@app.get("/metrics/live")
def metrics_live(
    year: Optional[int] = None,
    category: Optional[str] = None,
    user: AuthUser = Depends(get_current_user),
):
    report_year = year or dt.datetime.now(dt.timezone.utc).year
    return summarize_live_metrics(report_year, category=category)


@app.get("/submissions/{submission_id}/published")
def submissions_published(submission_id: uuid.UUID, user: AuthUser = Depends(get_current_user)):
    try:
        get_submission_for_user(submission_id, user)
    except WorkflowError as exc:
        raise _http_error(exc)
    return {"items": list_live_metrics(submission_id)}


# ---------------------------
# Collaborators
# ---------------------------
@app.get("/deadline")
def submission_deadline(user: AuthUser = Depends(get_current_user)):
    return deadline_info(dt.datetime.now(dt.timezone.utc).date()).as_dict()


@app.post("/translate")
def translate(payload: TranslateRequest, user: AuthUser = Depends(get_current_user)):
    result, reason = translate_text(payload.text, payload.target_language)
    if result is None:
        code = 400 if reason == "text_required" else 502
        raise HTTPException(status_code=code, detail=reason)
    return result


@app.post("/admin/reminders", status_code=202)
def admin_send_reminders(user: AuthUser = Depends(get_current_user)):
    if not can_perform(user.role, Action.SEND_REMINDERS):
        raise HTTPException(status_code=403, detail="forbidden_action")
    task = send_deadline_reminders.delay()
    logger.info("Deadline reminder job %s queued by %s", task.id, user.email)
    return {"queued": True, "task_id": str(task.id)}
