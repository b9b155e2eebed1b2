import datetime as dt
import logging
import os
from typing import Dict, List

from celery import Celery
from celery.schedules import crontab
from sqlalchemy import select

from safeguard.access_policy import Role
from safeguard.db import get_db_session
from safeguard.deadline_service import deadline_info, render_reminder, send_email
from safeguard.workflow_models import User


REMINDER_DAYS_OF_MONTH = os.getenv("REMINDER_DAYS_OF_MONTH", "1,5,8,10")
REMINDER_HOUR_UTC = int(os.getenv("REMINDER_HOUR_UTC", "8"))

celery = Celery(
    "safeguard_worker",
    broker=os.getenv("CELERY_BROKER_URL"),
    backend=os.getenv("CELERY_RESULT_BACKEND"),
)
celery.conf.timezone = "UTC"
celery.conf.beat_schedule = {
    "partner-deadline-reminder": {
        "task": "safeguard.celery_app.send_deadline_reminders",
        "schedule": crontab(minute=0, hour=REMINDER_HOUR_UTC, day_of_month=REMINDER_DAYS_OF_MONTH),
    },
}

logger = logging.getLogger(__name__)


def _partner_recipients() -> List[Dict]:
    with get_db_session() as db:
        partners = db.scalars(
            select(User).where(User.role == Role.PARTNER.value, User.is_active.is_(True)).order_by(User.email.asc())
        )
        return [{"email": p.email, "name": p.full_name or p.email} for p in partners]


@celery.task(name="safeguard.celery_app.send_deadline_reminders")
def send_deadline_reminders(today: str | None = None) -> Dict:
    """Fire-and-forget reminder to every active partner about the monthly cut-off."""
    run_date = dt.date.fromisoformat(today) if today else dt.datetime.now(dt.timezone.utc).date()
    info = deadline_info(run_date)
    recipients = _partner_recipients()
    if not recipients:
        logger.info("[WORKER] No partners found for deadline reminder")
        return {"notified": 0, "failed": 0, "failures": [], "deadline": info.deadline.isoformat()}

    logger.info("[WORKER] Sending deadline reminder (%s) to %d partner(s)", info.deadline.isoformat(), len(recipients))
    notified = 0
    failures = []
    for recipient in recipients:
        subject, html = render_reminder(recipient["name"], info)
        ok, reason = send_email(recipient["email"], subject, html)
        if ok:
            notified += 1
        else:
            failures.append({"email": recipient["email"], "reason": reason})
    logger.info("[WORKER] Deadline reminder done: %d sent, %d failed", notified, len(failures))
    return {"notified": notified, "failed": len(failures), "failures": failures, "deadline": info.deadline.isoformat()}
