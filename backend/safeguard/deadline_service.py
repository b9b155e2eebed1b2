import datetime as dt
import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from jinja2 import Environment, select_autoescape


SUBMISSION_CUTOFF_DAY = int(os.getenv("SUBMISSION_CUTOFF_DAY", "10"))
SOON_THRESHOLD_DAYS = 5
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
REMINDER_FROM_EMAIL = os.getenv("REMINDER_FROM_EMAIL", "SafeGuard <onboarding@resend.dev>")
EMAIL_TIMEOUT_SEC = int(os.getenv("EMAIL_TIMEOUT_SEC", "15"))
EMAIL_RETRIES = max(0, int(os.getenv("EMAIL_RETRIES", "2")))
EMAIL_RETRY_BACKOFF_SEC = max(0.1, float(os.getenv("EMAIL_RETRY_BACKOFF_SEC", "1.0")))

logger = logging.getLogger(__name__)

_env = Environment(autoescape=select_autoescape(default_for_string=True))
REMINDER_TEMPLATE = _env.from_string(
    """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>Submission Deadline Reminder</title></head>
  <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>SafeGuard Submission Reminder</h1>
    <p>Dear {{ name }},</p>
    <p>This is a friendly reminder about the monthly data submission deadline for SafeGuard.</p>
    <div style="background: {{ colour }}; color: white; padding: 20px; border-radius: 8px; text-align: center;">
      <h2>Submission Deadline</h2>
      <p><strong>{{ deadline.strftime("%A, %B %d, %Y") }}</strong></p>
      {% if info.urgency == "passed" %}
      <p>The deadline for this month has passed. Please ensure your submission is ready for the next deadline.</p>
      {% elif info.urgency == "today" %}
      <p><strong>Today is the deadline!</strong> Please submit your data today.</p>
      {% else %}
      <p>{{ info.days_until }} day{{ "s" if info.days_until != 1 else "" }} remaining.</p>
      {% endif %}
    </div>
    <p>Please log in to submit your monthly impact data.</p>
  </body>
</html>
"""
)
URGENCY_COLOURS = {"passed": "#dc3545", "today": "#ffc107", "soon": "#ffc107", "upcoming": "#007bff"}


@dataclass
class DeadlineInfo:
    deadline: dt.date
    days_until: int
    is_after_deadline: bool
    urgency: str

    def as_dict(self) -> Dict:
        return {
            "deadline": self.deadline.isoformat(),
            "days_until": self.days_until,
            "is_after_deadline": self.is_after_deadline,
            "urgency": self.urgency,
        }


def _next_month_cutoff(today: dt.date, cutoff_day: int) -> dt.date:
    if today.month == 12:
        return dt.date(today.year + 1, 1, cutoff_day)
    return dt.date(today.year, today.month + 1, cutoff_day)


def deadline_info(today: dt.date, cutoff_day: int = SUBMISSION_CUTOFF_DAY) -> DeadlineInfo:
    """Deadline that matters on ``today``: this month's cut-off, or next month's once it has passed."""
    is_after = today.day > cutoff_day
    deadline = _next_month_cutoff(today, cutoff_day) if is_after else dt.date(today.year, today.month, cutoff_day)
    days_until = (deadline - today).days
    if is_after:
        urgency = "passed"
    elif days_until == 0:
        urgency = "today"
    elif days_until <= SOON_THRESHOLD_DAYS:
        urgency = "soon"
    else:
        urgency = "upcoming"
    return DeadlineInfo(deadline=deadline, days_until=days_until, is_after_deadline=is_after, urgency=urgency)


def render_reminder(name: str, info: DeadlineInfo) -> Tuple[str, str]:
    subject = f"SafeGuard submission deadline: {info.deadline.strftime('%B %d, %Y')}"
    html = REMINDER_TEMPLATE.render(
        name=name,
        info=info,
        deadline=info.deadline,
        colour=URGENCY_COLOURS.get(info.urgency, "#007bff"),
    )
    return subject, html


def send_email(to_email: str, subject: str, html: str) -> Tuple[bool, Optional[str]]:
    api_key = str(os.getenv("RESEND_API_KEY", "")).strip()
    if not api_key:
        return False, "missing_api_key"

    body = json.dumps({"from": REMINDER_FROM_EMAIL, "to": [to_email], "subject": subject, "html": html}).encode("utf-8")
    last_reason = None
    for attempt in range(EMAIL_RETRIES + 1):
        req = urllib.request.Request(
            RESEND_API_URL,
            data=body,
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=EMAIL_TIMEOUT_SEC) as res:
                res.read()
            return True, None
        except urllib.error.HTTPError as exc:
            last_reason = f"http_error_{exc.code}"
            if exc.code in {429, 500, 502, 503, 504} and attempt < EMAIL_RETRIES:
                time.sleep(EMAIL_RETRY_BACKOFF_SEC * (2 ** attempt))
                continue
            return False, last_reason
        except TimeoutError:
            last_reason = "timeout"
        except (urllib.error.URLError, ValueError):
            last_reason = "http_error_network"
        if attempt < EMAIL_RETRIES:
            time.sleep(EMAIL_RETRY_BACKOFF_SEC * (2 ** attempt))
    logger.warning("Reminder e-mail to %s failed: %s", to_email, last_reason)
    return False, last_reason
