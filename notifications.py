"""
Notification delivery

Outbound channels (email through Mailjet, SMS through Twilio, WhatsApp through
the Cloud API) plus in-app notification rows.

IMPORTANT:
- Every send is best effort: failures are logged and reported as False, never
  raised to the request that triggered them
- A channel without credentials is a logged no-op
- Fan-out is bounded by NOTIFY_MAX_WORKERS
"""
import html
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

import config
from models import PREFERENCE_DEFAULTS, Notification, NotificationPreference, Project, Stage, Task, User

logger = logging.getLogger("notifications")

MAILJET_SEND_URL = "https://api.mailjet.com/v3.1/send"
TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class NotificationType(str, Enum):
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_ACCEPTED = "TASK_ACCEPTED"
    TASK_REFUSED = "TASK_REFUSED"
    TASK_UPDATED = "TASK_UPDATED"
    STAGE_COMPLETED = "STAGE_COMPLETED"
    PROJECT_COMPLETED = "PROJECT_COMPLETED"


@dataclass
class Recipient:
    id: str
    name: str
    email: str
    phone: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Recipient":
        return cls(id=user.id, name=user.name, email=user.email, phone=user.phone)


@dataclass
class EmailMessage:
    recipient: Recipient
    subject: str
    html: str
    text: str


# ----- Channels -----

def send_email(to_email: str, to_name: str, subject: str, html_body: str, text_body: str = "") -> bool:
    if not (config.MAILJET_API_KEY and config.MAILJET_SECRET_KEY):
        logger.warning("Mailjet not configured, email to %s skipped", to_email)
        return False
    payload = {
        "Messages": [
            {
                "From": {"Email": config.MAIL_FROM_EMAIL, "Name": config.MAIL_FROM_NAME},
                "To": [{"Email": to_email, "Name": to_name}],
                "Subject": subject,
                "TextPart": text_body,
                "HTMLPart": html_body,
            }
        ]
    }
    try:
        response = httpx.post(
            MAILJET_SEND_URL,
            json=payload,
            auth=(config.MAILJET_API_KEY, config.MAILJET_SECRET_KEY),
            timeout=config.PROVIDER_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Email to %s failed: %s", to_email, e)
        return False
    logger.info("Email sent to %s: %s", to_email, subject)
    return True


def send_sms(phone: str, body: str) -> bool:
    if not (config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_PHONE_NUMBER):
        logger.warning("Twilio not configured, SMS to %s skipped", phone)
        return False
    try:
        response = httpx.post(
            TWILIO_MESSAGES_URL.format(sid=config.TWILIO_ACCOUNT_SID),
            data={"From": config.TWILIO_PHONE_NUMBER, "To": phone, "Body": body},
            auth=(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN),
            timeout=config.PROVIDER_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("SMS to %s failed: %s", phone, e)
        return False
    return True


def send_whatsapp(phone: str, body: str) -> bool:
    if not (config.WHATSAPP_API_URL and config.WHATSAPP_API_TOKEN):
        logger.warning("WhatsApp not configured, message to %s skipped", phone)
        return False
    try:
        response = httpx.post(
            f"{config.WHATSAPP_API_URL}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": re.sub(r"\D", "", phone),
                "type": "text",
                "text": {"body": body},
            },
            headers={"Authorization": f"Bearer {config.WHATSAPP_API_TOKEN}"},
            timeout=config.PROVIDER_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("WhatsApp to %s failed: %s", phone, e)
        return False
    return True


def format_phone_number(phone: str, country_code: Optional[str] = None) -> str:
    code = (country_code or config.DEFAULT_COUNTRY_CODE).lstrip("+")
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("00"):
        digits = digits[2:]
    elif not digits.startswith(code):
        digits = code + digits.lstrip("0")
    return "+" + digits


# ----- Fan-out -----

def _guarded(job: Callable[[], bool]) -> bool:
    try:
        return bool(job())
    except Exception:
        logger.exception("Notification job failed")
        return False


def run_bounded(jobs: List[Callable[[], bool]]) -> List[bool]:
    """Run send jobs with at most NOTIFY_MAX_WORKERS in flight; one result per job."""
    if not jobs:
        return []
    workers = max(1, min(config.NOTIFY_MAX_WORKERS, len(jobs)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_guarded, jobs))


def dispatch_emails(messages: List[EmailMessage]) -> int:
    """Background entry point. Returns the number of emails accepted by the provider."""
    jobs = [
        (lambda m=m: send_email(m.recipient.email, m.recipient.name, m.subject, m.html, m.text))
        for m in messages
    ]
    sent = sum(run_bounded(jobs))
    if messages:
        logger.info("Dispatched %d/%d emails", sent, len(messages))
    return sent


# ----- Recipients -----

def responsible_recipients(db: Session, project: Optional[Project], exclude_user_id: Optional[str] = None) -> List[Recipient]:
    """Project manager and every admin, deduplicated by id and email, without the actor."""
    candidates: List[User] = []
    if project is not None and project.manager is not None:
        candidates.append(project.manager)
    candidates.extend(
        db.scalars(select(User).where(func.upper(User.role) == "ADMIN", User.is_active.is_(True))).all()
    )
    seen_ids, seen_emails = set(), set()
    out = []
    for user in candidates:
        email = (user.email or "").lower()
        if user.id == exclude_user_id or user.id in seen_ids or not email or email in seen_emails:
            continue
        seen_ids.add(user.id)
        seen_emails.add(email)
        out.append(Recipient.from_user(user))
    return out


def filter_by_preference(db: Session, recipients: Iterable[Recipient], field: str) -> List[Recipient]:
    recipients = list(recipients)
    if not recipients:
        return []
    rows = db.scalars(
        select(NotificationPreference).where(NotificationPreference.user_id.in_([r.id for r in recipients]))
    ).all()
    prefs = {p.user_id: getattr(p, field) for p in rows}
    default = PREFERENCE_DEFAULTS[field]
    return [r for r in recipients if prefs.get(r.id, default)]


def notify_in_app(db: Session, user_ids: Iterable[str], type: NotificationType, title: str, body: str, data: Optional[Dict[str, Any]] = None):
    for user_id in dict.fromkeys(user_ids):
        db.add(Notification(user_id=user_id, type=type.value, title=title, body=body, data=data or {}))


# ----- Templates -----

def _layout(title: str, paragraphs: List[str], links: Optional[Dict[str, str]] = None) -> str:
    parts = [f"<h2>{html.escape(title)}</h2>"]
    parts.extend(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    for label, url in (links or {}).items():
        parts.append(f'<p><a href="{html.escape(url, quote=True)}">{html.escape(label)}</a></p>')
    return "\n".join(parts)


def _due(task: Task) -> str:
    return task.due_date.isoformat() if task.due_date else "no due date"


def task_assigned_email(recipient: Recipient, task: Task, assigner_name: str, accept_url: str, reject_url: str) -> EmailMessage:
    project_title = task.project.title if task.project else ""
    lines = [
        f"Hello {recipient.name},",
        f"{assigner_name} assigned you the task \"{task.title}\" in project \"{project_title}\".",
        f"Priority: {task.priority}. Due: {_due(task)}.",
    ]
    return EmailMessage(
        recipient=recipient,
        subject=f"New task: {task.title}",
        html=_layout("New task assigned", lines, {"Accept the task": accept_url, "Refuse the task": reject_url}),
        text="\n".join(lines + [f"Accept: {accept_url}", f"Refuse: {reject_url}"]),
    )


def task_decision_email(recipient: Recipient, task: Task, actor_name: str, accepted: bool, reason: Optional[str] = None) -> EmailMessage:
    verb = "accepted" if accepted else "refused"
    project_title = task.project.title if task.project else ""
    lines = [f"{actor_name} {verb} the task \"{task.title}\" in project \"{project_title}\"."]
    if reason:
        lines.append(f"Reason: {reason}")
    return EmailMessage(
        recipient=recipient,
        subject=f"Task {verb}: {task.title}",
        html=_layout(f"Task {verb}", lines, {"Open the task": f"{config.FRONTEND_URL}/tasks/{task.id}"}),
        text="\n".join(lines),
    )


def stage_completed_email(recipient: Recipient, stage: Stage, actor_name: str) -> EmailMessage:
    project_title = stage.project.title if stage.project else ""
    lines = [f"{actor_name} completed the stage \"{stage.name}\" of project \"{project_title}\"."]
    return EmailMessage(
        recipient=recipient,
        subject=f"Stage completed: {stage.name}",
        html=_layout("Stage completed", lines, {"Open the project": f"{config.FRONTEND_URL}/projects/{stage.project_id}"}),
        text="\n".join(lines),
    )


REMINDER_LABELS = {"today": "is due today", "tomorrow": "is due tomorrow", "in_2_days": "is due in 2 days"}


def reminder_text(task: Task, reminder_type: str) -> str:
    return f"Reminder: the task \"{task.title}\" {REMINDER_LABELS[reminder_type]} ({_due(task)})."


def reminder_email(recipient: Recipient, task: Task, reminder_type: str) -> EmailMessage:
    line = reminder_text(task, reminder_type)
    return EmailMessage(
        recipient=recipient,
        subject=f"Reminder: {task.title}",
        html=_layout("Task reminder", [f"Hello {recipient.name},", line], {"Open the task": f"{config.FRONTEND_URL}/tasks/{task.id}"}),
        text=line,
    )
