"""
Due-date reminder batch.

Run by an external scheduler through ``POST /reminders``. A reminder is
claimed by inserting its (task, type, day) row before anything is sent, so a
second run on the same day finds the row (or trips the unique constraint) and
skips the task.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Task, TaskReminder
from notifications import (
    Recipient,
    filter_by_preference,
    format_phone_number,
    reminder_email,
    reminder_text,
    run_bounded,
    send_email,
    send_sms,
    send_whatsapp,
)

logger = logging.getLogger("reminders")

REMINDER_TYPES: Dict[int, str] = {0: "today", 1: "tomorrow", 2: "in_2_days"}
SKIPPED_STATUSES = ("COMPLETED", "CANCELLED", "REFUSED")


@dataclass
class ReminderStats:
    tasks_processed: int = 0
    reminders_skipped: int = 0
    emails_sent: int = 0
    sms_sent: int = 0
    whatsapp_sent: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "tasksProcessed": self.tasks_processed,
            "remindersSkipped": self.reminders_skipped,
            "emailsSent": self.emails_sent,
            "smsSent": self.sms_sent,
            "whatsappSent": self.whatsapp_sent,
        }


def due_tasks(db: Session, today: date) -> List[Task]:
    return list(
        db.scalars(
            select(Task)
            .where(
                Task.due_date >= today,
                Task.due_date <= today + timedelta(days=max(REMINDER_TYPES)),
                Task.status.not_in(SKIPPED_STATUSES),
            )
            .order_by(Task.due_date)
        ).all()
    )


def claim_reminder(db: Session, task_id: str, reminder_type: str, day: date) -> bool:
    already = db.scalar(
        select(TaskReminder.id).where(
            TaskReminder.task_id == task_id,
            TaskReminder.reminder_type == reminder_type,
            TaskReminder.sent_on == day,
        )
    )
    if already:
        return False
    db.add(TaskReminder(task_id=task_id, reminder_type=reminder_type, sent_on=day))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def process_reminders(db: Session, today: Optional[date] = None) -> ReminderStats:
    today = today or date.today()
    stats = ReminderStats()
    jobs: List[Tuple[str, Callable[[], bool]]] = []

    for task in due_tasks(db, today):
        reminder_type = REMINDER_TYPES[(task.due_date - today).days]
        if not claim_reminder(db, task.id, reminder_type, today):
            stats.reminders_skipped += 1
            continue
        stats.tasks_processed += 1

        assignees = [Recipient.from_user(u) for u in task.assignees if u.is_active]
        wants_email = {r.id for r in filter_by_preference(db, assignees, "email_task_due")}
        text = reminder_text(task, reminder_type)
        for r in assignees:
            if r.id in wants_email:
                msg = reminder_email(r, task, reminder_type)
                jobs.append(("email", lambda m=msg: send_email(m.recipient.email, m.recipient.name, m.subject, m.html, m.text)))
            if r.phone:
                phone = format_phone_number(r.phone)
                jobs.append(("sms", lambda p=phone, t=text: send_sms(p, t)))
                jobs.append(("whatsapp", lambda p=phone, t=text: send_whatsapp(p, t)))

    results = run_bounded([job for _, job in jobs])
    for (channel, _), ok in zip(jobs, results):
        if not ok:
            continue
        if channel == "email":
            stats.emails_sent += 1
        elif channel == "sms":
            stats.sms_sent += 1
        else:
            stats.whatsapp_sent += 1

    logger.info(
        "Reminders: %d tasks, %d skipped, %d emails, %d SMS, %d WhatsApp",
        stats.tasks_processed,
        stats.reminders_skipped,
        stats.emails_sent,
        stats.sms_sent,
        stats.whatsapp_sent,
    )
    return stats
