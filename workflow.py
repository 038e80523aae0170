"""
Assignee decisions on a task: accept, reject or refuse.

Only assignees may decide, and each assignee decides once. The
(task_id, user_id) unique constraint on task_responses is what settles a race
between two concurrent decisions; the SELECT beforehand only gives a nicer
error on the common path.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
import confirmations
from activity import log_activity
from database import transaction
from errors import ConflictError, Forbidden, NotFoundError, ValidationError
from models import Task, TaskResponse, User
from notifications import (
    EmailMessage,
    NotificationType,
    filter_by_preference,
    notify_in_app,
    responsible_recipients,
    task_decision_email,
)

logger = logging.getLogger("workflow")

ACCEPTED = "accepted"
REJECTED = "rejected"
CLOSED_STATUSES = ("COMPLETED", "CANCELLED")


@dataclass
class Decision:
    task: Task
    response: TaskResponse
    emails: List[EmailMessage] = field(default_factory=list)


def load_task(db: Session, task_id: str) -> Task:
    task = db.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    return task


def ensure_assignee(task: Task, user_id: str):
    if not task.is_assignee(user_id):
        raise Forbidden("You are not assigned to this task")


def find_response(db: Session, task_id: str, user_id: str) -> Optional[TaskResponse]:
    return db.scalar(
        select(TaskResponse).where(TaskResponse.task_id == task_id, TaskResponse.user_id == user_id)
    )


def _already_responded(prior: Optional[TaskResponse]) -> ConflictError:
    return ConflictError(
        "You have already responded to this task",
        existing_response=prior.response if prior else None,
    )


def record_decision(
    db: Session,
    task: Task,
    actor: User,
    accepted: bool,
    reason: Optional[str] = None,
    action: Optional[str] = None,
) -> Decision:
    ensure_assignee(task, actor.id)
    if not accepted and not (reason or "").strip():
        raise ValidationError("A reason is required to refuse a task")
    prior = find_response(db, task.id, actor.id)
    if prior is not None:
        raise _already_responded(prior)
    if task.status in CLOSED_STATUSES:
        raise ValidationError(f"Task is already {task.status.lower()}")

    action = action or ("accept_task" if accepted else "reject_task")
    verb = "accepted" if accepted else "refused"
    try:
        with transaction(db):
            response = TaskResponse(
                task_id=task.id,
                user_id=actor.id,
                response=ACCEPTED if accepted else REJECTED,
                reason=None if accepted else reason.strip(),
            )
            db.add(response)
            db.flush()
            if accepted:
                task.status = "IN_PROGRESS"
            else:
                task.status = "REFUSED"
                task.refusal_reason = reason.strip()
            log_activity(
                db,
                actor.id,
                action,
                "task",
                task.id,
                details=f"{actor.name} {verb} task \"{task.title}\"",
                metadata={"response": response.response, "reason": response.reason},
            )
            recipients = responsible_recipients(db, task.project, exclude_user_id=actor.id)
            notify_in_app(
                db,
                [r.id for r in recipients],
                NotificationType.TASK_ACCEPTED if accepted else NotificationType.TASK_REFUSED,
                f"Task {verb}",
                f"{actor.name} {verb} \"{task.title}\"",
                {"task_id": task.id, "project_id": task.project_id},
            )
            emails = [
                task_decision_email(r, task, actor.name, accepted, response.reason)
                for r in filter_by_preference(db, recipients, "email_task_updated")
            ]
    except IntegrityError:
        logger.info("Concurrent response on task %s by %s", task.id, actor.id)
        raise _already_responded(find_response(db, task.id, actor.id))
    return Decision(task=task, response=response, emails=emails)


# ----- Email links -----

def _redirect(**params) -> str:
    return f"{config.FRONTEND_URL}/redirect?{urlencode(params)}"


def reject_link_target(db: Session, task_id: str, token: Optional[str]) -> str:
    """Validate and burn a reject-link token; return where the browser should go."""
    try:
        confirmation = confirmations.resolve_token(db, token, "task", task_id)
        with transaction(db):
            confirmations.consume_token(db, confirmation)
    except confirmations.TokenError as e:
        logger.info("Reject link refused for task %s: %s", task_id, e.code)
        return _redirect(error=e.code)
    return _redirect(
        reject_task="true",
        taskId=task_id,
        message="Please give a reason for refusing this task",
    )


def accept_link_target(db: Session, task_id: str, token: Optional[str]) -> Decision:
    """Validate an accept-link token and record the acceptance for its owner.

    Raises ``TokenError`` for an unusable token; workflow errors propagate.
    """
    confirmation = confirmations.resolve_token(db, token, "task", task_id)
    task = load_task(db, task_id)
    actor = db.get(User, confirmation.user_id)
    if actor is None:
        raise confirmations.TokenError("invalid_token")
    confirmations.consume_token(db, confirmation)
    return record_decision(db, task, actor, accepted=True)


def accept_link_redirect(task_id: str) -> str:
    return _redirect(accepted_task="true", taskId=task_id)


def error_redirect(code: str) -> str:
    return _redirect(error=code)
