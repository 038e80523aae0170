"""
Single-use tokens placed in email links.

A token is bound to one user and one entity (a task for assignment emails). It
is unrelated to the session token and grants nothing beyond the link it was
issued for.
"""
import secrets
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import config
from models import EmailConfirmation, utcnow

TASK_ASSIGNMENT = "TASK_ASSIGNMENT"


class TokenError(Exception):
    """``code`` is passed to the frontend redirect page."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def issue_token(db: Session, user_id: str, entity_type: str, entity_id: str, type: str = TASK_ASSIGNMENT) -> str:
    token = secrets.token_hex(32)
    db.add(
        EmailConfirmation(
            token=token,
            type=type,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            expires_at=utcnow() + timedelta(days=config.CONFIRMATION_TTL_DAYS),
        )
    )
    return token


def resolve_token(db: Session, token: str, entity_type: str, entity_id: str) -> EmailConfirmation:
    if not token:
        raise TokenError("invalid_token")
    confirmation = db.scalar(select(EmailConfirmation).where(EmailConfirmation.token == token))
    if confirmation is None:
        raise TokenError("invalid_token")
    if confirmation.entity_type != entity_type or confirmation.entity_id != entity_id:
        raise TokenError("invalid_task")
    if confirmation.confirmed:
        raise TokenError("token_already_used")
    if confirmation.expires_at < utcnow():
        raise TokenError("token_expired")
    return confirmation


def consume_token(db: Session, confirmation: EmailConfirmation):
    """Mark the token used. Only one concurrent caller can win the update."""
    now = utcnow()
    result = db.execute(
        update(EmailConfirmation)
        .where(EmailConfirmation.id == confirmation.id, EmailConfirmation.confirmed.is_(False))
        .values(confirmed=True, confirmed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise TokenError("token_already_used")
    confirmation.confirmed = True
    confirmation.confirmed_at = now
