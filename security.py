"""
Password hashing, session tokens and the ``get_current_user`` dependency.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

import config
from database import get_db
from errors import Unauthorized
from models import User
from permissions import map_role

logger = logging.getLogger("security")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: str
    name: str
    email: str
    db_role: str
    role: str  # normalized: admin | manager | employee

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return generate_password_hash(password)


@lru_cache(maxsize=1)
def _decoy_hash() -> str:
    return generate_password_hash(secrets.token_hex(16))


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        # same hashing cost as a real check, so unknown accounts are not faster
        check_password_hash(_decoy_hash(), password or "")
        return False
    return check_password_hash(password_hash, password)


def create_access_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(hours=config.TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info("Rejected token: %s", e)
        raise Unauthorized("Invalid or expired token")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized()
    claims = decode_access_token(credentials.credentials)
    user = db.get(User, claims.get("sub"))
    if user is None or not user.is_active:
        raise Unauthorized()
    return CurrentUser(
        id=user.id,
        name=user.name,
        email=user.email,
        db_role=user.role,
        role=map_role(user.role),
    )
