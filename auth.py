"""
Accounts and sessions.

Passwords are stored as salted SHA-256 hashes. A login issues an opaque token
kept under ``sessions/{token}``; every authenticated request resolves the token
back to the user record, so approval and rank are always read from the store.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
from database import TreeStore
from errors import Conflict, Forbidden, NotAuthenticated, NotFound, ValidationFailed
from schemas import USERNAME_PATTERN, PasswordChange, UserCreate, UserPublic

logger = logging.getLogger(__name__)

MIN_NEW_PASSWORD_LENGTH = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return hmac.compare_digest(h, expected_hash)


def public_user(user_id: str, record: dict) -> UserPublic:
    return UserPublic(
        id=user_id,
        email=record.get("email", ""),
        approved=bool(record.get("approved")),
        points=int(record.get("points", 0)),
        rank=record.get("rank", "member"),
    )


@dataclass
class Session:
    token: str
    user_id: str
    user: dict
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.user.get("rank") == "admin"

    @property
    def approved(self) -> bool:
        return bool(self.user.get("approved"))

    @property
    def email(self) -> str:
        return self.user.get("email", "")


def register_user(store: TreeStore, payload: UserCreate) -> UserPublic:
    if payload.password != payload.confirm_password:
        raise ValidationFailed("Passwords do not match")
    if store.get(f"users/{payload.username}") is not None:
        raise Conflict("Username already taken")
    pw_hash, salt = hash_password(payload.password)
    record = {
        "email": payload.email,
        "password_hash": pw_hash,
        "salt": salt,
        "approved": False,
        "points": 0,
        "rank": "member",
        "created_at": utcnow().isoformat(),
    }
    store.set(f"users/{payload.username}", record)
    logger.info("Registered user %s (awaiting approval)", payload.username)
    return public_user(payload.username, record)


def login_user(store: TreeStore, username: str, password: str) -> Session:
    record = store.get(f"users/{username}") if re.match(USERNAME_PATTERN, username or "") else None
    if not isinstance(record, dict):
        raise NotAuthenticated("User not found")
    if not verify_password(password, record.get("salt", ""), record.get("password_hash", "")):
        raise NotAuthenticated("Wrong password")
    if not record.get("approved"):
        raise Forbidden("Account has not been approved by an administrator yet")
    token = secrets.token_urlsafe(32)
    expires = utcnow() + timedelta(hours=config.SESSION_TTL_HOURS)
    store.set(f"sessions/{token}", {"userId": username, "expiresAt": expires.isoformat()})
    logger.info("User %s logged in", username)
    return Session(token=token, user_id=username, user=record, expires_at=expires)


def logout(store: TreeStore, token: str) -> None:
    store.remove(f"sessions/{token}")


def resolve_session(store: TreeStore, token: str) -> Session:
    """Look up a bearer token. Expired sessions are deleted on sight."""
    if not token or "/" in token or "." in token or token.startswith("$"):
        raise NotAuthenticated("Invalid or expired token")
    data = store.get(f"sessions/{token}")
    if not isinstance(data, dict):
        raise NotAuthenticated("Invalid or expired token")
    try:
        expires = datetime.fromisoformat(data["expiresAt"])
    except (KeyError, TypeError, ValueError):
        store.remove(f"sessions/{token}")
        raise NotAuthenticated("Invalid or expired token")
    if expires <= utcnow():
        store.remove(f"sessions/{token}")
        raise NotAuthenticated("Invalid or expired token")
    user = store.get(f"users/{data.get('userId')}")
    if not isinstance(user, dict):
        # account deleted while logged in
        store.remove(f"sessions/{token}")
        raise NotAuthenticated("Invalid or expired token")
    return Session(token=token, user_id=data["userId"], user=user, expires_at=expires)


def change_password(store: TreeStore, session: Session, payload: PasswordChange) -> None:
    if not verify_password(payload.old_password, session.user.get("salt", ""), session.user.get("password_hash", "")):
        raise ValidationFailed("Current password is incorrect")
    if payload.new_password != payload.confirm_password:
        raise ValidationFailed("New passwords do not match")
    if len(payload.new_password) < MIN_NEW_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_NEW_PASSWORD_LENGTH} characters")
    pw_hash, salt = hash_password(payload.new_password)
    store.update(f"users/{session.user_id}", {"password_hash": pw_hash, "salt": salt})


def approve_user(store: TreeStore, user_id: str) -> UserPublic:
    record = store.get(f"users/{user_id}")
    if not isinstance(record, dict):
        raise NotFound("User not found")
    store.update(f"users/{user_id}", {"approved": True})
    record["approved"] = True
    logger.info("User %s approved", user_id)
    return public_user(user_id, record)


def delete_user(store: TreeStore, user_id: str) -> None:
    if store.get(f"users/{user_id}") is None:
        raise NotFound("User not found")
    store.remove(f"users/{user_id}")
    store.remove(f"carts/{user_id}")
    logger.info("User %s deleted", user_id)


def ensure_admin(store: TreeStore, username: str, password: str, email: str) -> bool:
    """Create an approved admin account if it does not exist. Returns True when created."""
    if store.get(f"users/{username}") is not None:
        return False
    pw_hash, salt = hash_password(password)
    store.set(f"users/{username}", {
        "email": email,
        "password_hash": pw_hash,
        "salt": salt,
        "approved": True,
        "points": 0,
        "rank": "admin",
        "created_at": utcnow().isoformat(),
    })
    logger.info("Created admin account %s", username)
    return True
