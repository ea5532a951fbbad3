"""
Sessions

A `Session` is the explicit per-request context: who is calling and with
which role. It is created at sign-in, rotated on refresh and torn down at
sign-out. Handlers receive it through the `current_session` /
`seller_session` dependencies.
"""
import os
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Header, HTTPException

from database import db, now_utc

logger = logging.getLogger(__name__)

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))


@dataclass
class Session:
    user_id: str
    email: str
    name: str
    role: str
    token: str
    expires_at: datetime

    @property
    def is_seller(self) -> bool:
        return self.role == "seller"

    def public(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "token": self.token,
            "expires_at": self.expires_at.isoformat(),
            "navigator": navigator_for(self),
        }


def navigator_for(session: Optional[Session]) -> str:
    if session is None:
        return "auth"
    return "seller" if session.role == "seller" else "buyer"


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def open_session(profile: dict) -> Session:
    token = secrets.token_urlsafe(32)
    expires_at = now_utc() + timedelta(hours=SESSION_TTL_HOURS)
    db["session"].insert_one({
        "user_id": str(profile["_id"]),
        "token": token,
        "expires_at": expires_at,
        "created_at": now_utc(),
    })
    return Session(
        user_id=str(profile["_id"]),
        email=profile.get("email"),
        name=profile.get("name", ""),
        role=profile.get("role", "buyer"),
        token=token,
        expires_at=expires_at,
    )


def resolve_session(token: str) -> Session:
    row = db["session"].find_one({"token": token})
    if not row:
        raise HTTPException(401, "Invalid or expired session")
    if _aware(row["expires_at"]) < now_utc():
        db["session"].delete_one({"_id": row["_id"]})
        raise HTTPException(401, "Invalid or expired session")
    profile = db["profile"].find_one({"_id": ObjectId(row["user_id"])})
    if not profile:
        raise HTTPException(401, "Account no longer exists")
    return Session(
        user_id=row["user_id"],
        email=profile.get("email"),
        name=profile.get("name", ""),
        role=profile.get("role", "buyer"),
        token=token,
        expires_at=_aware(row["expires_at"]),
    )


def refresh_session(session: Session) -> Session:
    """Rotate the token and pick up role changes made since sign-in."""
    db["session"].delete_one({"token": session.token})
    profile = db["profile"].find_one({"_id": ObjectId(session.user_id)})
    if not profile:
        raise HTTPException(401, "Account no longer exists")
    return open_session(profile)


def close_session(session: Session):
    db["session"].delete_one({"token": session.token})
    logger.info("Signed out user %s", session.user_id)


def current_session(authorization: str = Header(None)) -> Session:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(401, "Not signed in")
    return resolve_session(authorization[7:].strip())


def seller_session(authorization: str = Header(None)) -> Session:
    session = current_session(authorization)
    if not session.is_seller:
        raise HTTPException(403, "Seller account required")
    return session
