from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Tenant, User, utc_now
from services.errors import Unauthorized, ValidationError
from services.tenant_context import TenantContext, normalize_role


SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS") or str(60 * 60 * 12))
MIN_PASSWORD_LENGTH = 8

_LOCK = threading.Lock()
_REVOKED: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _revoked_store_path() -> Path | None:
    raw = (os.environ.get("SESSION_REVOKED_PATH") or "").strip()
    return Path(raw) if raw else None


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def set_password(user: User, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = _password_hash(trimmed, salt)
    user.PasswordUpdatedAt = int(time.time())


def verify_password(user: User, password: str) -> bool:
    candidate = (password or "").strip()
    if not candidate or not user.PasswordHash or not user.PasswordSalt:
        return False
    return hmac.compare_digest(_password_hash(candidate, user.PasswordSalt), user.PasswordHash)


def authenticate(db: Session, tenant_slug: str, email: str, password: str) -> User:
    """Resolve tenant + email + password to an active user, or raise Unauthorized.

    The same message is used for every failure: unknown tenant, unknown user, inactive user or wrong password.
    """
    slug = (tenant_slug or "").strip().lower()
    address = (email or "").strip().lower()
    user = db.execute(
        select(User)
        .join(Tenant, Tenant.TenantID == User.TenantID)
        .where(Tenant.Slug == slug)
        .where(func.lower(User.Email) == address)
    ).scalars().first()
    if not user or not user.IsActive or not verify_password(user, password):
        raise Unauthorized("Invalid tenant, email or password.")
    user.LastLogin = utc_now()
    db.commit()
    return user


def _encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def create_session(user: User) -> str:
    expires_at = time.time() + SESSION_TTL_SECONDS
    session_payload = {
        "tenantID": user.TenantID,
        "userID": user.UserID,
        "role": user.Role,
        "sid": secrets.token_hex(8),
        "expiresAt": expires_at,
    }
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_encode(signature)}"


def _load_revoked_unlocked() -> dict[str, float]:
    path = _revoked_store_path()
    if path is None or not path.exists():
        return _REVOKED
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return _REVOKED
    if isinstance(payload, dict):
        for token, expires_at in payload.items():
            try:
                _REVOKED[str(token)] = float(expires_at)
            except (TypeError, ValueError):
                continue
    return _REVOKED


def _save_revoked_unlocked() -> None:
    path = _revoked_store_path()
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(_REVOKED, ensure_ascii=True, indent=2), encoding="utf-8")


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _decode(encoded_sig)):
            return None
        decoded_session = json.loads(_decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    if now >= expires_at:
        return None

    with _LOCK:
        revoked = _load_revoked_unlocked()
        expired = [key for key, revoked_exp in revoked.items() if now >= revoked_exp]
        for key in expired:
            revoked.pop(key, None)
        if expired:
            _save_revoked_unlocked()
        if token in revoked:
            return None
    return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    with _LOCK:
        now = time.time()
        revoked = _load_revoked_unlocked()
        try:
            decoded = json.loads(_decode(token.split(".", 1)[0]).decode("utf-8"))
            expires_at = float(decoded.get("expiresAt") or 0.0)
        except (ValueError, UnicodeError, AttributeError):
            expires_at = now + SESSION_TTL_SECONDS
        if expires_at <= now:
            return
        revoked[token] = expires_at
        _save_revoked_unlocked()


def context_from_session(db: Session, session: dict[str, Any], request_id: str | None = None) -> TenantContext:
    """Build the acting context from a verified session, re-reading role and status from the database."""
    try:
        user_id = int(session.get("userID"))
        tenant_id = int(session.get("tenantID"))
    except (TypeError, ValueError):
        raise Unauthorized("Session is malformed.")
    user = db.get(User, user_id)
    if not user or user.TenantID != tenant_id or not user.IsActive:
        raise Unauthorized("Session user is no longer active.")
    return TenantContext(
        tenant_id=tenant_id,
        user_id=user.UserID,
        role=normalize_role(user.Role),
        request_id=request_id,
    )


def serialize_user(user: User) -> dict:
    return {
        "userID": user.UserID,
        "tenantID": user.TenantID,
        "email": user.Email,
        "fullName": user.FullName,
        "department": user.Department,
        "role": user.Role,
        "isActive": bool(user.IsActive),
        "hasPassword": bool(user.PasswordHash),
        "lastLogin": user.LastLogin,
        "createdDate": user.CreatedDate,
    }
