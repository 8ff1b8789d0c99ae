from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.rental_models import Tenant, TenantSequence
from services.errors import Forbidden, NotFound, ValidationError


ROLE_RANK = {
    "student": 1,
    "faculty": 2,
    "manager": 3,
    "admin": 4,
}
SYSTEM_ACTOR = "system"

DEFAULT_TENANT_SETTINGS: dict[str, Any] = {
    "skipApproval": False,
    "graceMinutes": 15,
    "availabilityDependencyTypes": ["required"],
    "maxReservationDays": 30,
    "holdPendingReservations": False,
}
DEPENDENCY_TYPES = ("required", "optional", "recommended")


@dataclass(frozen=True)
class TenantContext:
    """Who is acting, and for which tenant. Passed explicitly into every service call."""

    tenant_id: int
    user_id: int | None
    role: str
    request_id: str | None = None

    @classmethod
    def system(cls, tenant_id: int, request_id: str | None = None) -> "TenantContext":
        return cls(tenant_id=tenant_id, user_id=None, role="admin", request_id=request_id)

    @property
    def is_system(self) -> bool:
        return self.user_id is None

    @property
    def actor_ref(self) -> str:
        return SYSTEM_ACTOR if self.user_id is None else f"user:{self.user_id}"

    def has_role(self, minimum: str) -> bool:
        return role_at_least(self.role, minimum)


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role not in ROLE_RANK:
        raise ValidationError(f"Unknown role: {raw_role}", {"allowedRoles": list(ROLE_RANK)})
    return role


def role_at_least(role: str | None, minimum: str) -> bool:
    return ROLE_RANK.get((role or "").lower(), 0) >= ROLE_RANK[minimum]


def require_role(ctx: TenantContext, minimum: str) -> None:
    if not ctx.has_role(minimum):
        raise Forbidden(
            f"Role {minimum} or higher required.",
            {"requiredRole": minimum, "actualRole": ctx.role},
        )


def require_tenant_access(ctx: TenantContext, tenant_id: int) -> None:
    if int(ctx.tenant_id) != int(tenant_id):
        raise Forbidden("Access to this tenant is not allowed.", {"tenantID": tenant_id})


def _from_json_dict(value: Any) -> dict[str, Any]:
    if value in (None, ""):
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(str(value))
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def get_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise NotFound("Tenant not found.", {"tenantID": tenant_id})
    return tenant


def get_tenant_settings(db: Session, tenant_id: int) -> dict[str, Any]:
    tenant = get_tenant(db, tenant_id)
    settings = dict(DEFAULT_TENANT_SETTINGS)
    settings.update(_from_json_dict(tenant.Settings))
    return settings


def _bump_sequence(db: Session, tenant_id: int, name: str) -> int | None:
    bumped = db.execute(
        update(TenantSequence)
        .where(TenantSequence.TenantID == tenant_id)
        .where(TenantSequence.SequenceName == name)
        .values(LastValue=TenantSequence.LastValue + 1)
    )
    if bumped.rowcount == 0:
        return None
    return int(
        db.execute(
            select(TenantSequence.LastValue)
            .where(TenantSequence.TenantID == tenant_id)
            .where(TenantSequence.SequenceName == name)
        ).scalar_one()
    )


def next_tenant_sequence(db: Session, tenant_id: int, name: str) -> int:
    """Strictly increasing per-tenant counter, allocated in the caller's transaction."""
    # Single UPDATE so the increment is atomic under row locking on every backend.
    value = _bump_sequence(db, tenant_id, name)
    if value is not None:
        return value
    try:
        with db.begin_nested():
            db.add(TenantSequence(TenantID=tenant_id, SequenceName=name, LastValue=1))
        return 1
    except IntegrityError:
        # A concurrent transaction created the counter first; increment that row instead.
        value = _bump_sequence(db, tenant_id, name)
        if value is None:
            raise
        return value


def seed_tenant_sequences(db: Session, tenant_id: int, names) -> None:
    """Create zeroed counters up front so first allocations never race on the insert."""
    existing = set(
        db.execute(
            select(TenantSequence.SequenceName).where(TenantSequence.TenantID == tenant_id)
        ).scalars().all()
    )
    for name in names:
        if name not in existing:
            db.add(TenantSequence(TenantID=tenant_id, SequenceName=name, LastValue=0))
    db.flush()
