from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.rental_models import Tenant, User, utc_now
from schemas.tenants import TenantSettingsUpdate, UserCreate, UserUpdate
from services.audit_trail import AUDIT_SEQUENCE, audit_failures, record_audit, rewrite_actor
from services.errors import NotFound, ValidationError
from services.rental_service import RESERVATION_SEQUENCE
from services.tenant_context import (
    DEFAULT_TENANT_SETTINGS,
    DEPENDENCY_TYPES,
    ROLE_RANK,
    TenantContext,
    get_tenant,
    get_tenant_settings,
    normalize_role,
    require_role,
    seed_tenant_sequences,
)
from services.user_access_service import serialize_user, set_password


DIRECTORY_LOGGER = logging.getLogger("equipment_rental.directory")
ERASED_NAME = "Erased user"


def _normalize_email(raw: str | None) -> str:
    email = (raw or "").strip().lower()
    if "@" not in email or len(email) > 255:
        raise ValidationError("A valid email address is required.", {"email": raw})
    return email


def _assert_can_grant(ctx: TenantContext, role: str) -> None:
    if not ctx.is_system and ROLE_RANK[role] > ROLE_RANK.get(ctx.role, 0):
        raise ValidationError(
            "Cannot assign a role above your own.",
            {"requestedRole": role, "actualRole": ctx.role},
        )


def _email_taken(db: Session, tenant_id: int, email: str, exclude_user_id: int | None = None) -> bool:
    stmt = select(User.UserID).where(User.TenantID == tenant_id).where(func.lower(User.Email) == email)
    if exclude_user_id is not None:
        stmt = stmt.where(User.UserID != exclude_user_id)
    return db.execute(stmt).first() is not None


def get_user(db: Session, tenant_id: int, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user or user.TenantID != tenant_id:
        raise NotFound("User not found.", {"userID": user_id})
    return user


def list_users(db: Session, ctx: TenantContext, include_inactive: bool = True) -> list[User]:
    require_role(ctx, "manager")
    stmt = select(User).where(User.TenantID == ctx.tenant_id)
    if not include_inactive:
        stmt = stmt.where(User.IsActive.is_(True))
    return list(db.execute(stmt.order_by(User.FullName, User.UserID)).scalars().all())


def create_user(db: Session, ctx: TenantContext, payload: UserCreate) -> User:
    with audit_failures(db, ctx, action="create_user", entity_type="User"):
        require_role(ctx, "admin")
        email = _normalize_email(payload.email)
        full_name = (payload.fullName or "").strip()
        if not full_name:
            raise ValidationError("fullName is required.")
        role = normalize_role(payload.role)
        _assert_can_grant(ctx, role)
        if _email_taken(db, ctx.tenant_id, email):
            raise ValidationError("A user with this email already exists.", {"email": email})

        now = utc_now()
        user = User(
            TenantID=ctx.tenant_id,
            Email=email,
            FullName=full_name,
            Department=(payload.department or "").strip() or None,
            Role=role,
            IsActive=True,
            CreatedDate=now,
            UpdatedDate=now,
        )
        if payload.password:
            set_password(user, payload.password)
        db.add(user)
        db.flush()
        record_audit(
            db,
            ctx,
            action="create_user",
            entity_type="User",
            entity_id=user.UserID,
            after={"role": role, "isActive": True},
        )
        db.commit()
    DIRECTORY_LOGGER.info("User %s created in tenant %s with role %s", user.UserID, ctx.tenant_id, role)
    return user


def update_user(db: Session, ctx: TenantContext, user_id: int, payload: UserUpdate) -> User:
    with audit_failures(db, ctx, action="update_user", entity_type="User", entity_id=user_id):
        require_role(ctx, "admin")
        user = get_user(db, ctx.tenant_id, user_id)
        before = {"role": user.Role, "isActive": bool(user.IsActive)}

        if payload.role is not None:
            role = normalize_role(payload.role)
            _assert_can_grant(ctx, role)
            user.Role = role
        if payload.isActive is not None:
            if not payload.isActive and user.UserID == ctx.user_id:
                raise ValidationError("You cannot deactivate your own account.")
            user.IsActive = bool(payload.isActive)
        if payload.fullName is not None:
            full_name = payload.fullName.strip()
            if not full_name:
                raise ValidationError("fullName cannot be empty.")
            user.FullName = full_name
        if payload.department is not None:
            user.Department = payload.department.strip() or None
        if payload.password:
            set_password(user, payload.password)
        user.UpdatedDate = utc_now()
        record_audit(
            db,
            ctx,
            action="update_user",
            entity_type="User",
            entity_id=user.UserID,
            before=before,
            after={
                "role": user.Role,
                "isActive": bool(user.IsActive),
                "passwordChanged": bool(payload.password),
            },
        )
        db.commit()
    return user


def erase_user(db: Session, ctx: TenantContext, user_id: int) -> dict[str, Any]:
    """Scrub a user's personal data, deactivate the account and anonymize their audit trail."""
    with audit_failures(db, ctx, action="erase", entity_type="User", entity_id=user_id):
        require_role(ctx, "admin")
        user = get_user(db, ctx.tenant_id, user_id)
        if user.UserID == ctx.user_id:
            raise ValidationError("You cannot erase your own account.")
        user.Email = f"erased-{user.UserID}@invalid"
        user.FullName = ERASED_NAME
        user.Department = None
        user.PasswordHash = None
        user.PasswordSalt = None
        user.PasswordUpdatedAt = None
        user.IsActive = False
        user.UpdatedDate = utc_now()
        record_audit(db, ctx, action="erase", entity_type="User", entity_id=user.UserID)
        rewritten = rewrite_actor(db, ctx, user.UserID)
        db.commit()

    DIRECTORY_LOGGER.info("Erased user %s in tenant %s", user_id, ctx.tenant_id)
    return {"user": serialize_user(user), "rewrittenEntries": rewritten}


def _normalize_settings(payload: TenantSettingsUpdate) -> dict[str, Any]:
    changes = payload.model_dump(exclude_none=True)
    types = changes.get("availabilityDependencyTypes")
    if types is not None:
        normalized = []
        for value in types:
            item = str(value or "").strip().lower()
            if item not in DEPENDENCY_TYPES:
                raise ValidationError(f"Unknown dependency type: {value}", {"allowed": list(DEPENDENCY_TYPES)})
            if item not in normalized:
                normalized.append(item)
        changes["availabilityDependencyTypes"] = normalized
    for flag in ("skipApproval", "holdPendingReservations"):
        if flag in changes:
            changes[flag] = bool(changes[flag])
    return changes


def validate_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Parse a raw settings mapping (CLI or JSON) into normalized setting changes."""
    try:
        payload = TenantSettingsUpdate.model_validate(raw or {})
    except SchemaValidationError as exc:
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        raise ValidationError("Invalid tenant settings.", {"errors": errors}) from exc
    return _normalize_settings(payload)


def update_tenant_settings(db: Session, ctx: TenantContext, payload: TenantSettingsUpdate) -> dict[str, Any]:
    with audit_failures(db, ctx, action="update_settings", entity_type="Tenant", entity_id=ctx.tenant_id):
        require_role(ctx, "admin")
        tenant = get_tenant(db, ctx.tenant_id)
        before = get_tenant_settings(db, ctx.tenant_id)
        after = dict(before)
        after.update(_normalize_settings(payload))
        tenant.Settings = json.dumps(after, ensure_ascii=True, sort_keys=True)
        tenant.UpdatedDate = utc_now()
        record_audit(
            db,
            ctx,
            action="update_settings",
            entity_type="Tenant",
            entity_id=tenant.TenantID,
            before=before,
            after=after,
        )
        db.commit()
    return after


def bootstrap_tenant(
    db: Session,
    *,
    slug: str,
    name: str,
    admin_email: str,
    admin_name: str,
    admin_password: str,
    settings: dict[str, Any] | None = None,
) -> tuple[Tenant, User]:
    """Create a tenant with its first admin. Existing tenants are reused, existing admins get a new password."""
    normalized_slug = (slug or "").strip().lower()
    if not normalized_slug:
        raise ValidationError("Tenant slug is required.")
    email = _normalize_email(admin_email)
    changes = validate_settings(settings)

    tenant = db.execute(select(Tenant).where(Tenant.Slug == normalized_slug)).scalars().first()
    if tenant is None:
        merged = dict(DEFAULT_TENANT_SETTINGS)
        merged.update(changes)
        tenant = Tenant(
            Slug=normalized_slug,
            Name=(name or normalized_slug).strip(),
            Settings=json.dumps(merged, ensure_ascii=True, sort_keys=True),
        )
        db.add(tenant)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise ValidationError("Tenant slug already in use.", {"slug": normalized_slug}) from exc
    seed_tenant_sequences(db, tenant.TenantID, (AUDIT_SEQUENCE, RESERVATION_SEQUENCE))

    ctx = TenantContext.system(tenant.TenantID)
    user = db.execute(
        select(User).where(User.TenantID == tenant.TenantID).where(func.lower(User.Email) == email)
    ).scalars().first()
    created = user is None
    if created:
        user = User(TenantID=tenant.TenantID, Email=email, FullName=(admin_name or email).strip(), Role="admin")
        db.add(user)
    user.Role = "admin"
    user.IsActive = True
    set_password(user, admin_password)
    db.flush()
    record_audit(
        db,
        ctx,
        action="bootstrap",
        entity_type="Tenant",
        entity_id=tenant.TenantID,
        after={"adminUserID": user.UserID, "adminCreated": created},
    )
    db.commit()
    DIRECTORY_LOGGER.info("Bootstrapped tenant %s (%s) with admin %s", tenant.Slug, tenant.TenantID, user.UserID)
    return tenant, user


def serialize_tenant(tenant: Tenant, settings: dict[str, Any]) -> dict:
    return {
        "tenantID": tenant.TenantID,
        "slug": tenant.Slug,
        "name": tenant.Name,
        "settings": settings,
    }
