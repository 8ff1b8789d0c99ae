from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.rental_models import AuditLog, utc_now
from services.errors import RentalError
from services.tenant_context import TenantContext, next_tenant_sequence, require_role


ANONYMOUS_ACTOR = "anonymous"
AUDIT_SEQUENCE = "audit"
AUDIT_LOGGER = logging.getLogger("equipment_rental.audit")


def _snapshot(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True, default=str)


def record_audit(
    db: Session,
    ctx: TenantContext,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None,
    before: Any = None,
    after: Any = None,
    details: str | None = None,
    result: str = "success",
) -> AuditLog:
    """Append one entry inside the caller's transaction.

    The entry commits or rolls back together with the mutation it describes.
    """
    entry = AuditLog(
        TenantID=ctx.tenant_id,
        Sequence=next_tenant_sequence(db, ctx.tenant_id, AUDIT_SEQUENCE),
        ActorRef=ctx.actor_ref,
        Action=action,
        EntityType=entity_type,
        EntityID=entity_id,
        BeforeState=_snapshot(before),
        AfterState=_snapshot(after),
        Result=result,
        Details=details[:2000] if details else None,
        RequestID=ctx.request_id,
        CreatedAt=utc_now(),
    )
    db.add(entry)
    db.flush()
    return entry


def record_failure(
    db: Session,
    ctx: TenantContext,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None,
    error: RentalError,
) -> None:
    try:
        record_audit(
            db,
            ctx,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            after={"code": error.code, "details": error.details},
            details=error.message,
            result="failure",
        )
        db.commit()
    except Exception:
        db.rollback()
        AUDIT_LOGGER.exception(
            "Could not record failed %s on %s/%s for tenant %s",
            action,
            entity_type,
            entity_id,
            ctx.tenant_id,
        )


@contextmanager
def audit_failures(
    db: Session,
    ctx: TenantContext,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
) -> Iterator[None]:
    """Roll back and record a failure entry when a mutating call raises a rental error."""
    try:
        yield
    except RentalError as exc:
        db.rollback()
        AUDIT_LOGGER.info(
            "%s on %s/%s failed for %s: %s",
            action,
            entity_type,
            entity_id,
            ctx.actor_ref,
            exc.code,
        )
        record_failure(db, ctx, action=action, entity_type=entity_type, entity_id=entity_id, error=exc)
        raise
    except Exception:
        db.rollback()
        raise


def list_audit_entries(
    db: Session,
    ctx: TenantContext,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    actor_ref: str | None = None,
    action: str | None = None,
    result: str | None = None,
    after_sequence: int | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    require_role(ctx, "manager")
    stmt = select(AuditLog).where(AuditLog.TenantID == ctx.tenant_id)
    if entity_type:
        stmt = stmt.where(AuditLog.EntityType == entity_type)
    if entity_id is not None:
        stmt = stmt.where(AuditLog.EntityID == entity_id)
    if actor_ref:
        stmt = stmt.where(AuditLog.ActorRef == actor_ref)
    if action:
        stmt = stmt.where(AuditLog.Action == action)
    if result:
        stmt = stmt.where(AuditLog.Result == result)
    if after_sequence is not None:
        stmt = stmt.where(AuditLog.Sequence > after_sequence)
    stmt = stmt.order_by(AuditLog.Sequence.asc()).limit(max(1, min(int(limit), 500)))
    return list(db.execute(stmt).scalars().all())


def rewrite_actor(db: Session, ctx: TenantContext, user_id: int) -> int:
    """Rewrite a user's actor reference to the anonymous sentinel in the caller's transaction.

    Every entry is kept; only the actor changes. The rewrite is itself audited as `anonymize`.
    """
    rewritten = db.execute(
        update(AuditLog)
        .where(AuditLog.TenantID == ctx.tenant_id)
        .where(AuditLog.ActorRef == f"user:{int(user_id)}")
        .values(ActorRef=ANONYMOUS_ACTOR)
    ).rowcount
    record_audit(
        db,
        ctx,
        action="anonymize",
        entity_type="User",
        entity_id=user_id,
        after={"rewrittenEntries": rewritten},
    )
    return int(rewritten)


def anonymize_actor(db: Session, ctx: TenantContext, user_id: int) -> int:
    with audit_failures(db, ctx, action="anonymize", entity_type="User", entity_id=user_id):
        require_role(ctx, "admin")
        rewritten = rewrite_actor(db, ctx, user_id)
        db.commit()
    AUDIT_LOGGER.info("Anonymized %s audit entries for user %s in tenant %s", rewritten, user_id, ctx.tenant_id)
    return int(rewritten)


def serialize_audit_entry(entry: AuditLog) -> dict:
    return {
        "auditID": entry.AuditID,
        "tenantID": entry.TenantID,
        "sequence": entry.Sequence,
        "actor": entry.ActorRef,
        "action": entry.Action,
        "entityType": entry.EntityType,
        "entityID": entry.EntityID,
        "before": json.loads(entry.BeforeState) if entry.BeforeState else None,
        "after": json.loads(entry.AfterState) if entry.AfterState else None,
        "result": entry.Result,
        "details": entry.Details,
        "requestID": entry.RequestID,
        "createdAt": entry.CreatedAt,
    }
