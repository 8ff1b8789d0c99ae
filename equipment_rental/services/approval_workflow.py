from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import Equipment, Reservation, User, utc_now
from schemas.rentals import DecisionRequest, HandoverRequest, ItemConditionDto
from services.audit_trail import audit_failures, record_audit
from services.equipment_service import EQUIPMENT_CONDITIONS, ExpandedLine, condition_rank
from services.errors import Forbidden, InvalidStateTransition, StaleReservationState, ValidationError
from services.notification_service import enqueue_notification
from services.rental_service import load_reservation, snapshot_reservation
from services.reservation_engine import aggregate_lines, ensure_capacity, equipment_locks, held_statuses
from services.tenant_context import TenantContext, get_tenant_settings, require_role


WORKFLOW_LOGGER = logging.getLogger("equipment_rental.workflow")

# (from, to) -> minimum role. "owner" means the reservation owner or a manager.
TRANSITIONS: dict[tuple[str, str], str] = {
    ("pending", "approved"): "faculty",
    ("pending", "rejected"): "faculty",
    ("pending", "cancelled"): "owner",
    ("approved", "cancelled"): "owner",
    ("approved", "active"): "manager",
    ("active", "completed"): "manager",
    ("active", "overdue"): "system",
}


def assert_transition_allowed(current: str, requested: str) -> str:
    key = ((current or "").strip().lower(), (requested or "").strip().lower())
    if key not in TRANSITIONS:
        raise InvalidStateTransition(key[0], key[1])
    return TRANSITIONS[key]


@contextmanager
def _transition(db: Session, ctx: TenantContext, action: str, reservation_id: int | None) -> Iterator[None]:
    with audit_failures(db, ctx, action=action, entity_type="Reservation", entity_id=reservation_id):
        try:
            yield
        except StaleDataError as exc:
            raise StaleReservationState(
                "Reservation was modified by another request. Reload and retry.",
                {"reservationID": reservation_id},
            ) from exc


def _load_for_transition(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    expected_version: int | None,
) -> Reservation:
    reservation = load_reservation(db, ctx.tenant_id, reservation_id)
    if expected_version is not None and int(expected_version) != int(reservation.Version):
        raise StaleReservationState(
            "Reservation version does not match.",
            {"reservationID": reservation_id, "expectedVersion": expected_version, "currentVersion": reservation.Version},
        )
    return reservation


def _reserved_totals(reservation: Reservation) -> dict[int, int]:
    return aggregate_lines(
        ExpandedLine(equipment_id=item.EquipmentID, quantity=int(item.Quantity)) for item in reservation.ReservationItems
    )


def _notify(db: Session, reservation: Reservation, recipient_user_id: int | None, notification_type: str, text: str) -> None:
    enqueue_notification(
        db,
        tenant_id=reservation.TenantID,
        recipient_user_id=recipient_user_id,
        notification_type=notification_type,
        payload=text,
        reservation_id=reservation.ReservationID,
    )


def approve_reservation(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    request: DecisionRequest | None = None,
    now: datetime | None = None,
) -> Reservation:
    """pending -> approved, re-checking capacity under the equipment locks."""
    request = request or DecisionRequest()
    current = now or utc_now()
    with _transition(db, ctx, "approve", reservation_id):
        require_role(ctx, "faculty")
        reservation = _load_for_transition(db, ctx, reservation_id, request.expectedVersion)
        assert_transition_allowed(reservation.Status, "approved")
        before = snapshot_reservation(reservation)
        settings = get_tenant_settings(db, ctx.tenant_id)
        totals = _reserved_totals(reservation)

        with equipment_locks(ctx.tenant_id, totals.keys()):
            ensure_capacity(
                db,
                ctx.tenant_id,
                totals,
                reservation.StartDate,
                reservation.EndDate,
                held_statuses(settings),
                exclude_reservation_id=reservation.ReservationID,
            )
            reservation.Status = "approved"
            reservation.ApprovedBy = ctx.user_id
            reservation.ApprovalDate = current
            reservation.DecisionReason = (request.reason or "").strip() or None
            reservation.UpdatedDate = current
            record_audit(
                db,
                ctx,
                action="approve",
                entity_type="Reservation",
                entity_id=reservation.ReservationID,
                before=before,
                after=snapshot_reservation(reservation),
            )
            _notify(
                db,
                reservation,
                reservation.UserID,
                "ReservationApproved",
                f"Reservation {reservation.ReservationNumber} was approved.",
            )
            db.commit()

    WORKFLOW_LOGGER.info("Reservation %s approved by %s", reservation.ReservationNumber, ctx.actor_ref)
    return reservation


def reject_reservation(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    request: DecisionRequest,
    now: datetime | None = None,
) -> Reservation:
    current = now or utc_now()
    with _transition(db, ctx, "reject", reservation_id):
        require_role(ctx, "faculty")
        reason = (request.reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to reject a reservation.")
        reservation = _load_for_transition(db, ctx, reservation_id, request.expectedVersion)
        assert_transition_allowed(reservation.Status, "rejected")
        before = snapshot_reservation(reservation)

        reservation.Status = "rejected"
        reservation.DecisionReason = reason
        reservation.UpdatedDate = current
        record_audit(
            db,
            ctx,
            action="reject",
            entity_type="Reservation",
            entity_id=reservation.ReservationID,
            before=before,
            after=snapshot_reservation(reservation),
            details=reason,
        )
        _notify(
            db,
            reservation,
            reservation.UserID,
            "ReservationRejected",
            f"Reservation {reservation.ReservationNumber} was rejected: {reason}",
        )
        db.commit()

    WORKFLOW_LOGGER.info("Reservation %s rejected by %s", reservation.ReservationNumber, ctx.actor_ref)
    return reservation


def cancel_reservation(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    request: DecisionRequest | None = None,
    now: datetime | None = None,
) -> Reservation:
    """Owner or manager cancels a pending or approved reservation, releasing what it held."""
    request = request or DecisionRequest()
    current = now or utc_now()
    with _transition(db, ctx, "cancel", reservation_id):
        reservation = _load_for_transition(db, ctx, reservation_id, request.expectedVersion)
        is_owner = ctx.user_id is not None and reservation.UserID == ctx.user_id
        if not is_owner and not ctx.has_role("manager"):
            raise Forbidden(
                "Only the owner or a manager can cancel this reservation.",
                {"reservationID": reservation_id},
            )
        assert_transition_allowed(reservation.Status, "cancelled")
        before = snapshot_reservation(reservation)

        reservation.Status = "cancelled"
        reservation.CancelledBy = ctx.user_id
        reservation.CancelledAt = current
        if request.reason:
            reservation.DecisionReason = request.reason.strip()
        reservation.UpdatedDate = current
        record_audit(
            db,
            ctx,
            action="cancel",
            entity_type="Reservation",
            entity_id=reservation.ReservationID,
            before=before,
            after=snapshot_reservation(reservation),
        )
        if not is_owner:
            _notify(
                db,
                reservation,
                reservation.UserID,
                "ReservationCancelled",
                f"Reservation {reservation.ReservationNumber} was cancelled by staff.",
            )
        db.commit()

    WORKFLOW_LOGGER.info("Reservation %s cancelled by %s", reservation.ReservationNumber, ctx.actor_ref)
    return reservation


def _item_conditions(reservation: Reservation, rows: list[ItemConditionDto]) -> dict[int, ItemConditionDto]:
    by_item: dict[int, ItemConditionDto] = {}
    known = {item.ReservationItemID for item in reservation.ReservationItems}
    for row in rows:
        if row.reservationItemID not in known:
            raise ValidationError(
                "Item does not belong to this reservation.",
                {"reservationItemID": row.reservationItemID},
            )
        condition_rank(row.condition)
        by_item[row.reservationItemID] = row
    return by_item


def checkout_reservation(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    request: HandoverRequest | None = None,
    now: datetime | None = None,
) -> Reservation:
    """approved -> active. Each item records its condition at handover."""
    request = request or HandoverRequest()
    current = now or utc_now()
    with _transition(db, ctx, "checkout", reservation_id):
        require_role(ctx, "manager")
        reservation = _load_for_transition(db, ctx, reservation_id, request.expectedVersion)
        assert_transition_allowed(reservation.Status, "active")
        conditions = _item_conditions(reservation, request.items)
        before = snapshot_reservation(reservation)

        for item in reservation.ReservationItems:
            row = conditions.get(item.ReservationItemID)
            if row:
                item.CheckoutCondition = row.condition.strip().lower()
                item.CheckoutNotes = row.notes
            else:
                item.CheckoutCondition = item.Equipment.Condition if item.Equipment else "good"
        reservation.Status = "active"
        reservation.CheckedOutBy = ctx.user_id
        reservation.CheckedOutAt = current
        if request.notes:
            reservation.Notes = request.notes
        reservation.UpdatedDate = current
        record_audit(
            db,
            ctx,
            action="checkout",
            entity_type="Reservation",
            entity_id=reservation.ReservationID,
            before=before,
            after=snapshot_reservation(reservation),
        )
        db.commit()

    WORKFLOW_LOGGER.info("Reservation %s checked out by %s", reservation.ReservationNumber, ctx.actor_ref)
    return reservation


def damage_delta(reservation: Reservation) -> list[dict[str, Any]]:
    """Items whose condition got worse between checkout and checkin."""
    delta: list[dict[str, Any]] = []
    for item in reservation.ReservationItems:
        if not item.CheckoutCondition or not item.CheckinCondition:
            continue
        degraded_by = condition_rank(item.CheckinCondition) - condition_rank(item.CheckoutCondition)
        if degraded_by > 0:
            delta.append(
                {
                    "reservationItemID": item.ReservationItemID,
                    "equipmentID": item.EquipmentID,
                    "from": item.CheckoutCondition,
                    "to": item.CheckinCondition,
                    "degradedBy": degraded_by,
                }
            )
    return delta


def checkin_reservation(
    db: Session,
    ctx: TenantContext,
    reservation_id: int,
    request: HandoverRequest | None = None,
    now: datetime | None = None,
) -> tuple[Reservation, list[dict[str, Any]]]:
    """active (including overdue) -> completed. Returns the reservation and its damage delta."""
    request = request or HandoverRequest()
    current = now or utc_now()
    with _transition(db, ctx, "checkin", reservation_id):
        require_role(ctx, "manager")
        reservation = _load_for_transition(db, ctx, reservation_id, request.expectedVersion)
        # Overdue is only a computed view of a stored "active" reservation.
        assert_transition_allowed(reservation.Status, "completed")
        conditions = _item_conditions(reservation, request.items)
        before = snapshot_reservation(reservation)

        for item in reservation.ReservationItems:
            row = conditions.get(item.ReservationItemID)
            if row:
                item.CheckinCondition = row.condition.strip().lower()
                item.CheckinNotes = row.notes
            else:
                item.CheckinCondition = item.CheckoutCondition or (item.Equipment.Condition if item.Equipment else "good")

        delta = damage_delta(reservation)
        for entry in delta:
            equipment = db.get(Equipment, entry["equipmentID"])
            if equipment and condition_rank(entry["to"]) > condition_rank(equipment.Condition):
                equipment.Condition = entry["to"]
                equipment.UpdatedDate = current
            if entry["to"] == EQUIPMENT_CONDITIONS[-1]:
                _notify(
                    db,
                    reservation,
                    reservation.UserID,
                    "DamageReported",
                    f"Equipment {entry['equipmentID']} from reservation {reservation.ReservationNumber} was returned damaged.",
                )

        reservation.Status = "completed"
        reservation.CheckedInBy = ctx.user_id
        reservation.CheckedInAt = current
        if request.notes:
            reservation.Notes = request.notes
        reservation.UpdatedDate = current
        record_audit(
            db,
            ctx,
            action="checkin",
            entity_type="Reservation",
            entity_id=reservation.ReservationID,
            before=before,
            after={**snapshot_reservation(reservation), "damage": delta},
        )
        db.commit()

    if delta:
        WORKFLOW_LOGGER.warning(
            "Reservation %s returned with degraded items: %s",
            reservation.ReservationNumber,
            delta,
        )
    WORKFLOW_LOGGER.info("Reservation %s checked in by %s", reservation.ReservationNumber, ctx.actor_ref)
    return reservation, delta


def _overdue_recipients(db: Session, reservation: Reservation) -> list[int]:
    recipients = [reservation.UserID]
    if reservation.ApprovedBy:
        recipients.append(reservation.ApprovedBy)
    else:
        faculty = db.execute(
            select(User.UserID)
            .where(User.TenantID == reservation.TenantID)
            .where(User.Role == "faculty")
            .where(User.IsActive.is_(True))
            .order_by(User.UserID)
        ).scalars().all()
        recipients.extend(faculty)
    seen: list[int] = []
    for user_id in recipients:
        if user_id not in seen:
            seen.append(user_id)
    return seen


def sweep_overdue(db: Session, ctx: TenantContext, now: datetime | None = None) -> list[Reservation]:
    """Flag active reservations past their end date and notify owner and faculty once."""
    require_role(ctx, "manager")
    current = now or utc_now()
    candidates = db.execute(
        select(Reservation.ReservationID)
        .where(Reservation.TenantID == ctx.tenant_id)
        .where(Reservation.Status == "active")
        .where(Reservation.EndDate < current)
        .where(Reservation.OverdueNotifiedAt.is_(None))
        .order_by(Reservation.EndDate, Reservation.ReservationID)
    ).scalars().all()

    flagged: list[Reservation] = []
    for reservation_id in candidates:
        with _transition(db, ctx, "overdue", reservation_id):
            reservation = load_reservation(db, ctx.tenant_id, reservation_id)
            if reservation.Status != "active" or reservation.OverdueNotifiedAt is not None:
                continue
            assert_transition_allowed(reservation.Status, "overdue")
            before = snapshot_reservation(reservation)
            reservation.OverdueNotifiedAt = current
            recipients = _overdue_recipients(db, reservation)
            for user_id in recipients:
                _notify(
                    db,
                    reservation,
                    user_id,
                    "ReservationOverdue",
                    f"Reservation {reservation.ReservationNumber} was due back at {reservation.EndDate:%Y-%m-%d %H:%M} UTC.",
                )
            record_audit(
                db,
                ctx,
                action="overdue",
                entity_type="Reservation",
                entity_id=reservation.ReservationID,
                before=before,
                after={"status": "overdue", "notified": recipients},
            )
            db.commit()
        flagged.append(reservation)

    if flagged:
        WORKFLOW_LOGGER.info("Flagged %s overdue reservations for tenant %s", len(flagged), ctx.tenant_id)
    return flagged
