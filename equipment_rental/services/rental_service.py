from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Reservation, ReservationItem, User, utc_now
from services.errors import Forbidden, NotFound, ValidationError
from services.tenant_context import TenantContext, next_tenant_sequence


RESERVATION_STATUSES = ("pending", "approved", "rejected", "active", "completed", "cancelled", "overdue")
STORED_STATUSES = ("pending", "approved", "rejected", "active", "completed", "cancelled")
TERMINAL_STATUSES = {"rejected", "completed", "cancelled"}
RESERVATION_SEQUENCE = "reservation"


def generate_reservation_number(db: Session, tenant_id: int, prefix: str = "RSV") -> str:
    token = (prefix or "RSV").upper()
    next_number = next_tenant_sequence(db, tenant_id, RESERVATION_SEQUENCE)
    return f"{token}-{next_number:04d}"


def effective_status(reservation: Reservation, now: datetime | None = None) -> str:
    """Stored status, except an active reservation past its end date reads as overdue."""
    current = (reservation.Status or "pending").strip().lower()
    if current == "active" and reservation.EndDate and reservation.EndDate < (now or utc_now()):
        return "overdue"
    return current


def can_view(ctx: TenantContext, reservation: Reservation) -> bool:
    if reservation.TenantID != ctx.tenant_id:
        return False
    return ctx.is_system or ctx.has_role("faculty") or reservation.UserID == ctx.user_id


def _reservation_query(tenant_id: int):
    return (
        select(Reservation)
        .options(selectinload(Reservation.ReservationItems).selectinload(ReservationItem.Equipment))
        .options(selectinload(Reservation.Owner))
        .where(Reservation.TenantID == tenant_id)
    )


def load_reservation(db: Session, tenant_id: int, reservation_id: int) -> Reservation:
    reservation = db.execute(
        _reservation_query(tenant_id)
        .where(Reservation.ReservationID == reservation_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not reservation:
        raise NotFound("Reservation not found.", {"reservationID": reservation_id})
    return reservation


def get_reservation(db: Session, ctx: TenantContext, reservation_id: int) -> Reservation:
    reservation = load_reservation(db, ctx.tenant_id, reservation_id)
    if not can_view(ctx, reservation):
        # Hide other users' reservations from students entirely.
        raise NotFound("Reservation not found.", {"reservationID": reservation_id})
    return reservation


def list_reservations(
    db: Session,
    ctx: TenantContext,
    *,
    status: str | None = None,
    mine: bool = False,
    equipment_id: int | None = None,
    now: datetime | None = None,
) -> list[Reservation]:
    current = now or utc_now()
    stmt = _reservation_query(ctx.tenant_id)
    if mine or not ctx.has_role("faculty"):
        if ctx.user_id is None:
            raise Forbidden("A user is required to list own reservations.")
        stmt = stmt.where(Reservation.UserID == ctx.user_id)
    if equipment_id is not None:
        stmt = stmt.where(
            Reservation.ReservationID.in_(
                select(ReservationItem.ReservationID).where(ReservationItem.EquipmentID == equipment_id)
            )
        )
    wanted = (status or "").strip().lower()
    if wanted:
        if wanted not in RESERVATION_STATUSES:
            raise ValidationError(f"Unknown status filter: {status}", {"allowed": list(RESERVATION_STATUSES)})
        if wanted == "overdue":
            stmt = stmt.where(Reservation.Status == "active").where(Reservation.EndDate < current)
        elif wanted == "active":
            stmt = stmt.where(Reservation.Status == "active").where(Reservation.EndDate >= current)
        else:
            stmt = stmt.where(Reservation.Status == wanted)
    stmt = stmt.order_by(Reservation.StartDate.desc(), Reservation.ReservationID.desc())
    return list(db.execute(stmt).scalars().all())


def snapshot_reservation(reservation: Reservation) -> dict:
    """Compact state used for audit before/after snapshots."""
    return {
        "status": reservation.Status,
        "version": reservation.Version,
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "approvedBy": reservation.ApprovedBy,
        "items": [
            {
                "equipmentID": item.EquipmentID,
                "quantity": item.Quantity,
                "isDependency": bool(item.IsDependency),
                "checkoutCondition": item.CheckoutCondition,
                "checkinCondition": item.CheckinCondition,
            }
            for item in reservation.ReservationItems
        ],
    }


def serialize_reservation(reservation: Reservation, now: datetime | None = None) -> dict:
    status = effective_status(reservation, now)
    reservation_items = []
    for item in reservation.ReservationItems:
        reservation_items.append(
            {
                "reservationItemID": item.ReservationItemID,
                "equipmentID": item.EquipmentID,
                "equipmentName": item.Equipment.EquipmentName if item.Equipment else None,
                "quantity": item.Quantity,
                "isDependency": bool(item.IsDependency),
                "parentEquipmentID": item.ParentEquipmentID,
                "checkoutCondition": item.CheckoutCondition,
                "checkoutNotes": item.CheckoutNotes,
                "checkinCondition": item.CheckinCondition,
                "checkinNotes": item.CheckinNotes,
            }
        )

    owner: User | None = reservation.Owner
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "tenantID": reservation.TenantID,
        "userID": reservation.UserID,
        "ownerName": owner.FullName if owner else None,
        "purpose": reservation.Purpose,
        "status": status,
        "storedStatus": reservation.Status,
        "isOverdue": status == "overdue",
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "version": reservation.Version,
        "approvedBy": reservation.ApprovedBy,
        "approvalDate": reservation.ApprovalDate,
        "decisionReason": reservation.DecisionReason,
        "checkedOutBy": reservation.CheckedOutBy,
        "checkedOutAt": reservation.CheckedOutAt,
        "checkedInBy": reservation.CheckedInBy,
        "checkedInAt": reservation.CheckedInAt,
        "cancelledBy": reservation.CancelledBy,
        "cancelledAt": reservation.CancelledAt,
        "notes": reservation.Notes,
        "createdDate": reservation.CreatedDate,
        "updatedDate": reservation.UpdatedDate,
        "reservationItems": reservation_items,
    }
