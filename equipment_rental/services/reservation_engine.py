from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Equipment, Reservation, ReservationItem, User, utc_now
from schemas.rentals import CreateReservationDto, CreateReservationItemDto
from services.audit_trail import audit_failures, record_audit
from services.equipment_service import RESERVABLE_STATUSES, ExpandedLine, expand_dependencies, get_equipment
from services.errors import EquipmentUnavailable, ReservationBusy, ValidationError
from services.notification_service import enqueue_notification
from services.rental_service import generate_reservation_number, snapshot_reservation
from services.tenant_context import TenantContext, get_tenant_settings, require_role


COMMITTED_STATUSES = ("approved", "active")
LOCK_TIMEOUT_SECONDS = float(os.environ.get("RENTAL_LOCK_TIMEOUT_SECONDS") or "10")
ENGINE_LOGGER = logging.getLogger("equipment_rental.reservations")

_LOCKS_GUARD = threading.Lock()
_EQUIPMENT_LOCKS: dict[tuple[int, int], threading.Lock] = {}


def intervals_overlap(
    existing_start: datetime,
    existing_end: datetime,
    requested_start: datetime,
    requested_end: datetime,
) -> bool:
    return existing_start < requested_end and existing_end > requested_start


def held_statuses(settings: dict[str, Any]) -> tuple[str, ...]:
    if settings.get("holdPendingReservations"):
        return ("pending",) + COMMITTED_STATUSES
    return COMMITTED_STATUSES


def _lock_for(key: tuple[int, int]) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _EQUIPMENT_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _EQUIPMENT_LOCKS[key] = lock
        return lock


@contextmanager
def equipment_locks(tenant_id: int, equipment_ids: Iterable[int], timeout: float | None = None) -> Iterator[None]:
    """Hold the per-equipment locks of this process for a check-and-write section.

    Locks are taken in ascending id order so overlapping requests cannot deadlock,
    and the whole acquisition is bounded by one deadline.
    """
    deadline = time.monotonic() + (LOCK_TIMEOUT_SECONDS if timeout is None else timeout)
    held: list[threading.Lock] = []
    try:
        for equipment_id in sorted(set(equipment_ids)):
            lock = _lock_for((tenant_id, equipment_id))
            if not lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
                ENGINE_LOGGER.warning("Lock timeout on tenant=%s equipment=%s", tenant_id, equipment_id)
                raise ReservationBusy(
                    "Equipment is being reserved by another request. Retry shortly.",
                    {"equipmentID": equipment_id},
                )
            held.append(lock)
        yield
    finally:
        for lock in reversed(held):
            lock.release()


def validate_interval(start: datetime, end: datetime, settings: dict[str, Any], now: datetime) -> None:
    if end <= start:
        raise ValidationError(
            "endDate must be after startDate.",
            {"startDate": start, "endDate": end},
        )
    grace = timedelta(minutes=int(settings.get("graceMinutes") or 0))
    if start < now - grace:
        raise ValidationError(
            "startDate lies too far in the past.",
            {"startDate": start, "earliestAllowed": now - grace},
        )
    max_days = int(settings.get("maxReservationDays") or 0)
    if max_days and end - start > timedelta(days=max_days):
        raise ValidationError(
            f"Reservations may span at most {max_days} days.",
            {"maxReservationDays": max_days},
        )


@dataclass
class LineAvailability:
    equipment_id: int
    requested: int
    total: int
    status: str
    committed: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def available(self) -> int:
        if self.status not in RESERVABLE_STATUSES:
            return 0
        return max(0, self.total - self.committed)

    @property
    def is_available(self) -> bool:
        return self.status in RESERVABLE_STATUSES and self.committed + self.requested <= self.total

    def as_dict(self) -> dict[str, Any]:
        return {
            "equipmentID": self.equipment_id,
            "equipmentStatus": self.status,
            "requestedQuantity": self.requested,
            "totalQuantity": self.total,
            "committedQuantity": self.committed,
            "availableQuantity": self.available,
            "isAvailable": self.is_available,
            "conflictingReservations": self.conflicts,
        }


def aggregate_lines(lines: Iterable[ExpandedLine]) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for line in lines:
        totals[line.equipment_id] += int(line.quantity)
    return dict(totals)


def load_equipment_rows(
    db: Session,
    tenant_id: int,
    equipment_ids: Iterable[int],
    for_update: bool = False,
) -> dict[int, Equipment]:
    wanted = sorted(set(equipment_ids))
    stmt = (
        select(Equipment)
        .where(Equipment.TenantID == tenant_id)
        .where(Equipment.EquipmentID.in_(wanted))
        .order_by(Equipment.EquipmentID)
    )
    if for_update:
        stmt = stmt.with_for_update()
    rows = {equipment.EquipmentID: equipment for equipment in db.execute(stmt).scalars().all()}
    missing = [equipment_id for equipment_id in wanted if equipment_id not in rows]
    if missing:
        raise ValidationError("Unknown equipment requested.", {"equipmentIDs": missing})
    return rows


def _committed_usage(
    db: Session,
    tenant_id: int,
    equipment_ids: Iterable[int],
    start: datetime,
    end: datetime,
    statuses: Iterable[str],
    exclude_reservation_id: int | None = None,
) -> dict[int, list[dict[str, Any]]]:
    stmt = (
        select(
            ReservationItem.EquipmentID,
            Reservation.ReservationID,
            Reservation.ReservationNumber,
            Reservation.Status,
            Reservation.StartDate,
            Reservation.EndDate,
            func.sum(ReservationItem.Quantity),
        )
        .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
        .where(Reservation.TenantID == tenant_id)
        .where(ReservationItem.EquipmentID.in_(list(equipment_ids)))
        .where(Reservation.Status.in_(list(statuses)))
        # SQL form of intervals_overlap(existing, requested).
        .where(Reservation.StartDate < end)
        .where(Reservation.EndDate > start)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    stmt = stmt.group_by(
        ReservationItem.EquipmentID,
        Reservation.ReservationID,
        Reservation.ReservationNumber,
        Reservation.Status,
        Reservation.StartDate,
        Reservation.EndDate,
    ).order_by(Reservation.StartDate, Reservation.ReservationID)

    usage: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for equipment_id, reservation_id, number, status, r_start, r_end, quantity in db.execute(stmt).all():
        usage[equipment_id].append(
            {
                "reservationID": reservation_id,
                "reservationNumber": number,
                "status": status,
                "startDate": r_start,
                "endDate": r_end,
                "quantity": int(quantity or 0),
            }
        )
    return usage


def evaluate_capacity(
    db: Session,
    tenant_id: int,
    totals: dict[int, int],
    equipment_by_id: dict[int, Equipment],
    start: datetime,
    end: datetime,
    statuses: Iterable[str],
    exclude_reservation_id: int | None = None,
) -> list[LineAvailability]:
    usage = _committed_usage(db, tenant_id, totals.keys(), start, end, statuses, exclude_reservation_id)
    lines: list[LineAvailability] = []
    for equipment_id in sorted(totals):
        equipment = equipment_by_id[equipment_id]
        conflicts = usage.get(equipment_id, [])
        lines.append(
            LineAvailability(
                equipment_id=equipment_id,
                requested=int(totals[equipment_id]),
                total=int(equipment.TotalQuantity or 0),
                status=equipment.Status,
                committed=sum(conflict["quantity"] for conflict in conflicts),
                conflicts=conflicts,
            )
        )
    return lines


def raise_if_unavailable(lines: list[LineAvailability]) -> None:
    short = [line for line in lines if not line.is_available]
    if not short:
        return
    ids = ", ".join(str(line.equipment_id) for line in short)
    raise EquipmentUnavailable(
        f"Equipment {ids} is not available for the requested interval.",
        [line.as_dict() for line in short],
    )


def ensure_capacity(
    db: Session,
    tenant_id: int,
    totals: dict[int, int],
    start: datetime,
    end: datetime,
    statuses: Iterable[str],
    exclude_reservation_id: int | None = None,
) -> dict[int, Equipment]:
    """Locked re-check; callers must already hold equipment_locks for these ids."""
    equipment_by_id = load_equipment_rows(db, tenant_id, totals.keys(), for_update=True)
    lines = evaluate_capacity(
        db,
        tenant_id,
        totals,
        equipment_by_id,
        start,
        end,
        statuses,
        exclude_reservation_id,
    )
    raise_if_unavailable(lines)
    return equipment_by_id


def check_availability(
    db: Session,
    ctx: TenantContext,
    equipment_id: int,
    start: datetime,
    end: datetime,
    quantity: int = 1,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Read-only twin of create_reservation's check, using the same predicate and statuses."""
    settings = get_tenant_settings(db, ctx.tenant_id)
    if int(quantity) < 1:
        raise ValidationError("quantity must be at least 1.")
    validate_interval(start, end, settings, now or utc_now())
    equipment = get_equipment(db, ctx.tenant_id, equipment_id)
    if int(quantity) > int(equipment.TotalQuantity or 0):
        raise ValidationError(
            "Requested quantity exceeds the total quantity of this equipment.",
            {"equipmentID": equipment_id, "totalQuantity": equipment.TotalQuantity},
        )

    expanded = expand_dependencies(
        db,
        ctx.tenant_id,
        {equipment.EquipmentID: int(quantity)},
        settings["availabilityDependencyTypes"],
    )
    totals = aggregate_lines(expanded)
    equipment_by_id = load_equipment_rows(db, ctx.tenant_id, totals.keys())
    lines = evaluate_capacity(db, ctx.tenant_id, totals, equipment_by_id, start, end, held_statuses(settings))
    root = next(line for line in lines if line.equipment_id == equipment.EquipmentID)
    return {
        "equipmentID": equipment.EquipmentID,
        "startDate": start,
        "endDate": end,
        "requestedQuantity": int(quantity),
        "totalQuantity": root.total,
        "committedQuantity": root.committed,
        "availableQuantity": root.available,
        "isAvailable": all(line.is_available for line in lines),
        "conflicts": root.conflicts,
        "dependencies": [line.as_dict() for line in lines if line.equipment_id != equipment.EquipmentID],
    }


def _merge_requested(items: list[CreateReservationItemDto]) -> dict[int, int]:
    if not items:
        raise ValidationError("At least one equipment item is required.")
    requested: dict[int, int] = defaultdict(int)
    for item in items:
        if int(item.quantity) < 1:
            raise ValidationError("quantity must be at least 1.", {"equipmentID": item.equipmentID})
        requested[int(item.equipmentID)] += int(item.quantity)
    return dict(requested)


def _resolve_owner(db: Session, ctx: TenantContext, requested_user_id: int | None) -> int:
    owner_id = requested_user_id if requested_user_id is not None else ctx.user_id
    if owner_id is None:
        raise ValidationError("userID is required.")
    if owner_id != ctx.user_id:
        require_role(ctx, "manager")
    owner = db.get(User, owner_id)
    if not owner or owner.TenantID != ctx.tenant_id or not owner.IsActive:
        raise ValidationError("Reservation owner is not an active user of this tenant.", {"userID": owner_id})
    return owner.UserID


def create_reservation(
    db: Session,
    ctx: TenantContext,
    payload: CreateReservationDto,
    now: datetime | None = None,
) -> Reservation:
    """Validate, check capacity and persist a reservation with its items.

    The capacity check and the insert run under the equipment locks and commit
    before the locks are released, so two requests for the last unit cannot
    both pass the check.
    """
    current = now or utc_now()
    with audit_failures(db, ctx, action="create", entity_type="Reservation"):
        require_role(ctx, "student")
        owner_id = _resolve_owner(db, ctx, payload.userID)
        purpose = (payload.purpose or "").strip()
        if not purpose:
            raise ValidationError("purpose is required.")

        settings = get_tenant_settings(db, ctx.tenant_id)
        validate_interval(payload.startDate, payload.endDate, settings, current)
        requested = _merge_requested(payload.items)
        expanded = expand_dependencies(db, ctx.tenant_id, requested, settings["availabilityDependencyTypes"])
        totals = aggregate_lines(expanded)

        with equipment_locks(ctx.tenant_id, totals.keys()):
            equipment_by_id = load_equipment_rows(db, ctx.tenant_id, totals.keys(), for_update=True)
            for equipment_id, quantity in requested.items():
                total = int(equipment_by_id[equipment_id].TotalQuantity or 0)
                if quantity > total:
                    raise ValidationError(
                        "Requested quantity exceeds the total quantity of this equipment.",
                        {"equipmentID": equipment_id, "requestedQuantity": quantity, "totalQuantity": total},
                    )
            lines = evaluate_capacity(
                db,
                ctx.tenant_id,
                totals,
                equipment_by_id,
                payload.startDate,
                payload.endDate,
                held_statuses(settings),
            )
            raise_if_unavailable(lines)

            initial_status = "approved" if settings.get("skipApproval") else "pending"
            reservation = Reservation(
                TenantID=ctx.tenant_id,
                ReservationNumber=generate_reservation_number(db, ctx.tenant_id),
                UserID=owner_id,
                Purpose=purpose,
                Status=initial_status,
                StartDate=payload.startDate,
                EndDate=payload.endDate,
                Notes=payload.notes,
                ApprovalDate=current if initial_status == "approved" else None,
                CreatedDate=current,
                UpdatedDate=current,
            )
            for line in expanded:
                reservation.ReservationItems.append(
                    ReservationItem(
                        EquipmentID=line.equipment_id,
                        Quantity=line.quantity,
                        IsDependency=line.is_dependency,
                        ParentEquipmentID=line.parent_equipment_id,
                    )
                )
            db.add(reservation)
            db.flush()
            record_audit(
                db,
                ctx,
                action="create",
                entity_type="Reservation",
                entity_id=reservation.ReservationID,
                after=snapshot_reservation(reservation),
            )
            if initial_status == "approved":
                enqueue_notification(
                    db,
                    tenant_id=ctx.tenant_id,
                    recipient_user_id=owner_id,
                    notification_type="ReservationApproved",
                    payload=f"Reservation {reservation.ReservationNumber} approved automatically.",
                    reservation_id=reservation.ReservationID,
                )
            db.commit()

    ENGINE_LOGGER.info(
        "Reservation %s created tenant=%s owner=%s status=%s lines=%s",
        reservation.ReservationNumber,
        ctx.tenant_id,
        owner_id,
        reservation.Status,
        len(expanded),
    )
    return reservation
