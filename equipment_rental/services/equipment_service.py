from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from models.rental_models import Category, Equipment, EquipmentDependency, Reservation, ReservationItem, utc_now
from schemas.equipment import CategoryCreate, DependencyUpsert, EquipmentUpsert
from services.audit_trail import audit_failures, record_audit
from services.errors import NotFound, ValidationError
from services.tenant_context import DEPENDENCY_TYPES, TenantContext, require_role


# Ordered best to worst; the index is the rank used for damage deltas.
EQUIPMENT_CONDITIONS = ("excellent", "good", "fair", "poor", "damaged")
EQUIPMENT_STATUSES = ("available", "maintenance", "retired")
RESERVABLE_STATUSES = {"available"}
# Derived for display and filtering; never stored.
CHECKED_OUT_STATUS = "checked-out"
DISPLAY_STATUSES = EQUIPMENT_STATUSES + (CHECKED_OUT_STATUS,)


@dataclass(frozen=True)
class ExpandedLine:
    equipment_id: int
    quantity: int
    is_dependency: bool = False
    parent_equipment_id: Optional[int] = None


def condition_rank(condition: str | None) -> int:
    value = (condition or "").strip().lower()
    if value not in EQUIPMENT_CONDITIONS:
        raise ValidationError(f"Unknown condition: {condition}", {"allowed": list(EQUIPMENT_CONDITIONS)})
    return EQUIPMENT_CONDITIONS.index(value)


def _normalize_choice(value: str | None, allowed: Iterable[str], label: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in allowed:
        raise ValidationError(f"Invalid {label}: {value}", {"allowed": list(allowed)})
    return normalized


def _parse_specifications(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def get_category(db: Session, tenant_id: int, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if not category or category.TenantID != tenant_id:
        raise NotFound("Category not found.", {"categoryID": category_id})
    return category


def list_categories(db: Session, tenant_id: int) -> list[Category]:
    return list(
        db.execute(
            select(Category).where(Category.TenantID == tenant_id).order_by(Category.CategoryName)
        ).scalars().all()
    )


def create_category(db: Session, ctx: TenantContext, payload: CategoryCreate) -> Category:
    with audit_failures(db, ctx, action="create", entity_type="Category"):
        require_role(ctx, "manager")
        name = (payload.categoryName or "").strip()
        if not name:
            raise ValidationError("categoryName is required.")
        duplicate = db.execute(
            select(Category.CategoryID)
            .where(Category.TenantID == ctx.tenant_id)
            .where(func.lower(Category.CategoryName) == name.lower())
        ).first()
        if duplicate:
            raise ValidationError(f"Category {name} already exists.")
        category = Category(
            TenantID=ctx.tenant_id,
            CategoryName=name,
            Description=payload.description,
            CreatedDate=utc_now(),
        )
        db.add(category)
        db.flush()
        record_audit(
            db,
            ctx,
            action="create",
            entity_type="Category",
            entity_id=category.CategoryID,
            after=serialize_category(category),
        )
        db.commit()
    return category


def get_equipment(db: Session, tenant_id: int, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment or equipment.TenantID != tenant_id:
        raise NotFound("Equipment not found.", {"equipmentID": equipment_id})
    return equipment


def list_equipment(
    db: Session,
    tenant_id: int,
    *,
    search: str | None = None,
    category_id: int | None = None,
    status: str | None = None,
) -> list[Equipment]:
    stmt = select(Equipment).where(Equipment.TenantID == tenant_id)
    term = (search or "").strip().lower()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(
                func.lower(Equipment.EquipmentName).like(pattern),
                func.lower(func.coalesce(Equipment.Description, "")).like(pattern),
            )
        )
    if category_id is not None:
        stmt = stmt.where(Equipment.CategoryID == category_id)
    wanted = _normalize_choice(status, DISPLAY_STATUSES, "status") if status else None
    if wanted and wanted != CHECKED_OUT_STATUS:
        stmt = stmt.where(Equipment.Status == wanted)
    rows = list(db.execute(stmt.order_by(Equipment.EquipmentName, Equipment.EquipmentID)).scalars().all())
    if wanted in ("available", CHECKED_OUT_STATUS):
        usage = checked_out_quantities(db, tenant_id, [row.EquipmentID for row in rows])
        rows = [row for row in rows if display_status(row, usage.get(row.EquipmentID, 0)) == wanted]
    return rows


def checked_out_quantities(db: Session, tenant_id: int, equipment_ids: Iterable[int] | None = None) -> dict[int, int]:
    """Units currently handed out, i.e. held by reservations in stored status active (overdue included)."""
    stmt = (
        select(ReservationItem.EquipmentID, func.coalesce(func.sum(ReservationItem.Quantity), 0))
        .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
        .where(Reservation.TenantID == tenant_id)
        .where(Reservation.Status == "active")
        .group_by(ReservationItem.EquipmentID)
    )
    if equipment_ids is not None:
        ids = list(equipment_ids)
        if not ids:
            return {}
        stmt = stmt.where(ReservationItem.EquipmentID.in_(ids))
    return {int(equipment_id): int(quantity) for equipment_id, quantity in db.execute(stmt).all()}


def display_status(equipment: Equipment, checked_out: int) -> str:
    if equipment.Status != "available":
        return equipment.Status
    if checked_out > 0 and checked_out >= int(equipment.TotalQuantity or 0):
        return CHECKED_OUT_STATUS
    return "available"


def _apply_equipment_payload(db: Session, tenant_id: int, equipment: Equipment, payload: EquipmentUpsert) -> None:
    if payload.equipmentName is not None:
        name = payload.equipmentName.strip()
        if not name:
            raise ValidationError("equipmentName must not be empty.")
        equipment.EquipmentName = name
    if payload.description is not None:
        equipment.Description = payload.description.strip() or None
    if payload.categoryID is not None:
        equipment.CategoryID = get_category(db, tenant_id, payload.categoryID).CategoryID
    if payload.totalQuantity is not None:
        if payload.totalQuantity < 0:
            raise ValidationError("totalQuantity must be zero or greater.")
        equipment.TotalQuantity = int(payload.totalQuantity)
    if payload.condition is not None:
        equipment.Condition = _normalize_choice(payload.condition, EQUIPMENT_CONDITIONS, "condition")
    if payload.status is not None:
        equipment.Status = _normalize_choice(payload.status, EQUIPMENT_STATUSES, "status")
    if payload.specifications is not None:
        equipment.Specifications = json.dumps(payload.specifications, ensure_ascii=True, sort_keys=True)
    if payload.imagePath is not None:
        equipment.ImagePath = payload.imagePath.strip() or None
    if payload.lastMaintenance is not None:
        equipment.LastMaintenance = payload.lastMaintenance


def create_equipment(db: Session, ctx: TenantContext, payload: EquipmentUpsert) -> Equipment:
    with audit_failures(db, ctx, action="create", entity_type="Equipment"):
        require_role(ctx, "manager")
        if not (payload.equipmentName or "").strip():
            raise ValidationError("equipmentName is required.")
        equipment = Equipment(
            TenantID=ctx.tenant_id,
            TotalQuantity=1,
            Condition="good",
            Status="available",
            CreatedDate=utc_now(),
            UpdatedDate=utc_now(),
        )
        _apply_equipment_payload(db, ctx.tenant_id, equipment, payload)
        db.add(equipment)
        db.flush()
        record_audit(
            db,
            ctx,
            action="create",
            entity_type="Equipment",
            entity_id=equipment.EquipmentID,
            after=serialize_equipment(equipment),
        )
        db.commit()
    return equipment


def update_equipment(db: Session, ctx: TenantContext, equipment_id: int, payload: EquipmentUpsert) -> Equipment:
    with audit_failures(db, ctx, action="update", entity_type="Equipment", entity_id=equipment_id):
        require_role(ctx, "manager")
        equipment = get_equipment(db, ctx.tenant_id, equipment_id)
        before = serialize_equipment(equipment)
        _apply_equipment_payload(db, ctx.tenant_id, equipment, payload)
        equipment.UpdatedDate = utc_now()
        record_audit(
            db,
            ctx,
            action="update",
            entity_type="Equipment",
            entity_id=equipment.EquipmentID,
            before=before,
            after=serialize_equipment(equipment),
        )
        db.commit()
    return equipment


def _dependency_graph(db: Session, tenant_id: int) -> dict[int, list[EquipmentDependency]]:
    graph: dict[int, list[EquipmentDependency]] = defaultdict(list)
    rows = db.execute(
        select(EquipmentDependency).where(EquipmentDependency.TenantID == tenant_id)
    ).scalars().all()
    for dependency in rows:
        graph[dependency.ParentEquipmentID].append(dependency)
    return graph


def _find_path(graph: dict[int, list[EquipmentDependency]], start: int, target: int) -> list[int] | None:
    stack: list[tuple[int, list[int]]] = [(start, [start])]
    seen: set[int] = set()
    while stack:
        node, path = stack.pop()
        if node == target:
            return path
        if node in seen:
            continue
        seen.add(node)
        for edge in graph.get(node, []):
            stack.append((edge.ChildEquipmentID, path + [edge.ChildEquipmentID]))
    return None


def add_dependency(db: Session, ctx: TenantContext, parent_id: int, payload: DependencyUpsert) -> EquipmentDependency:
    """Link parent -> child, rejecting self links and anything that would close a cycle."""
    with audit_failures(db, ctx, action="add_dependency", entity_type="Equipment", entity_id=parent_id):
        require_role(ctx, "manager")
        parent = get_equipment(db, ctx.tenant_id, parent_id)
        child = get_equipment(db, ctx.tenant_id, payload.childEquipmentID)
        if parent.EquipmentID == child.EquipmentID:
            raise ValidationError("Equipment cannot depend on itself.", {"equipmentID": parent_id})
        dependency_type = _normalize_choice(payload.dependencyType, DEPENDENCY_TYPES, "dependencyType")

        graph = _dependency_graph(db, ctx.tenant_id)
        cycle = _find_path(graph, child.EquipmentID, parent.EquipmentID)
        if cycle:
            raise ValidationError(
                "Dependency would create a cycle.",
                {"cycle": [parent.EquipmentID] + cycle},
            )

        existing = next(
            (edge for edge in graph.get(parent.EquipmentID, []) if edge.ChildEquipmentID == child.EquipmentID),
            None,
        )
        before = serialize_dependency(existing) if existing else None
        if existing:
            existing.DependencyType = dependency_type
            existing.Quantity = int(payload.quantity)
            dependency = existing
        else:
            dependency = EquipmentDependency(
                TenantID=ctx.tenant_id,
                ParentEquipmentID=parent.EquipmentID,
                ChildEquipmentID=child.EquipmentID,
                DependencyType=dependency_type,
                Quantity=int(payload.quantity),
                CreatedDate=utc_now(),
            )
            db.add(dependency)
        db.flush()
        record_audit(
            db,
            ctx,
            action="add_dependency",
            entity_type="Equipment",
            entity_id=parent.EquipmentID,
            before=before,
            after=serialize_dependency(dependency),
        )
        db.commit()
    return dependency


def remove_dependency(db: Session, ctx: TenantContext, parent_id: int, child_id: int) -> None:
    with audit_failures(db, ctx, action="remove_dependency", entity_type="Equipment", entity_id=parent_id):
        require_role(ctx, "manager")
        get_equipment(db, ctx.tenant_id, parent_id)
        dependency = db.execute(
            select(EquipmentDependency)
            .where(EquipmentDependency.TenantID == ctx.tenant_id)
            .where(EquipmentDependency.ParentEquipmentID == parent_id)
            .where(EquipmentDependency.ChildEquipmentID == child_id)
        ).scalars().first()
        if not dependency:
            raise NotFound("Dependency not found.", {"parentEquipmentID": parent_id, "childEquipmentID": child_id})
        before = serialize_dependency(dependency)
        db.delete(dependency)
        record_audit(
            db,
            ctx,
            action="remove_dependency",
            entity_type="Equipment",
            entity_id=parent_id,
            before=before,
        )
        db.commit()


def list_dependencies(db: Session, tenant_id: int, equipment_id: int) -> list[EquipmentDependency]:
    get_equipment(db, tenant_id, equipment_id)
    return list(
        db.execute(
            select(EquipmentDependency)
            .where(EquipmentDependency.TenantID == tenant_id)
            .where(EquipmentDependency.ParentEquipmentID == equipment_id)
            .order_by(EquipmentDependency.ChildEquipmentID)
        ).scalars().all()
    )


def expand_dependencies(
    db: Session,
    tenant_id: int,
    requested: dict[int, int],
    dependency_types: Iterable[str] = ("required",),
) -> list[ExpandedLine]:
    """Requested lines plus the transitive dependencies of the given types.

    Child quantity is the link quantity times the parent's requested quantity.
    """
    wanted_types = set(dependency_types)
    graph = _dependency_graph(db, tenant_id)
    lines: list[ExpandedLine] = []

    def visit(parent_id: int, parent_quantity: int, trail: tuple[int, ...]) -> None:
        for edge in graph.get(parent_id, []):
            if edge.DependencyType not in wanted_types:
                continue
            if edge.ChildEquipmentID in trail:
                # Unreachable while add_dependency guards the graph.
                raise ValidationError(
                    "Equipment dependency cycle detected.",
                    {"cycle": list(trail) + [edge.ChildEquipmentID]},
                )
            quantity = int(edge.Quantity) * parent_quantity
            lines.append(
                ExpandedLine(
                    equipment_id=edge.ChildEquipmentID,
                    quantity=quantity,
                    is_dependency=True,
                    parent_equipment_id=parent_id,
                )
            )
            visit(edge.ChildEquipmentID, quantity, trail + (edge.ChildEquipmentID,))

    for equipment_id, quantity in requested.items():
        lines.append(ExpandedLine(equipment_id=equipment_id, quantity=quantity))
        visit(equipment_id, quantity, (equipment_id,))
    return lines


def serialize_category(category: Category) -> dict:
    return {
        "categoryID": category.CategoryID,
        "categoryName": category.CategoryName,
        "description": category.Description,
    }


def serialize_dependency(dependency: EquipmentDependency) -> dict:
    return {
        "parentEquipmentID": dependency.ParentEquipmentID,
        "childEquipmentID": dependency.ChildEquipmentID,
        "dependencyType": dependency.DependencyType,
        "quantity": dependency.Quantity,
    }


def serialize_equipment(equipment: Equipment, checked_out: int | None = None) -> dict:
    payload = {
        "equipmentID": equipment.EquipmentID,
        "tenantID": equipment.TenantID,
        "categoryID": equipment.CategoryID,
        "categoryName": equipment.Category.CategoryName if equipment.Category else None,
        "equipmentName": equipment.EquipmentName,
        "description": equipment.Description,
        "totalQuantity": equipment.TotalQuantity,
        "condition": equipment.Condition,
        "status": equipment.Status,
        "specifications": _parse_specifications(equipment.Specifications),
        "imagePath": equipment.ImagePath,
        "lastMaintenance": equipment.LastMaintenance,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
    if checked_out is not None:
        payload["checkedOutQuantity"] = checked_out
        payload["availableNow"] = max(0, int(equipment.TotalQuantity or 0) - checked_out)
        payload["displayStatus"] = display_status(equipment, checked_out)
    return payload
