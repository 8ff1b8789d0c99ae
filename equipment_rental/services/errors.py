from __future__ import annotations

from typing import Any


class RentalError(RuntimeError):
    code = "RENTAL_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RentalError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFound(RentalError):
    code = "NOT_FOUND"
    status_code = 404


class EquipmentUnavailable(RentalError):
    code = "EQUIPMENT_UNAVAILABLE"
    status_code = 409

    def __init__(self, message: str, conflicts: list[dict[str, Any]]):
        super().__init__(message, {"conflicts": conflicts})
        self.conflicts = conflicts


class InvalidStateTransition(RentalError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid state transition: {current} -> {requested}",
            {"currentState": current, "requestedState": requested},
        )
        self.current = current
        self.requested = requested


class StaleReservationState(RentalError):
    code = "STALE_RESERVATION_STATE"
    status_code = 409


class ReservationBusy(RentalError):
    code = "RESERVATION_BUSY"
    status_code = 409


class Unauthorized(RentalError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(RentalError):
    code = "FORBIDDEN"
    status_code = 403
