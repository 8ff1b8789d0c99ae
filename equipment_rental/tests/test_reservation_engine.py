import sys
import threading
import unittest
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from rental_fixtures import (
    TempDatabase,
    add_equipment,
    add_user,
    ctx_for,
    next_year,
    reservation_request,
    seed_tenant,
)

from models.rental_models import Reservation, utc_now
from schemas.equipment import DependencyUpsert
from services.approval_workflow import approve_reservation
from services.equipment_service import add_dependency
from services.errors import EquipmentUnavailable, Forbidden, ValidationError
from services.reservation_engine import check_availability, create_reservation, intervals_overlap


class OverlapPredicateTests(unittest.TestCase):
    def test_half_open_intervals(self):
        a = next_year(6, 15)
        b = next_year(6, 17)
        self.assertTrue(intervals_overlap(a, b, next_year(6, 16), next_year(6, 18)))
        self.assertFalse(intervals_overlap(a, b, b, next_year(6, 19)))
        self.assertFalse(intervals_overlap(a, b, next_year(6, 13), a))
        self.assertTrue(intervals_overlap(a, b, next_year(6, 14), next_year(6, 20)))


class ReservationEngineTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()
        self.tenant, self.admin = seed_tenant(self.db)
        self.student = add_user(self.db, self.tenant.TenantID, "sam@physics.example.edu")
        self.faculty = add_user(self.db, self.tenant.TenantID, "fay@physics.example.edu", role="faculty")
        self.scope = add_equipment(self.db, self.tenant.TenantID, "Oscilloscope", total=2)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def _approved(self, items, start, end):
        reservation = create_reservation(self.db, ctx_for(self.student), reservation_request(items, start, end))
        return approve_reservation(self.db, ctx_for(self.faculty), reservation.ReservationID)

    def test_overlapping_request_beyond_capacity_is_rejected(self):
        first = self._approved([(self.scope.EquipmentID, 2)], next_year(6, 15), next_year(6, 17))

        with self.assertRaises(EquipmentUnavailable) as raised:
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.scope.EquipmentID, 1)], next_year(6, 16), next_year(6, 18)),
            )
        conflicts = raised.exception.details["conflicts"]
        self.assertEqual(conflicts[0]["equipmentID"], self.scope.EquipmentID)
        self.assertEqual(conflicts[0]["committedQuantity"], 2)
        self.assertEqual(
            [row["reservationID"] for row in conflicts[0]["conflictingReservations"]],
            [first.ReservationID],
        )

    def test_back_to_back_reservations_do_not_conflict(self):
        self._approved([(self.scope.EquipmentID, 2)], next_year(6, 15), next_year(6, 17))
        follow_up = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.scope.EquipmentID, 2)], next_year(6, 17), next_year(6, 19)),
        )
        self.assertEqual(follow_up.Status, "pending")

    def test_end_not_after_start_is_validation_error(self):
        for end in (next_year(6, 15), next_year(6, 14)):
            with self.assertRaises(ValidationError):
                create_reservation(
                    self.db,
                    ctx_for(self.student),
                    reservation_request([(self.scope.EquipmentID, 1)], next_year(6, 15), end),
                )
        self.assertEqual(self.db.query(Reservation).count(), 0)

    def test_start_in_the_past_is_rejected(self):
        start = utc_now() - timedelta(days=1)
        with self.assertRaises(ValidationError):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.scope.EquipmentID, 1)], start, start + timedelta(days=2)),
            )

    def test_interval_longer_than_tenant_maximum_is_rejected(self):
        with self.assertRaises(ValidationError):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.scope.EquipmentID, 1)], next_year(6, 1), next_year(7, 15)),
            )

    def test_quantity_above_total_is_validation_error(self):
        with self.assertRaises(ValidationError):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.scope.EquipmentID, 3)], next_year(6, 15), next_year(6, 16)),
            )

    def test_duplicate_lines_are_merged(self):
        reservation = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request(
                [(self.scope.EquipmentID, 1), (self.scope.EquipmentID, 1)],
                next_year(6, 15),
                next_year(6, 16),
            ),
        )
        self.assertEqual([(i.EquipmentID, i.Quantity) for i in reservation.ReservationItems], [(self.scope.EquipmentID, 2)])

    def test_equipment_in_maintenance_cannot_be_reserved(self):
        broken = add_equipment(self.db, self.tenant.TenantID, "Laser", total=1, status="maintenance")
        with self.assertRaises(EquipmentUnavailable):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(broken.EquipmentID, 1)], next_year(6, 15), next_year(6, 16)),
            )

    def test_positive_availability_guarantees_create(self):
        self._approved([(self.scope.EquipmentID, 1)], next_year(6, 15), next_year(6, 17))
        start, end = next_year(6, 16), next_year(6, 18)

        availability = check_availability(self.db, ctx_for(self.student), self.scope.EquipmentID, start, end, 1)
        self.assertTrue(availability["isAvailable"])
        self.assertEqual(availability["committedQuantity"], 1)
        self.assertEqual(availability["availableQuantity"], 1)

        created = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.scope.EquipmentID, 1)], start, end),
        )
        self.assertIsNotNone(created.ReservationID)

    def test_pending_reservations_hold_nothing_until_approved(self):
        first = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.scope.EquipmentID, 2)], next_year(6, 15), next_year(6, 17)),
        )
        second = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.scope.EquipmentID, 2)], next_year(6, 16), next_year(6, 18)),
        )

        approve_reservation(self.db, ctx_for(self.faculty), first.ReservationID)
        with self.assertRaises(EquipmentUnavailable):
            approve_reservation(self.db, ctx_for(self.faculty), second.ReservationID)
        self.db.expire_all()
        self.assertEqual(self.db.get(Reservation, second.ReservationID).Status, "pending")

    def test_hold_pending_setting_counts_pending_reservations(self):
        tenant, _ = seed_tenant(self.db, slug="chemistry", settings={"holdPendingReservations": True})
        student = add_user(self.db, tenant.TenantID, "cy@chemistry.example.edu")
        flask = add_equipment(self.db, tenant.TenantID, "Flask", total=1)
        create_reservation(
            self.db,
            ctx_for(student),
            reservation_request([(flask.EquipmentID, 1)], next_year(6, 15), next_year(6, 17)),
        )
        with self.assertRaises(EquipmentUnavailable):
            create_reservation(
                self.db,
                ctx_for(student),
                reservation_request([(flask.EquipmentID, 1)], next_year(6, 16), next_year(6, 18)),
            )

    def test_skip_approval_creates_approved_reservation(self):
        tenant, _ = seed_tenant(self.db, slug="biology", settings={"skipApproval": True})
        student = add_user(self.db, tenant.TenantID, "bo@biology.example.edu")
        microscope = add_equipment(self.db, tenant.TenantID, "Microscope", total=1)
        reservation = create_reservation(
            self.db,
            ctx_for(student),
            reservation_request([(microscope.EquipmentID, 1)], next_year(6, 15), next_year(6, 17)),
        )
        self.assertEqual(reservation.Status, "approved")

    def test_reservation_numbers_are_sequential_per_tenant(self):
        numbers = [
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.scope.EquipmentID, 1)], next_year(6, day), next_year(6, day + 1)),
            ).ReservationNumber
            for day in (1, 3)
        ]
        self.assertEqual(numbers, ["RSV-0001", "RSV-0002"])

        tenant, _ = seed_tenant(self.db, slug="geology")
        student = add_user(self.db, tenant.TenantID, "gus@geology.example.edu")
        hammer = add_equipment(self.db, tenant.TenantID, "Rock hammer", total=1)
        other = create_reservation(
            self.db,
            ctx_for(student),
            reservation_request([(hammer.EquipmentID, 1)], next_year(6, 1), next_year(6, 2)),
        )
        self.assertEqual(other.ReservationNumber, "RSV-0001")

    def test_student_cannot_book_on_behalf_of_someone_else(self):
        with self.assertRaises(Forbidden):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request(
                    [(self.scope.EquipmentID, 1)],
                    next_year(6, 15),
                    next_year(6, 16),
                    user_id=self.faculty.UserID,
                ),
            )

    def test_equipment_of_another_tenant_is_unknown(self):
        tenant, _ = seed_tenant(self.db, slug="history")
        foreign = add_equipment(self.db, tenant.TenantID, "Projector", total=5)
        with self.assertRaises(ValidationError):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(foreign.EquipmentID, 1)], next_year(6, 15), next_year(6, 16)),
            )


class DependencyExpansionTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()
        self.tenant, self.admin = seed_tenant(self.db)
        self.student = add_user(self.db, self.tenant.TenantID, "sam@physics.example.edu")
        self.camera = add_equipment(self.db, self.tenant.TenantID, "Camera", total=3)
        self.battery = add_equipment(self.db, self.tenant.TenantID, "Battery", total=4)
        self.charger = add_equipment(self.db, self.tenant.TenantID, "Charger", total=4)
        self.tripod = add_equipment(self.db, self.tenant.TenantID, "Tripod", total=1)
        admin_ctx = ctx_for(self.admin)
        add_dependency(self.db, admin_ctx, self.camera.EquipmentID, DependencyUpsert(childEquipmentID=self.battery.EquipmentID, quantity=2))
        add_dependency(self.db, admin_ctx, self.battery.EquipmentID, DependencyUpsert(childEquipmentID=self.charger.EquipmentID, quantity=1))
        add_dependency(
            self.db,
            admin_ctx,
            self.camera.EquipmentID,
            DependencyUpsert(childEquipmentID=self.tripod.EquipmentID, dependencyType="optional"),
        )

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_required_dependencies_are_expanded_recursively(self):
        reservation = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.camera.EquipmentID, 2)], next_year(6, 15), next_year(6, 16)),
        )
        lines = {(item.EquipmentID, item.Quantity, bool(item.IsDependency)) for item in reservation.ReservationItems}
        self.assertEqual(
            lines,
            {
                (self.camera.EquipmentID, 2, False),
                (self.battery.EquipmentID, 4, True),
                (self.charger.EquipmentID, 4, True),
            },
        )

    def test_dependency_shortage_blocks_the_parent(self):
        availability = check_availability(
            self.db,
            ctx_for(self.student),
            self.camera.EquipmentID,
            next_year(6, 15),
            next_year(6, 16),
            3,
        )
        self.assertFalse(availability["isAvailable"])
        self.assertEqual(availability["availableQuantity"], 3)
        with self.assertRaises(EquipmentUnavailable):
            create_reservation(
                self.db,
                ctx_for(self.student),
                reservation_request([(self.camera.EquipmentID, 3)], next_year(6, 15), next_year(6, 16)),
            )

    def test_optional_dependencies_follow_tenant_setting(self):
        from schemas.tenants import TenantSettingsUpdate
        from services.user_directory_service import update_tenant_settings

        update_tenant_settings(
            self.db,
            ctx_for(self.admin),
            TenantSettingsUpdate(availabilityDependencyTypes=["required", "optional"]),
        )
        reservation = create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.camera.EquipmentID, 1)], next_year(6, 15), next_year(6, 16)),
        )
        self.assertIn(self.tripod.EquipmentID, {item.EquipmentID for item in reservation.ReservationItems})

    def test_cycles_and_self_links_are_rejected(self):
        admin_ctx = ctx_for(self.admin)
        with self.assertRaises(ValidationError):
            add_dependency(self.db, admin_ctx, self.charger.EquipmentID, DependencyUpsert(childEquipmentID=self.camera.EquipmentID))
        with self.assertRaises(ValidationError):
            add_dependency(self.db, admin_ctx, self.camera.EquipmentID, DependencyUpsert(childEquipmentID=self.camera.EquipmentID))


class ConcurrentReservationTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        with self.database.Session() as db:
            tenant, _ = seed_tenant(db, settings={"skipApproval": True})
            self.tenant_id = tenant.TenantID
            self.students = [
                add_user(db, tenant.TenantID, f"student{index}@physics.example.edu") for index in range(2)
            ]
            self.equipment_id = add_equipment(db, tenant.TenantID, "Spectrometer", total=1).EquipmentID

    def tearDown(self):
        self.database.close()

    def test_exactly_one_request_wins_the_last_unit(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt(student):
            with self.database.Session() as db:
                barrier.wait()
                try:
                    create_reservation(
                        db,
                        ctx_for(student),
                        reservation_request([(self.equipment_id, 1)], next_year(6, 15), next_year(6, 17)),
                    )
                    result = "created"
                except EquipmentUnavailable:
                    result = "unavailable"
                with outcomes_lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(student,)) for student in self.students]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes), ["created", "unavailable"])
        with self.database.Session() as db:
            self.assertEqual(db.query(Reservation).filter(Reservation.Status == "approved").count(), 1)


if __name__ == "__main__":
    unittest.main()
