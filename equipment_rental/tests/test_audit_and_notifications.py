import sys
import unittest
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

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

from models.rental_models import AuditLog, NotificationQueue, TenantSequence, User, utc_now
from schemas.tenants import UserCreate, UserUpdate
from services import notification_service, user_directory_service
from services.approval_workflow import approve_reservation
from services.audit_trail import ANONYMOUS_ACTOR, anonymize_actor, list_audit_entries, serialize_audit_entry
from services.errors import EquipmentUnavailable, Forbidden, ValidationError
from services.notification_service import dispatch_pending, enqueue_notification, list_pending
from services.reservation_engine import create_reservation
from services.tenant_context import get_tenant_settings, next_tenant_sequence
from services.user_directory_service import create_user, erase_user, update_user


class AuditTrailTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()
        self.tenant, self.admin = seed_tenant(self.db)
        self.student = add_user(self.db, self.tenant.TenantID, "sam@physics.example.edu")
        self.faculty = add_user(self.db, self.tenant.TenantID, "fay@physics.example.edu", role="faculty")
        self.manager = add_user(self.db, self.tenant.TenantID, "max@physics.example.edu", role="manager")
        self.scope = add_equipment(self.db, self.tenant.TenantID, "Oscilloscope", total=1)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def _reserve(self, day):
        return create_reservation(
            self.db,
            ctx_for(self.student),
            reservation_request([(self.scope.EquipmentID, 1)], next_year(6, day), next_year(6, day + 1)),
        )

    def test_sequences_increase_per_tenant(self):
        for day in (1, 3, 5):
            self._reserve(day)
        other_tenant, _ = seed_tenant(self.db, slug="chemistry")

        entries = list_audit_entries(self.db, ctx_for(self.manager))
        sequences = [entry.Sequence for entry in entries]
        self.assertEqual(sequences, list(range(1, len(sequences) + 1)))
        self.assertEqual(entries[0].Action, "bootstrap")

        other = self.db.query(AuditLog).filter(AuditLog.TenantID == other_tenant.TenantID).all()
        self.assertEqual([entry.Sequence for entry in other], [1])

    def test_failed_mutation_is_recorded_after_rollback(self):
        first = self._reserve(10)
        approve_reservation(self.db, ctx_for(self.faculty), first.ReservationID)
        with self.assertRaises(EquipmentUnavailable):
            self._reserve(10)

        failures = list_audit_entries(self.db, ctx_for(self.manager), result="failure")
        self.assertEqual(len(failures), 1)
        payload = serialize_audit_entry(failures[0])
        self.assertEqual(payload["action"], "create")
        self.assertEqual(payload["after"]["code"], "EQUIPMENT_UNAVAILABLE")
        self.assertEqual(payload["actor"], f"user:{self.student.UserID}")
        self.assertIsNone(payload["entityID"])

    def test_listing_requires_manager(self):
        with self.assertRaises(Forbidden):
            list_audit_entries(self.db, ctx_for(self.faculty))

    def test_anonymize_rewrites_actor_but_keeps_entries(self):
        self._reserve(1)
        self._reserve(3)
        before_count = self.db.query(AuditLog).count()

        with self.assertRaises(Forbidden):
            anonymize_actor(self.db, ctx_for(self.manager), self.student.UserID)

        rewritten = anonymize_actor(self.db, ctx_for(self.admin), self.student.UserID)
        self.assertEqual(rewritten, 2)
        actors = {entry.ActorRef for entry in self.db.query(AuditLog).all()}
        self.assertNotIn(f"user:{self.student.UserID}", actors)
        self.assertIn(ANONYMOUS_ACTOR, actors)
        # Two new entries: the failed manager attempt and the admin's anonymize.
        self.assertEqual(self.db.query(AuditLog).count(), before_count + 2)

    def test_erase_user_scrubs_personal_data(self):
        self._reserve(1)
        result = erase_user(self.db, ctx_for(self.admin), self.student.UserID)
        self.assertEqual(result["rewrittenEntries"], 1)

        self.db.expire_all()
        user = self.db.get(User, self.student.UserID)
        self.assertFalse(user.IsActive)
        self.assertEqual(user.FullName, "Erased user")
        self.assertNotIn("sam", user.Email)
        self.assertIsNone(user.PasswordHash)

    def test_erase_is_atomic_with_audit_anonymization(self):
        self._reserve(1)
        with mock.patch.object(
            user_directory_service,
            "rewrite_actor",
            side_effect=RuntimeError("audit store unavailable"),
        ):
            with self.assertRaises(RuntimeError):
                erase_user(self.db, ctx_for(self.admin), self.student.UserID)

        self.db.expire_all()
        user = self.db.get(User, self.student.UserID)
        self.assertTrue(user.IsActive)
        self.assertEqual(user.Email, "sam@physics.example.edu")
        self.assertIsNotNone(user.PasswordHash)
        actors = {entry.ActorRef for entry in self.db.query(AuditLog).all()}
        self.assertIn(f"user:{self.student.UserID}", actors)
        self.assertEqual(self.db.query(AuditLog).filter(AuditLog.Action == "erase").count(), 0)

    def test_counter_created_concurrently_is_incremented(self):
        tenant_id = self.tenant.TenantID
        with self.database.Session() as other:
            self.assertEqual(next_tenant_sequence(other, tenant_id, "loan"), 1)
            other.commit()

        real_execute = self.db.execute
        missed = []

        def miss_first_update(statement, *args, **kwargs):
            if not missed:
                missed.append(statement)
                return SimpleNamespace(rowcount=0)
            return real_execute(statement, *args, **kwargs)

        with mock.patch.object(self.db, "execute", side_effect=miss_first_update):
            self.assertEqual(next_tenant_sequence(self.db, tenant_id, "loan"), 2)
        self.db.commit()
        self.assertEqual(len(missed), 1)

        counter = self.db.get(TenantSequence, (tenant_id, "loan"))
        self.assertEqual(counter.LastValue, 2)



class UserDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()
        self.tenant, self.admin = seed_tenant(self.db)
        self.manager = add_user(self.db, self.tenant.TenantID, "max@physics.example.edu", role="manager")

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_admin_creates_and_updates_users(self):
        created = create_user(
            self.db,
            ctx_for(self.admin),
            UserCreate(email="New.Person@Physics.example.edu", fullName="New Person", role="faculty"),
        )
        self.assertEqual(created.Email, "new.person@physics.example.edu")
        self.assertEqual(created.Role, "faculty")

        with self.assertRaises(ValidationError):
            create_user(
                self.db,
                ctx_for(self.admin),
                UserCreate(email="new.person@physics.example.edu", fullName="Duplicate"),
            )

        updated = update_user(self.db, ctx_for(self.admin), created.UserID, UserUpdate(role="manager", isActive=False))
        self.assertEqual(updated.Role, "manager")
        self.assertFalse(updated.IsActive)

    def test_non_admin_cannot_manage_users(self):
        with self.assertRaises(Forbidden):
            create_user(self.db, ctx_for(self.manager), UserCreate(email="x@physics.example.edu", fullName="X"))

    def test_admin_cannot_deactivate_self(self):
        with self.assertRaises(ValidationError):
            update_user(self.db, ctx_for(self.admin), self.admin.UserID, UserUpdate(isActive=False))

    def test_bootstrap_seeds_counters_for_new_tenants(self):
        tenant, _ = seed_tenant(self.db, slug="music")
        names = {
            row.SequenceName
            for row in self.db.query(TenantSequence).filter(TenantSequence.TenantID == tenant.TenantID).all()
        }
        self.assertEqual(names, {"audit", "reservation"})

    def test_bootstrap_validates_settings(self):
        with self.assertRaises(ValidationError):
            seed_tenant(self.db, slug="music", settings={"availabilityDependencyTypes": "required"})
        with self.assertRaises(ValidationError):
            seed_tenant(self.db, slug="music", settings={"skipApprovals": True})
        with self.assertRaises(ValidationError):
            seed_tenant(self.db, slug="music", settings={"availabilityDependencyTypes": ["mandatory"]})

        tenant, _ = seed_tenant(
            self.db,
            slug="music",
            settings={"availabilityDependencyTypes": ["Optional", "required"], "holdPendingReservations": True},
        )
        settings = get_tenant_settings(self.db, tenant.TenantID)
        self.assertEqual(settings["availabilityDependencyTypes"], ["optional", "required"])
        self.assertTrue(settings["holdPendingReservations"])



class NotificationDispatchTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()
        self.tenant, self.admin = seed_tenant(self.db)
        enqueue_notification(
            self.db,
            tenant_id=self.tenant.TenantID,
            recipient_user_id=self.admin.UserID,
            notification_type="ReservationApproved",
            payload="Reservation RSV-0001 was approved.",
        )
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_successful_delivery_marks_sent(self):
        delivered = []
        stats = dispatch_pending(self.db, self.tenant.TenantID, delivered.append)
        self.assertEqual(stats, {"sent": 1, "retrying": 0, "failed": 0})
        self.assertEqual(len(delivered), 1)
        self.assertEqual(list_pending(self.db, self.tenant.TenantID), [])

    def test_failures_back_off_then_give_up(self):
        def broken_sender(notification):
            raise ConnectionError("smtp down")

        now = utc_now()
        with mock.patch.object(notification_service, "NOTIFICATION_MAX_ATTEMPTS", 2):
            first = dispatch_pending(self.db, self.tenant.TenantID, broken_sender, now=now)
            self.assertEqual(first, {"sent": 0, "retrying": 1, "failed": 0})

            notification = self.db.query(NotificationQueue).one()
            self.assertEqual(notification.Attempts, 1)
            self.assertEqual(notification.LastError, "smtp down")
            self.assertGreater(notification.NextAttemptAt, now)

            not_due = dispatch_pending(self.db, self.tenant.TenantID, broken_sender, now=now)
            self.assertEqual(not_due, {"sent": 0, "retrying": 0, "failed": 0})

            later = now + timedelta(hours=1)
            second = dispatch_pending(self.db, self.tenant.TenantID, broken_sender, now=later)
            self.assertEqual(second, {"sent": 0, "retrying": 0, "failed": 1})

        notification = self.db.query(NotificationQueue).one()
        self.assertIsNotNone(notification.FailedAt)
        self.assertEqual(list_pending(self.db, self.tenant.TenantID), [])


if __name__ == "__main__":
    unittest.main()
