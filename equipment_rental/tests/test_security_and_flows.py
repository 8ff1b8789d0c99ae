import sys
import time
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent))

from rental_fixtures import PASSWORD, TempDatabase, add_equipment, add_user, next_year, seed_tenant

import RentalApp as app_module
from models.rental_models import AuditLog
from services.user_access_service import create_session, get_session, remove_session


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        with self.database.Session() as db:
            self.tenant, self.admin = seed_tenant(db)
            self.other_tenant, _ = seed_tenant(db, slug="chemistry")
            self.student = add_user(db, self.tenant.TenantID, "sam@physics.example.edu")
            self.faculty = add_user(db, self.tenant.TenantID, "fay@physics.example.edu", role="faculty")
            self.scope = add_equipment(db, self.tenant.TenantID, "Oscilloscope", total=2)

        def override_db():
            db = self.database.Session()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_rental_db] = override_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.database.close()

    def _login(self, email, tenant="physics", client=None):
        response = (client or self.client).post(
            "/api/auth/login",
            json={"tenant": tenant, "email": email, "password": PASSWORD},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return {"Authorization": f"Bearer {response.json()['sessionToken']}"}

    def _reservation_body(self, quantity, start_day, end_day):
        return {
            "purpose": "Signals lab",
            "startDate": next_year(6, start_day).isoformat() + "Z",
            "endDate": next_year(6, end_day).isoformat() + "Z",
            "items": [{"equipmentID": self.scope.EquipmentID, "quantity": quantity}],
        }

    def _base(self, tenant_id=None):
        return f"/api/tenants/{tenant_id or self.tenant.TenantID}"

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_login_logout_revokes_session_token(self):
        login = self.client.post(
            "/api/auth/login",
            json={"tenant": "physics", "email": "sam@physics.example.edu", "password": PASSWORD},
        )
        self.assertEqual(login.status_code, 200)
        headers = {"X-Session-Token": login.json()["sessionToken"]}

        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["role"], "student")

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)
        self.assertEqual(me_after.json()["error"]["code"], "UNAUTHORIZED")

    def test_login_persists_with_cookie_session(self):
        self._login("sam@physics.example.edu")
        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["email"], "sam@physics.example.edu")

    def test_wrong_password_and_unknown_tenant_share_one_error(self):
        wrong_password = self.client.post(
            "/api/auth/login",
            json={"tenant": "physics", "email": "sam@physics.example.edu", "password": "nope-nope"},
        )
        unknown_tenant = self.client.post(
            "/api/auth/login",
            json={"tenant": "nowhere", "email": "sam@physics.example.edu", "password": PASSWORD},
        )
        self.assertEqual(wrong_password.status_code, 401)
        self.assertEqual(unknown_tenant.status_code, 401)
        self.assertEqual(wrong_password.json()["error"]["message"], unknown_tenant.json()["error"]["message"])

    def test_repeated_failures_are_throttled(self):
        payload = {"tenant": "physics", "email": "throttle@physics.example.edu", "password": "wrong-password"}
        statuses = [self.client.post("/api/auth/login", json=payload).status_code for _ in range(app_module.AUTH_MAX_ATTEMPTS_PER_ACCOUNT + 1)]
        self.assertEqual(statuses[-1], 429)
        self.assertTrue(all(status == 401 for status in statuses[:-1]))

    def test_requests_without_session_are_rejected(self):
        response = TestClient(app_module.app).get(f"{self._base()}/equipment")
        self.assertEqual(response.status_code, 401)

    def test_cross_tenant_access_is_forbidden(self):
        headers = self._login("admin@physics.example.edu")
        response = self.client.get(f"{self._base(self.other_tenant.TenantID)}/equipment", headers=headers)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_conflicting_reservation_returns_error_envelope(self):
        student = self._login("sam@physics.example.edu")
        faculty = self._login("fay@physics.example.edu")

        created = self.client.post(f"{self._base()}/reservations", json=self._reservation_body(2, 15, 17), headers=student)
        self.assertEqual(created.status_code, 201, created.text)
        body = created.json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["reservationNumber"], "RSV-0001")

        approved = self.client.post(f"{self._base()}/reservations/{body['reservationID']}/approve", headers=faculty)
        self.assertEqual(approved.status_code, 200, approved.text)
        self.assertEqual(approved.json()["status"], "approved")

        conflict = self.client.post(
            f"{self._base()}/reservations",
            json=self._reservation_body(1, 16, 18),
            headers={**student, "X-Request-ID": "req-123"},
        )
        self.assertEqual(conflict.status_code, 409)
        error = conflict.json()["error"]
        self.assertEqual(error["code"], "EQUIPMENT_UNAVAILABLE")
        self.assertEqual(error["requestId"], "req-123")
        self.assertEqual(conflict.headers["X-Request-ID"], "req-123")
        self.assertIn("timestamp", error)
        self.assertEqual(error["details"]["conflicts"][0]["conflictingReservations"][0]["reservationID"], body["reservationID"])

    def test_invalid_interval_and_invalid_body_are_validation_errors(self):
        student = self._login("sam@physics.example.edu")
        inverted = self.client.post(f"{self._base()}/reservations", json=self._reservation_body(1, 17, 15), headers=student)
        self.assertEqual(inverted.status_code, 422)
        self.assertEqual(inverted.json()["error"]["code"], "VALIDATION_ERROR")

        missing = self.client.post(f"{self._base()}/reservations", json={"purpose": "x"}, headers=student)
        self.assertEqual(missing.status_code, 422)
        self.assertEqual(missing.json()["error"]["code"], "VALIDATION_ERROR")

    def test_availability_endpoint(self):
        student = self._login("sam@physics.example.edu")
        response = self.client.get(
            f"{self._base()}/equipment/{self.scope.EquipmentID}/availability",
            params={
                "startDate": next_year(6, 15).isoformat(),
                "endDate": next_year(6, 17).isoformat(),
                "quantity": 2,
            },
            headers=student,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertTrue(response.json()["isAvailable"])
        self.assertEqual(response.json()["availableQuantity"], 2)

    def test_students_only_see_their_own_reservations(self):
        student = self._login("sam@physics.example.edu")
        created = self.client.post(f"{self._base()}/reservations", json=self._reservation_body(1, 15, 17), headers=student)
        reservation_id = created.json()["reservationID"]

        with self.database.Session() as db:
            add_user(db, self.tenant.TenantID, "olive@physics.example.edu")
        other = self._login("olive@physics.example.edu")

        self.assertEqual(self.client.get(f"{self._base()}/reservations", headers=other).json(), [])
        hidden = self.client.get(f"{self._base()}/reservations/{reservation_id}", headers=other)
        self.assertEqual(hidden.status_code, 404)

        faculty = self._login("fay@physics.example.edu")
        visible = self.client.get(f"{self._base()}/reservations", headers=faculty).json()
        self.assertEqual([row["reservationID"] for row in visible], [reservation_id])

    def test_student_cannot_manage_catalog_or_read_audit(self):
        student = self._login("sam@physics.example.edu")
        create = self.client.post(
            f"{self._base()}/equipment",
            json={"equipmentName": "Laser", "totalQuantity": 1},
            headers=student,
        )
        self.assertEqual(create.status_code, 403)
        audit = self.client.get(f"{self._base()}/audit", headers=student)
        self.assertEqual(audit.status_code, 403)

    def test_admin_updates_settings_and_runs_notifications(self):
        admin = self._login("admin@physics.example.edu")
        settings = self.client.put(f"{self._base()}/settings", json={"skipApproval": True}, headers=admin)
        self.assertEqual(settings.status_code, 200, settings.text)
        self.assertTrue(settings.json()["settings"]["skipApproval"])

        student = self._login("sam@physics.example.edu")
        created = self.client.post(f"{self._base()}/reservations", json=self._reservation_body(1, 15, 17), headers=student)
        self.assertEqual(created.json()["status"], "approved")

        pending = self.client.get(f"{self._base()}/notifications/pending", headers=admin).json()
        self.assertEqual([n["type"] for n in pending], ["ReservationApproved"])

        run = self.client.post(f"{self._base()}/notifications/run", headers=admin)
        self.assertEqual(run.status_code, 200)
        self.assertEqual(run.json()["sent"], 1)
        self.assertEqual(self.client.get(f"{self._base()}/notifications/pending", headers=admin).json(), [])

        audit = self.client.get(f"{self._base()}/audit", params={"action": "update_settings"}, headers=admin).json()
        self.assertEqual(len(audit), 1)
        self.assertTrue(audit[0]["after"]["skipApproval"])

    def test_rejected_mutations_are_audited_in_callers_tenant(self):
        student = self._login("sam@physics.example.edu")
        foreign_base = self._base(self.other_tenant.TenantID)

        read = self.client.get(f"{foreign_base}/equipment", headers=student)
        self.assertEqual(read.status_code, 403)
        write = self.client.post(f"{foreign_base}/reservations", json=self._reservation_body(1, 15, 17), headers=student)
        self.assertEqual(write.status_code, 403)

        body = self._reservation_body(1, 15, 17)
        del body["endDate"]
        invalid = self.client.post(f"{self._base()}/reservations", json=body, headers=student)
        self.assertEqual(invalid.status_code, 422)
        self.assertEqual(invalid.json()["error"]["code"], "VALIDATION_ERROR")

        with self.database.Session() as db:
            failures = (
                db.query(AuditLog)
                .filter(AuditLog.Result == "failure")
                .order_by(AuditLog.AuditID)
                .all()
            )
        self.assertEqual(
            [(entry.TenantID, entry.Action) for entry in failures],
            [(self.tenant.TenantID, "tenant_access"), (self.tenant.TenantID, "invalid_request")],
        )
        self.assertTrue(all(entry.ActorRef == f"user:{self.student.UserID}" for entry in failures))
        self.assertEqual(failures[0].EntityID, self.other_tenant.TenantID)
        self.assertIn("endDate", failures[1].AfterState)

    def test_failed_login_audit_references_account_id_not_address(self):
        response = self.client.post(
            "/api/auth/login",
            json={"tenant": "physics", "email": "Sam@physics.example.edu", "password": "not-the-password"},
        )
        self.assertEqual(response.status_code, 401)

        with self.database.Session() as db:
            entry = db.query(AuditLog).filter(AuditLog.Action == "login_failed").one()
        self.assertEqual(entry.EntityID, self.student.UserID)
        self.assertNotIn("sam@", (entry.Details or "").lower())

    def test_login_throttle_forgets_idle_keys(self):
        client_ip = "203.0.113.9"
        account_key = "physics:idle@physics.example.edu"
        app_module._record_login_failure(client_ip, account_key)
        self.assertIn(client_ip, app_module._AUTH_ATTEMPTS_BY_IP)

        later = time.time() + app_module.AUTH_ATTEMPT_WINDOW_SECONDS + 5
        with mock.patch.object(app_module.time, "time", return_value=later):
            self.assertIsNone(app_module._check_login_guard(client_ip, account_key))
        self.assertNotIn(client_ip, app_module._AUTH_ATTEMPTS_BY_IP)
        self.assertNotIn(account_key, app_module._AUTH_ATTEMPTS_BY_ACCOUNT)

        app_module._record_login_failure(client_ip, account_key)
        with mock.patch.object(app_module.time, "time", return_value=later + app_module.AUTH_ATTEMPT_WINDOW_SECONDS):
            app_module._record_login_failure("198.51.100.7", "physics:other@physics.example.edu")
        self.assertNotIn(client_ip, app_module._AUTH_ATTEMPTS_BY_IP)
        self.assertNotIn(account_key, app_module._AUTH_ATTEMPTS_BY_ACCOUNT)
        app_module._AUTH_ATTEMPTS_BY_IP.pop("198.51.100.7", None)
        app_module._AUTH_ATTEMPTS_BY_ACCOUNT.pop("physics:other@physics.example.edu", None)

    def test_session_tokens_verify_from_signature(self):
        user = SimpleNamespace(TenantID=self.tenant.TenantID, UserID=self.student.UserID, Role="student")
        token = create_session(user)
        self.assertEqual(get_session(token)["userID"], self.student.UserID)

        encoded, signature = token.split(".", 1)
        self.assertIsNone(get_session(f"{encoded}.{signature[::-1]}"))

        remove_session(token)
        self.assertIsNone(get_session(token))


if __name__ == "__main__":
    unittest.main()
