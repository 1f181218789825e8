from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime

from fastapi.testclient import TestClient

from db_support import FakeGeocoder, FakePhotoStore, add_user, add_zone, ist, make_session_factory
from fieldops.db import get_db
from fieldops.deps import geocoder_dependency, get_now, photo_store_dependency
from fieldops.main import app
from fieldops.models import User, UserRole
from fieldops.security import create_access_token


def _auth(user: User) -> dict[str, str]:
    token = create_access_token(user_id=user.id, role=user.role, zone_ids=user.zone_ids, name=user.name)
    return {"Authorization": f"Bearer {token}"}


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.now: datetime = ist(2024, 3, 15, 9, 0)
        self.geocoder = FakeGeocoder("MG Road, Bengaluru")
        self.photo_store = FakePhotoStore()

        with self.session_factory() as db:
            zone = add_zone(db, "North")
            self.zone_id = zone.id
            self.engineer = add_user(db, "Asha Rao", zone_ids=(zone.id,))
            self.admin = add_user(db, "Admin", role=UserRole.ADMIN)
            self.manager = add_user(db, "North Manager", role=UserRole.ZONE_MANAGER, zone_ids=(zone.id,))
            self.engineer_headers = _auth(self.engineer)
            self.admin_headers = _auth(self.admin)
            self.manager_headers = _auth(self.manager)

        def _override_get_db() -> Generator[object, None, None]:
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override_get_db
        app.dependency_overrides[get_now] = lambda: self.now
        app.dependency_overrides[geocoder_dependency] = lambda: self.geocoder
        app.dependency_overrides[photo_store_dependency] = lambda: self.photo_store
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _check_in(self) -> dict:
        response = self.client.post(
            "/api/attendance/check-in",
            json={"latitude": 12.97, "longitude": 77.6},
            headers=self.engineer_headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_missing_token_is_rejected(self) -> None:
        response = self.client.get("/api/attendance/status")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")
        self.assertIn("X-Request-Id", response.headers)

    def test_field_engineer_cannot_read_admin_report(self) -> None:
        response = self.client.get("/api/admin/attendance", headers=self.engineer_headers)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_request_validation_errors_use_the_error_envelope(self) -> None:
        response = self.client.post(
            "/api/attendance/check-in",
            json={"longitude": 77.6},
            headers=self.engineer_headers,
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_check_in_and_early_checkout_flow(self) -> None:
        session = self._check_in()
        self.assertEqual(session["status"], "CHECKED_IN")
        self.assertEqual(session["check_in_address"], "MG Road, Bengaluru")

        status = self.client.get("/api/attendance/status", headers=self.engineer_headers).json()
        self.assertTrue(status["is_checked_in"])
        self.assertEqual(status["attendance"]["id"], session["id"])

        self.now = ist(2024, 3, 15, 13, 0)
        early = self.client.post(
            "/api/attendance/check-out",
            json={"attendance_id": session["id"]},
            headers=self.engineer_headers,
        )
        self.assertEqual(early.status_code, 409)
        error = early.json()["error"]
        self.assertEqual(error["code"], "EARLY_CHECKOUT_CONFIRMATION_REQUIRED")
        self.assertTrue(error["details"]["requires_confirmation"])

        confirmed = self.client.post(
            "/api/attendance/check-out",
            json={"attendance_id": session["id"], "confirm_early_checkout": True},
            headers=self.engineer_headers,
        )
        self.assertEqual(confirmed.status_code, 200, confirmed.text)
        body = confirmed.json()
        self.assertTrue(body["early_checkout"])
        self.assertEqual(body["attendance"]["status"], "EARLY_CHECKOUT")
        self.assertEqual(body["attendance"]["total_hours"], 4.0)

    def test_second_check_in_conflicts(self) -> None:
        self._check_in()

        response = self.client.post(
            "/api/attendance/check-in",
            json={"latitude": 12.97, "longitude": 77.6},
            headers=self.engineer_headers,
        )

        self.assertEqual(response.status_code, 409)

    def test_ticket_lifecycle_over_http(self) -> None:
        created = self.client.post(
            "/api/tickets",
            json={"title": "  Chiller leak ", "zone_id": self.zone_id, "assigned_to_id": self.engineer.id},
            headers=self.admin_headers,
        )
        self.assertEqual(created.status_code, 201, created.text)
        ticket = created.json()
        self.assertEqual(ticket["status"], "OPEN")
        self.assertEqual(ticket["title"], "Chiller leak")

        self.now = ist(2024, 3, 15, 10, 0)
        assigned = self.client.patch(
            f"/api/tickets/{ticket['id']}/status",
            json={"status": "ASSIGNED", "comments": "Sending Asha"},
            headers=self.admin_headers,
        )
        self.assertEqual(assigned.status_code, 200, assigned.text)
        body = assigned.json()
        self.assertEqual(body["previous_status"], "OPEN")
        self.assertEqual(body["history"]["time_in_status"], 60)

        transitions = self.client.get(
            f"/api/tickets/{ticket['id']}/transitions",
            headers=self.engineer_headers,
        ).json()
        self.assertEqual(transitions["current"], "ASSIGNED")
        self.assertIn("IN_PROGRESS", transitions["allowed"])
        self.assertNotIn("CLOSED", transitions["allowed"])

        invalid = self.client.patch(
            f"/api/tickets/{ticket['id']}/status",
            json={"status": "CLOSED"},
            headers=self.admin_headers,
        )
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.json()["error"]["code"], "INVALID_TRANSITION")
        self.assertEqual(invalid.json()["error"]["details"], {"from": "ASSIGNED", "to": "CLOSED"})

        history = self.client.get(f"/api/tickets/{ticket['id']}/history", headers=self.engineer_headers).json()
        self.assertEqual([row["status"] for row in history], ["OPEN", "ASSIGNED"])

    def test_unknown_status_is_a_bad_request(self) -> None:
        created = self.client.post("/api/tickets", json={"title": "Door sensor"}, headers=self.admin_headers).json()

        response = self.client.patch(
            f"/api/tickets/{created['id']}/status",
            json={"status": "BOGUS"},
            headers=self.admin_headers,
        )

        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json()["error"]["code"], "INVALID_STATUS")
        self.assertEqual(response.json()["error"]["details"], {"status": "BOGUS"})

    def test_outsider_cannot_read_ticket(self) -> None:
        with self.session_factory() as db:
            outsider = add_user(db, "Other Engineer")
        created = self.client.post("/api/tickets", json={"title": "Door sensor"}, headers=self.admin_headers).json()

        response = self.client.get(f"/api/tickets/{created['id']}", headers=_auth(outsider))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "TICKET_ACCESS_DENIED")

    def test_activity_stages_over_http(self) -> None:
        self._check_in()
        self.now = ist(2024, 3, 15, 10, 0)
        created = self.client.post(
            "/api/activities",
            json={"activity_type": "INSTALLATION", "title": "Fit split AC"},
            headers=self.engineer_headers,
        )
        self.assertEqual(created.status_code, 201, created.text)
        activity_id = created.json()["id"]

        started = self.client.post(
            f"/api/activities/{activity_id}/stages",
            json={"stage": "STARTED", "photos": [{"data": "aGVsbG8=", "filename": "site.jpg"}]},
            headers=self.engineer_headers,
        )
        self.assertEqual(started.status_code, 201, started.text)
        self.assertEqual(started.json()["stage"]["photos"][0]["url"], "/photos/p0.jpg")

        self.now = ist(2024, 3, 15, 11, 0)
        completed = self.client.post(
            f"/api/activities/{activity_id}/stages",
            json={"stage": "COMPLETED"},
            headers=self.engineer_headers,
        ).json()
        self.assertTrue(completed["activity_closed"])
        self.assertEqual(completed["activity"]["duration"], 60)

        stages = self.client.get(f"/api/activities/{activity_id}/stages", headers=self.engineer_headers).json()
        self.assertEqual([row["stage"] for row in stages], ["STARTED", "COMPLETED"])
        self.assertEqual(stages[0]["duration"], 60)

        template = self.client.get("/api/activities/templates/installation", headers=self.engineer_headers).json()
        self.assertEqual(template["activity_type"], "INSTALLATION")

    def test_activity_requires_check_in(self) -> None:
        response = self.client.post(
            "/api/activities",
            json={"activity_type": "MAINTENANCE", "title": "Pump service"},
            headers=self.engineer_headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "CHECK_IN_REQUIRED")

    def test_attendance_reports_for_admin_and_zone_manager(self) -> None:
        session = self._check_in()
        self.now = ist(2024, 3, 15, 19, 30)
        checked_out = self.client.post(
            "/api/attendance/check-out",
            json={"attendance_id": session["id"]},
            headers=self.engineer_headers,
        )
        self.assertEqual(checked_out.status_code, 200, checked_out.text)

        admin_report = self.client.get("/api/admin/attendance", headers=self.admin_headers)
        self.assertEqual(admin_report.status_code, 200, admin_report.text)
        rows = {row["user_id"]: row for row in admin_report.json()["attendance"]}
        self.assertEqual(rows[self.engineer.id]["total_hours"], 10.5)
        self.assertEqual(rows[self.engineer.id]["status"], "CHECKED_OUT")

        zone_report = self.client.get(
            "/api/zone/attendance",
            params={"zone_id": self.zone_id},
            headers=self.manager_headers,
        ).json()
        self.assertEqual([row["user_id"] for row in zone_report["attendance"]], [self.engineer.id])

        detail = self.client.get(f"/api/zone/attendance/{session['id']}", headers=self.manager_headers)
        self.assertEqual(detail.status_code, 200, detail.text)
        self.assertEqual(detail.json()["requested_id"], str(session["id"]))

        summary = self.client.get("/api/admin/attendance/stats", headers=self.admin_headers).json()
        self.assertEqual(summary["period"], "today")


if __name__ == "__main__":
    unittest.main()
