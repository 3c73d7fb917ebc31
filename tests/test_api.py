from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from attendance_integrity.main import create_app
from attendance_integrity.security import create_access_token

from integrity_support import (
    MORNING_UTC,
    NIGHT_UTC,
    FixedFaceMatcher,
    SqliteTestCase,
    make_photo,
    make_settings,
)

FINGERPRINT = {
    "userAgent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) Safari/605.1.15",
    "platform": "MacIntel",
    "browser": "Safari",
    "screenResolution": "1512x982",
}


class AttendanceApiTests(SqliteTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.settings = make_settings()
        self.add_user("u1")
        self.add_user("u2")
        self.add_user("rh1", role="RH", reference_photo=None)
        self.services = self.build_services(settings=self.settings, face_matcher=FixedFaceMatcher(92))
        app = create_app(
            self.settings,
            engine=self.engine,
            session_factory=self.session_factory,
            services=self.services,
        )
        self.client = TestClient(app)

    def _headers(self, user_id: str, role: str = "EMPLOYEE") -> dict[str, str]:
        token, _, _ = create_access_token(sub=user_id, role=role, settings=self.settings)
        return {"Authorization": f"Bearer {token}"}

    def _check_in(self, user_id: str = "u1", at=MORNING_UTC, **payload):  # type: ignore[no-untyped-def]
        with patch("attendance_integrity.timeutils.utcnow", return_value=at):
            return self.client.post("/api/attendance/check-in", json=payload, headers=self._headers(user_id))

    def test_health_reports_degraded_until_schema_guard_runs(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "degraded")
        self.assertIn("SCHEMA_GUARD_NOT_RUN", body["schema_guard"]["issues"])
        self.assertFalse(body["face_matcher_configured"])

    def test_missing_token_uses_error_envelope_and_echoes_request_id(self) -> None:
        response = self.client.post("/api/attendance/check-in", json={}, headers={"X-Request-Id": "req-42"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["X-Request-Id"], "req-42")
        self.assertEqual(
            response.json(),
            {"error": {"code": "INVALID_TOKEN", "message": "Missing bearer token.", "request_id": "req-42"}},
        )

    def test_check_in_with_photo_and_fingerprint(self) -> None:
        response = self._check_in(photo=make_photo(), capture_method="camera", fingerprint=FINGERPRINT, lat=48.85, lng=2.35)

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "ACCEPTED")
        self.assertIsNone(body["anomaly"])
        self.assertEqual(body["verification"], {"matched": True, "confidence": 92, "reason": "face matched"})
        self.assertTrue(body["is_new_device"])
        self.assertEqual(body["event"]["device_fingerprint_id"], body["device_id"])
        self.assertEqual(body["event"]["kind"], "CHECK_IN")

        devices = self.client.get("/api/devices", headers=self._headers("u1")).json()
        self.assertEqual([item["id"] for item in devices], [body["device_id"]])
        self.assertEqual(devices[0]["trust_level"], "TRUSTED")

    def test_generic_event_endpoint_takes_kind(self) -> None:
        with patch("attendance_integrity.timeutils.utcnow", return_value=MORNING_UTC):
            response = self.client.post(
                "/api/attendance/events",
                json={"kind": "CHECK_OUT"},
                headers=self._headers("u1"),
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["event"]["kind"], "CHECK_OUT")

    def test_invalid_photo_returns_422(self) -> None:
        response = self._check_in(photo="data:image/jpeg;base64,AAAA")

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_PHOTO")
        self.assertEqual(self.client.get("/api/attendance/me", headers=self._headers("u1")).json(), [])

    def test_half_geolocation_is_a_validation_error(self) -> None:
        response = self._check_in(lat=48.85)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_employee_cannot_review_anomalies(self) -> None:
        response = self.client.get("/api/anomalies", headers=self._headers("u1"))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_oversight_review_flow(self) -> None:
        created = self._check_in(at=NIGHT_UTC).json()
        self.assertEqual(created["status"], "PENDING_REVIEW")
        anomaly_id = created["anomaly"]["id"]
        self.assertEqual(created["anomaly"]["kind"], "UNUSUAL_HOURS")
        rh_headers = self._headers("rh1", "RH")

        listed = self.client.get("/api/anomalies", params={"status": "PENDING"}, headers=rh_headers).json()
        self.assertEqual([item["anomaly"]["id"] for item in listed], [anomaly_id])
        self.assertEqual(listed[0]["event"]["id"], created["event_id"])

        resolved = self.client.post(
            f"/api/anomalies/{anomaly_id}/resolve",
            json={"outcome": "FALSE_POSITIVE", "note": "Night inventory shift"},
            headers=rh_headers,
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.json()["status"], "FALSE_POSITIVE")
        self.assertEqual(resolved.json()["resolved_by"], "rh1")

        again = self.client.post(
            f"/api/anomalies/{anomaly_id}/resolve",
            json={"outcome": "RESOLVED"},
            headers=rh_headers,
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["code"], "ANOMALY_ALREADY_RESOLVED")

        audit = self.client.get("/api/audit-logs", params={"action": "ANOMALY_RESOLVED"}, headers=rh_headers).json()
        self.assertEqual(len(audit), 1)
        self.assertEqual(audit[0]["entity_id"], str(anomaly_id))

        events = self.client.get("/api/attendance/me", headers=self._headers("u1")).json()
        self.assertEqual(events[0]["status"], "PENDING_REVIEW")

    def test_pending_is_not_a_resolution_outcome(self) -> None:
        anomaly_id = self._check_in(at=NIGHT_UTC).json()["anomaly"]["id"]

        response = self.client.post(
            f"/api/anomalies/{anomaly_id}/resolve",
            json={"outcome": "PENDING"},
            headers=self._headers("rh1", "RH"),
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_anomaly_alerts_land_in_inboxes(self) -> None:
        self._check_in(at=NIGHT_UTC)

        subject_inbox = self.client.get("/api/notifications", headers=self._headers("u1")).json()
        oversight_inbox = self.client.get("/api/notifications", headers=self._headers("rh1", "RH")).json()

        self.assertEqual([item["title"] for item in subject_inbox], ["MEDIUM attendance anomaly: UNUSUAL_HOURS"])
        self.assertEqual(subject_inbox[0]["priority"], "NORMAL")
        self.assertEqual(oversight_inbox[0]["priority"], "HIGH")

        read = self.client.post(
            f"/api/notifications/{subject_inbox[0]['id']}/read",
            headers=self._headers("u1"),
        )
        self.assertTrue(read.json()["is_read"])
        foreign = self.client.post(
            f"/api/notifications/{oversight_inbox[0]['id']}/read",
            headers=self._headers("u2"),
        )
        self.assertEqual(foreign.status_code, 404)

    def test_foreign_device_cannot_be_trusted(self) -> None:
        device_id = self._check_in(fingerprint=FINGERPRINT).json()["device_id"]

        response = self.client.post(f"/api/devices/{device_id}/trust", headers=self._headers("u2"))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_NOT_FOUND")

    def test_delete_own_device(self) -> None:
        device_id = self._check_in(fingerprint=FINGERPRINT).json()["device_id"]

        response = self.client.delete(f"/api/devices/{device_id}", headers=self._headers("u1"))

        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.client.get("/api/devices", headers=self._headers("u1")).json(), [])

    def test_monthly_summary(self) -> None:
        self._check_in(at=MORNING_UTC)
        with patch("attendance_integrity.timeutils.utcnow", return_value=MORNING_UTC.replace(hour=16)):
            self.client.post("/api/attendance/check-out", json={}, headers=self._headers("u1"))

        response = self.client.get(
            "/api/attendance/me/summary",
            params={"year": 2026, "month": 1},
            headers=self._headers("u1"),
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_events"], 2)
        self.assertEqual(body["worked_minutes"], 480)
        self.assertEqual(body["worked_minutes_by_day"], {"2026-01-13": 480})

    def test_today_status(self) -> None:
        self._check_in(at=MORNING_UTC)

        with patch("attendance_integrity.services.reports.utcnow", return_value=MORNING_UTC.replace(hour=10)):
            response = self.client.get("/api/attendance/me/today", headers=self._headers("u1"))
        with patch("attendance_integrity.services.reports.utcnow", return_value=MORNING_UTC.replace(hour=10)):
            other = self.client.get("/api/attendance/me/today", headers=self._headers("u2")).json()

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["day"], "2026-01-13")
        self.assertTrue(body["has_checked_in"])
        self.assertFalse(body["has_checked_out"])
        self.assertTrue(body["is_checked_in"])
        self.assertEqual(body["last_event_kind"], "CHECK_IN")
        self.assertFalse(other["has_checked_in"])
        self.assertEqual(other["events_today"], 0)

    def test_oversight_reads_any_subject_events(self) -> None:
        event_id = self._check_in(at=MORNING_UTC).json()["event_id"]

        response = self.client.get("/api/attendance/users/u1", headers=self._headers("rh1", "RH"))
        forbidden = self.client.get("/api/attendance/users/u1", headers=self._headers("u2"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.json()], [event_id])
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json()["error"]["code"], "FORBIDDEN")

    def test_push_config_is_public(self) -> None:
        response = self.client.get("/api/push/config")

        self.assertEqual(response.json(), {"enabled": False, "vapid_public_key": None})

    def test_push_subscribe_without_vapid_keys(self) -> None:
        response = self.client.post(
            "/api/push/subscribe",
            json={"subscription": {"endpoint": "https://push.example/1", "keys": {"p256dh": "a", "auth": "b"}}},
            headers=self._headers("u1"),
        )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "PUSH_NOT_CONFIGURED")


if __name__ == "__main__":
    unittest.main()
