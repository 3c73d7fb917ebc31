from __future__ import annotations

import unittest

from sqlalchemy import text

from attendance_integrity.models import AttendanceEvent, AttendanceKind, EventStatus
from scripts.db_health_check import run

from integrity_support import MORNING_UTC, SqliteTestCase


class DbHealthCheckTests(SqliteTestCase):
    def _checks(self) -> dict[str, dict[str, object]]:
        return {item["name"]: item for item in run(self.engine)["checks"]}

    def test_fresh_schema_without_alembic_stamp(self) -> None:
        checks = self._checks()

        self.assertEqual(checks["alembic_version"]["status"], "fail")
        self.assertEqual(checks["missing_tables"]["status"], "ok")
        self.assertEqual(checks["duplicate_device_fingerprint"]["status"], "ok")
        self.assertEqual(checks["anomalies_pending_review"]["status"], "ok")
        self.assertEqual(checks["anomaly_orphan_event"]["status"], "ok")

    def test_stamped_schema_with_pending_anomaly(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("create table alembic_version (version_num varchar(32) not null)"))
            conn.execute(text("insert into alembic_version (version_num) values ('0001_initial')"))
        with self.session_factory() as db:
            db.add(
                AttendanceEvent(
                    subject_user_id="u1",
                    kind=AttendanceKind.CHECK_IN,
                    occurred_at=MORNING_UTC,
                    status=EventStatus.PENDING_REVIEW,
                    created_at=MORNING_UTC,
                )
            )
            db.commit()
            db.execute(
                text(
                    "insert into anomalies (kind, severity, subject_entity_type, subject_entity_id, "
                    "attendance_event_id, description, context, status, created_at) values "
                    "('UNUSUAL_HOURS', 'MEDIUM', 'attendance_event', '1', 1, 'night', '{}', 'PENDING', :ts)"
                ),
                {"ts": "2026-01-13 08:00:00.000000"},
            )
            db.commit()

        checks = self._checks()

        self.assertEqual(checks["alembic_version"]["status"], "ok")
        self.assertEqual(checks["migration_up_to_date"]["status"], "ok")
        self.assertEqual(checks["anomalies_pending_review"]["status"], "warn")
        self.assertEqual(checks["anomalies_pending_review"]["details"]["count"], 1)  # type: ignore[index]


if __name__ == "__main__":
    unittest.main()
