from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from attendance_integrity.errors import ApiError
from attendance_integrity.models import (
    Anomaly,
    AnomalyKind,
    AnomalySeverity,
    AnomalyStatus,
    AttendanceEvent,
    AttendanceKind,
    EventStatus,
)
from attendance_integrity.services.reports import pair_sessions, summarize_month, today_status

from integrity_support import SqliteTestCase

PARIS = ZoneInfo("Europe/Paris")


def _utc(day: int, hour: int, minute: int = 0, *, month: int = 3) -> datetime:
    return datetime(2026, month, day, hour, minute, tzinfo=timezone.utc)


class PairSessionsTests(unittest.TestCase):
    def test_pairs_in_chronological_order(self) -> None:
        pairing = pair_sessions(
            [
                (AttendanceKind.CHECK_OUT, _utc(2, 17)),
                (AttendanceKind.CHECK_IN, _utc(2, 8, 30)),
            ]
        )

        self.assertEqual(len(pairing.sessions), 1)
        self.assertEqual(pairing.sessions[0].minutes, 510)
        self.assertEqual(pairing.unmatched_check_ins, 0)
        self.assertEqual(pairing.unmatched_check_outs, 0)

    def test_orphans_are_counted(self) -> None:
        pairing = pair_sessions(
            [
                (AttendanceKind.CHECK_OUT, _utc(2, 7)),
                (AttendanceKind.CHECK_IN, _utc(2, 8)),
                (AttendanceKind.CHECK_IN, _utc(2, 9)),
                (AttendanceKind.CHECK_OUT, _utc(2, 12)),
                (AttendanceKind.CHECK_IN, _utc(2, 13)),
            ]
        )

        self.assertEqual([item.minutes for item in pairing.sessions], [180])
        self.assertEqual(pairing.unmatched_check_ins, 2)
        self.assertEqual(pairing.unmatched_check_outs, 1)

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        pairing = pair_sessions(
            [
                (AttendanceKind.CHECK_IN, datetime(2026, 3, 2, 8, 0)),
                (AttendanceKind.CHECK_OUT, _utc(2, 9)),
            ]
        )

        self.assertEqual(pairing.sessions[0].minutes, 60)


class MonthlySummaryTests(SqliteTestCase):
    def _add_event(self, kind: AttendanceKind, occurred_at: datetime, status: EventStatus = EventStatus.ACCEPTED) -> int:
        with self.session_factory() as db:
            event = AttendanceEvent(
                subject_user_id="u1",
                kind=kind,
                occurred_at=occurred_at,
                status=status,
                created_at=occurred_at,
            )
            db.add(event)
            db.commit()
            return event.id

    def _flag(self, event_id: int) -> None:
        with self.session_factory() as db:
            db.add(
                Anomaly(
                    kind=AnomalyKind.FACE_VERIFICATION_FAIL,
                    severity=AnomalySeverity.HIGH,
                    subject_entity_type="attendance_event",
                    subject_entity_id=str(event_id),
                    attendance_event_id=event_id,
                    subject_user_id="u1",
                    description="Face verification failed",
                    context={},
                    status=AnomalyStatus.PENDING,
                    created_at=_utc(3, 8),
                )
            )
            db.commit()

    def test_summary_counts_and_worked_minutes(self) -> None:
        self._add_event(AttendanceKind.CHECK_IN, _utc(2, 8))
        self._add_event(AttendanceKind.CHECK_OUT, _utc(2, 16, 30))
        rejected_id = self._add_event(AttendanceKind.CHECK_IN, _utc(3, 8), EventStatus.REJECTED)
        self._flag(rejected_id)
        self._add_event(AttendanceKind.CHECK_IN, _utc(3, 8, 5), EventStatus.PENDING_REVIEW)
        self._add_event(AttendanceKind.CHECK_OUT, _utc(3, 12, 5))
        # Previous month in Paris time, excluded.
        self._add_event(AttendanceKind.CHECK_IN, datetime(2026, 2, 28, 22, 30, tzinfo=timezone.utc))

        with self.session_factory() as db:
            summary = summarize_month(db, subject_user_id="u1", year=2026, month=3, tz=PARIS)

        self.assertEqual(summary.total_events, 5)
        self.assertEqual(summary.check_ins, 3)
        self.assertEqual(summary.check_outs, 2)
        self.assertEqual(summary.rejected_events, 1)
        self.assertEqual(summary.pending_review_events, 1)
        self.assertEqual(summary.anomalies_flagged, 1)
        self.assertEqual(summary.worked_minutes, 510 + 240)
        self.assertEqual(summary.unmatched_check_ins, 0)
        self.assertEqual(summary.worked_minutes_by_day, {date(2026, 3, 2): 510, date(2026, 3, 3): 240})

    def test_month_boundary_follows_local_timezone(self) -> None:
        # 23:30 UTC on March 31st is already April 1st in Paris (summer time).
        self._add_event(AttendanceKind.CHECK_IN, _utc(31, 23, 30))

        with self.session_factory() as db:
            march = summarize_month(db, subject_user_id="u1", year=2026, month=3, tz=PARIS)
            april = summarize_month(db, subject_user_id="u1", year=2026, month=4, tz=PARIS)

        self.assertEqual(march.total_events, 0)
        self.assertEqual(april.total_events, 1)
        self.assertEqual(april.unmatched_check_ins, 1)

    def test_invalid_period_is_rejected(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(ApiError) as ctx:
                summarize_month(db, subject_user_id="u1", year=2026, month=13, tz=PARIS)
        self.assertEqual(ctx.exception.code, "INVALID_PERIOD")

    def test_empty_month(self) -> None:
        with self.session_factory() as db:
            summary = summarize_month(db, subject_user_id="nobody", year=2026, month=3, tz=PARIS)

        self.assertEqual(summary.total_events, 0)
        self.assertEqual(summary.worked_minutes, 0)
        self.assertEqual(summary.worked_minutes_by_day, {})
        self.assertEqual(summary.year, 2026)
        self.assertEqual(summary.month, 3)


class TodayStatusTests(SqliteTestCase):
    _add_event = MonthlySummaryTests._add_event

    def _status(self, now_utc: datetime):  # type: ignore[no-untyped-def]
        with self.session_factory() as db:
            return today_status(db, subject_user_id="u1", tz=PARIS, now_utc=now_utc)

    def test_day_is_taken_in_local_time(self) -> None:
        self._add_event(AttendanceKind.CHECK_IN, _utc(1, 22))
        self._add_event(AttendanceKind.CHECK_IN, _utc(1, 23, 30))
        self._add_event(AttendanceKind.CHECK_OUT, _utc(2, 16))

        status = self._status(_utc(2, 18))

        self.assertEqual(status.day, date(2026, 3, 2))
        self.assertTrue(status.has_checked_in)
        self.assertTrue(status.has_checked_out)
        self.assertFalse(status.is_checked_in)
        self.assertEqual(status.events_today, 2)
        self.assertEqual(status.last_event_kind, AttendanceKind.CHECK_OUT)
        self.assertEqual(status.last_event_at, _utc(2, 16))

    def test_open_session(self) -> None:
        self._add_event(AttendanceKind.CHECK_IN, _utc(2, 8))

        status = self._status(_utc(2, 10))

        self.assertTrue(status.has_checked_in)
        self.assertFalse(status.has_checked_out)
        self.assertTrue(status.is_checked_in)

    def test_rejected_check_in_leaves_the_day_open(self) -> None:
        self._add_event(AttendanceKind.CHECK_IN, _utc(2, 8), EventStatus.REJECTED)

        status = self._status(_utc(2, 10))

        self.assertFalse(status.has_checked_in)
        self.assertFalse(status.is_checked_in)
        self.assertEqual(status.events_today, 0)
        self.assertIsNone(status.last_event_kind)
        self.assertIsNone(status.last_event_at)


if __name__ == "__main__":
    unittest.main()
