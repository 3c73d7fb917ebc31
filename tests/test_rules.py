from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from attendance_integrity.models import AnomalyKind, AnomalySeverity, AttendanceKind, EventStatus
from attendance_integrity.services.rules import (
    AnomalyRuleEvaluator,
    EventContext,
    EventHistory,
    PriorEvent,
    RuleConfig,
)
from attendance_integrity.services.verification import VerificationResult

MORNING_UTC = datetime(2026, 1, 13, 8, 0, tzinfo=timezone.utc)


def _context(
    *,
    kind: AttendanceKind = AttendanceKind.CHECK_IN,
    occurred_at: datetime = MORNING_UTC,
    photo_supplied: bool = False,
) -> EventContext:
    return EventContext(
        subject_user_id="u1",
        kind=kind,
        occurred_at=occurred_at,
        photo_supplied=photo_supplied,
    )


def _prior(event_id: int, kind: AttendanceKind, minutes_before: int) -> PriorEvent:
    return PriorEvent(event_id=event_id, kind=kind, occurred_at=MORNING_UTC - timedelta(minutes=minutes_before))


MATCHED = VerificationResult(matched=True, confidence=90, reason="face matched")
HARD_FAIL = VerificationResult(matched=False, confidence=40, reason="face does not match")
LOW_CONFIDENCE = VerificationResult(matched=False, confidence=68, reason="low confidence - requires review")


class AnomalyRuleEvaluatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.evaluator = AnomalyRuleEvaluator(RuleConfig())

    def test_clean_event_has_no_finding_and_is_accepted(self) -> None:
        finding = self.evaluator.evaluate(_context(photo_supplied=True), MATCHED, EventHistory())

        self.assertIsNone(finding)
        self.assertEqual(self.evaluator.derive_status(finding, MATCHED), EventStatus.ACCEPTED)

    def test_evaluate_is_deterministic_for_identical_inputs(self) -> None:
        history = EventHistory(events=(_prior(7, AttendanceKind.CHECK_IN, 2),), recent_device_count=5)
        context = _context(photo_supplied=True)

        first = self.evaluator.evaluate(context, LOW_CONFIDENCE, history)
        for _ in range(5):
            self.assertEqual(self.evaluator.evaluate(context, LOW_CONFIDENCE, history), first)

    def test_verification_failure_wins_over_duplicate(self) -> None:
        history = EventHistory(events=(_prior(3, AttendanceKind.CHECK_IN, 2),))

        finding = self.evaluator.evaluate(_context(photo_supplied=True), HARD_FAIL, history)

        self.assertIsNotNone(finding)
        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.FACE_VERIFICATION_FAIL)
        self.assertEqual(finding.severity, AnomalySeverity.HIGH)
        self.assertEqual(finding.context["confidence"], 40)
        self.assertEqual(self.evaluator.derive_status(finding, HARD_FAIL), EventStatus.REJECTED)

    def test_low_confidence_mismatch_is_high_but_only_pending_review(self) -> None:
        finding = self.evaluator.evaluate(_context(photo_supplied=True), LOW_CONFIDENCE, EventHistory())

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.FACE_VERIFICATION_FAIL)
        self.assertEqual(finding.severity, AnomalySeverity.HIGH)
        self.assertEqual(self.evaluator.derive_status(finding, LOW_CONFIDENCE), EventStatus.PENDING_REVIEW)

    def test_missing_photo_skips_verification_by_default(self) -> None:
        self.assertIsNone(self.evaluator.evaluate(_context(), None, EventHistory()))

    def test_missing_photo_fails_verification_in_strict_mode(self) -> None:
        evaluator = AnomalyRuleEvaluator(RuleConfig(require_face_verification=True))

        finding = evaluator.evaluate(_context(), None, EventHistory())

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.FACE_VERIFICATION_FAIL)
        self.assertEqual(finding.context["confidence"], 0)
        self.assertEqual(evaluator.derive_status(finding, None), EventStatus.REJECTED)

    def test_unusual_hours_uses_attendance_timezone(self) -> None:
        night = datetime(2026, 1, 13, 1, 15, tzinfo=timezone.utc)  # 02:15 in Paris

        finding = self.evaluator.evaluate(_context(occurred_at=night, photo_supplied=True), MATCHED, EventHistory())

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.UNUSUAL_HOURS)
        self.assertEqual(finding.severity, AnomalySeverity.MEDIUM)
        self.assertEqual(finding.context["local_time"], "02:15:00")
        self.assertEqual(self.evaluator.derive_status(finding, MATCHED), EventStatus.PENDING_REVIEW)

    def test_unusual_hours_boundaries(self) -> None:
        six_sharp = datetime(2026, 1, 13, 5, 0, tzinfo=timezone.utc)
        ten_pm_sharp = datetime(2026, 1, 13, 21, 0, tzinfo=timezone.utc)
        just_before_six = datetime(2026, 1, 13, 4, 59, tzinfo=timezone.utc)
        just_after_ten_pm = datetime(2026, 1, 13, 21, 1, tzinfo=timezone.utc)

        self.assertIsNone(self.evaluator.evaluate(_context(occurred_at=six_sharp), None, EventHistory()))
        self.assertIsNone(self.evaluator.evaluate(_context(occurred_at=ten_pm_sharp), None, EventHistory()))
        for value in (just_before_six, just_after_ten_pm):
            finding = self.evaluator.evaluate(_context(occurred_at=value), None, EventHistory())
            assert finding is not None
            self.assertEqual(finding.kind, AnomalyKind.UNUSUAL_HOURS)

    def test_duplicate_requires_same_kind_within_window(self) -> None:
        same_kind = EventHistory(events=(_prior(11, AttendanceKind.CHECK_OUT, 3),))
        other_kind = EventHistory(events=(_prior(12, AttendanceKind.CHECK_IN, 3),))
        too_old = EventHistory(events=(_prior(13, AttendanceKind.CHECK_OUT, 6),))

        finding = self.evaluator.evaluate(_context(kind=AttendanceKind.CHECK_OUT), None, same_kind)
        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.DUPLICATE_EVENT)
        self.assertEqual(finding.context["previous_event_id"], 11)
        self.assertEqual(finding.context["seconds_since_previous"], 180)

        self.assertIsNone(self.evaluator.evaluate(_context(kind=AttendanceKind.CHECK_OUT), None, other_kind))
        self.assertIsNone(self.evaluator.evaluate(_context(kind=AttendanceKind.CHECK_OUT), None, too_old))

    def test_missing_checkout_when_previous_event_is_check_in(self) -> None:
        history = EventHistory(
            events=(
                _prior(21, AttendanceKind.CHECK_IN, 600),
                _prior(20, AttendanceKind.CHECK_OUT, 900),
            )
        )

        finding = self.evaluator.evaluate(_context(), None, history)

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.MISSING_CHECKOUT)
        self.assertEqual(finding.severity, AnomalySeverity.LOW)
        self.assertEqual(finding.context["previous_event_id"], 21)

    def test_check_out_after_check_in_is_clean(self) -> None:
        history = EventHistory(events=(_prior(21, AttendanceKind.CHECK_IN, 480),))

        self.assertIsNone(self.evaluator.evaluate(_context(kind=AttendanceKind.CHECK_OUT), None, history))

    def test_device_churn_above_limit(self) -> None:
        self.assertIsNone(self.evaluator.evaluate(_context(), None, EventHistory(recent_device_count=3)))

        finding = self.evaluator.evaluate(_context(), None, EventHistory(recent_device_count=4))

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.DEVICE_CHURN)
        self.assertEqual(finding.severity, AnomalySeverity.MEDIUM)
        self.assertEqual(finding.context["device_count"], 4)

    def test_duplicate_masks_missing_checkout_and_churn(self) -> None:
        history = EventHistory(events=(_prior(31, AttendanceKind.CHECK_IN, 1),), recent_device_count=9)

        finding = self.evaluator.evaluate(_context(), MATCHED, history)

        assert finding is not None
        self.assertEqual(finding.kind, AnomalyKind.DUPLICATE_EVENT)


if __name__ == "__main__":
    unittest.main()
