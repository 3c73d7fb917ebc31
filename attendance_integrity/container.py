from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from fastapi import Request
from sqlalchemy.orm import Session

from attendance_integrity.audit import AuditTrail
from attendance_integrity.services.alerts import AlertFanout, Notifier, RoleDirectory, SqlRoleDirectory
from attendance_integrity.services.fingerprints import FingerprintRegistry
from attendance_integrity.services.push_notifications import InAppPushNotifier
from attendance_integrity.services.recorder import AttendanceRecorder
from attendance_integrity.services.review import AnomalyReviewWorkflow
from attendance_integrity.services.rules import AnomalyRuleEvaluator, RuleConfig
from attendance_integrity.services.verification import (
    FaceMatcher,
    FaceVerificationAdapter,
    HttpFaceMatcher,
    UnconfiguredFaceMatcher,
    load_reference_photo,
)
from attendance_integrity.settings import Settings
from attendance_integrity.timeutils import resolve_timezone


@dataclass
class Services:
    settings: Settings
    session_factory: Callable[[], Session]
    audit: AuditTrail
    alerts: AlertFanout
    registry: FingerprintRegistry
    scorer: FaceVerificationAdapter
    evaluator: AnomalyRuleEvaluator
    recorder: AttendanceRecorder
    review: AnomalyReviewWorkflow

    def close(self) -> None:
        self.alerts.close()


def build_rule_config(settings: Settings) -> RuleConfig:
    return RuleConfig(
        low_confidence_threshold=settings.face_low_confidence_threshold,
        workday_start_hour=settings.workday_start_hour,
        workday_end_hour=settings.workday_end_hour,
        duplicate_window=timedelta(minutes=settings.duplicate_window_minutes),
        device_churn_window=timedelta(days=settings.device_churn_window_days),
        device_churn_max_devices=settings.device_churn_max_devices,
        require_face_verification=settings.require_face_verification,
        timezone=resolve_timezone(settings.attendance_timezone),
    )


def build_face_matcher(settings: Settings) -> FaceMatcher:
    url = (settings.face_matcher_url or "").strip()
    if not url:
        return UnconfiguredFaceMatcher()
    return HttpFaceMatcher(url, timeout_seconds=settings.face_matcher_timeout_seconds)


def build_services(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    notifier: Notifier | None = None,
    role_directory: RoleDirectory | None = None,
    face_matcher: FaceMatcher | None = None,
) -> Services:
    audit = AuditTrail(session_factory)
    alerts = AlertFanout(
        notifier or InAppPushNotifier(session_factory, settings),
        role_directory or SqlRoleDirectory(session_factory),
        audit,
        timeout_seconds=settings.notification_timeout_seconds,
        max_workers=settings.notification_max_workers,
    )
    registry = FingerprintRegistry(session_factory, audit, alerts, oversight_role=settings.oversight_role)
    scorer = FaceVerificationAdapter(
        face_matcher or build_face_matcher(settings),
        load_reference_photo(session_factory),
        audit,
        match_threshold=settings.face_match_threshold,
        low_confidence_threshold=settings.face_low_confidence_threshold,
        min_photo_bytes=settings.photo_min_bytes,
        max_photo_bytes=settings.photo_max_bytes,
    )
    evaluator = AnomalyRuleEvaluator(build_rule_config(settings))
    recorder = AttendanceRecorder(
        session_factory,
        registry=registry,
        scorer=scorer,
        evaluator=evaluator,
        audit=audit,
        alerts=alerts,
        oversight_role=settings.oversight_role,
        auto_trust_verified_devices=settings.auto_trust_verified_devices,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        audit=audit,
        alerts=alerts,
        registry=registry,
        scorer=scorer,
        evaluator=evaluator,
        recorder=recorder,
        review=AnomalyReviewWorkflow(session_factory, audit),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_db_session(request: Request) -> Generator[Session, None, None]:
    db = get_services(request).session_factory()
    try:
        yield db
    finally:
        db.close()
