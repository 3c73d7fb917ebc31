from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_integrity.audit import (
    ANOMALY_DETECTED,
    ANOMALY_WRITE_FAILED,
    ATTENDANCE_CHECK_IN,
    ATTENDANCE_CHECK_OUT,
    ENTITY_ANOMALY,
    ENTITY_ATTENDANCE_EVENT,
    AuditTrail,
)
from attendance_integrity.errors import ApiError, StoreUnavailableError
from attendance_integrity.models import (
    Anomaly,
    AnomalySeverity,
    AnomalyStatus,
    AttendanceEvent,
    AttendanceKind,
    AuditSeverity,
    CaptureMethod,
    EventStatus,
    TrustLevel,
)
from attendance_integrity.services.alerts import (
    AlertFanout,
    FanoutResult,
    oversight_priority,
    subject_priority,
)
from attendance_integrity.services.fingerprints import (
    DeviceRegistration,
    FingerprintRegistry,
    validate_fingerprint,
)
from attendance_integrity.services.rules import (
    AnomalyRuleEvaluator,
    EventContext,
    EventHistory,
    Finding,
    PriorEvent,
)
from attendance_integrity.services.verification import FaceVerificationAdapter, VerificationResult
from attendance_integrity.timeutils import normalize_ts, utcnow

logger = logging.getLogger("attendance_integrity.recorder")

ANOMALY_AUDIT_SEVERITY: dict[AnomalySeverity, AuditSeverity] = {
    AnomalySeverity.LOW: AuditSeverity.WARNING,
    AnomalySeverity.MEDIUM: AuditSeverity.WARNING,
    AnomalySeverity.HIGH: AuditSeverity.ERROR,
    AnomalySeverity.CRITICAL: AuditSeverity.CRITICAL,
}


@dataclass(frozen=True)
class Geolocation:
    lat: float
    lng: float
    accuracy_m: float | None = None


@dataclass(frozen=True)
class AttendanceEvidence:
    captured_photo: str | None = None
    capture_method: CaptureMethod | None = None
    fingerprint: dict[str, Any] | None = None
    source_ip: str | None = None
    geolocation: Geolocation | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class RecordedEvent:
    event: AttendanceEvent
    anomaly: Anomaly | None
    finding: Finding | None
    verification: VerificationResult | None
    device: DeviceRegistration | None
    fanout: FanoutResult | None = None

    @property
    def status(self) -> EventStatus:
        return self.event.status


@dataclass(frozen=True)
class _Persisted:
    event: AttendanceEvent
    anomaly: Anomaly | None
    finding: Finding | None
    anomaly_error: str | None = None


class SubjectLocks:
    """Process-local mutex per subject, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, subject_user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subject_user_id, asyncio.Lock())
        self._holders[subject_user_id] = self._holders.get(subject_user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[subject_user_id] -= 1
            if self._holders[subject_user_id] == 0:
                self._holders.pop(subject_user_id, None)
                self._locks.pop(subject_user_id, None)

    def __len__(self) -> int:
        return len(self._locks)


def subject_lock_key(subject_user_id: str) -> int:
    digest = hashlib.sha256(subject_user_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def parse_kind(value: AttendanceKind | str) -> AttendanceKind:
    try:
        return AttendanceKind(value)
    except ValueError as exc:
        raise ApiError(
            status_code=422,
            code="INVALID_ATTENDANCE_KIND",
            message=f"Unknown attendance kind: {value}",
        ) from exc


class AttendanceRecorder:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        registry: FingerprintRegistry,
        scorer: FaceVerificationAdapter,
        evaluator: AnomalyRuleEvaluator,
        audit: AuditTrail,
        alerts: AlertFanout,
        oversight_role: str,
        auto_trust_verified_devices: bool = True,
        history_limit: int = 50,
        locks: SubjectLocks | None = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._scorer = scorer
        self._evaluator = evaluator
        self._audit = audit
        self._alerts = alerts
        self._oversight_role = oversight_role
        self._auto_trust = auto_trust_verified_devices
        self._history_limit = max(1, history_limit)
        self._locks = locks or SubjectLocks()

    async def record(
        self,
        subject_user_id: str,
        kind: AttendanceKind | str,
        evidence: AttendanceEvidence | None = None,
        *,
        request_id: str | None = None,
    ) -> RecordedEvent:
        evidence = evidence or AttendanceEvidence()
        subject_user_id = (subject_user_id or "").strip()
        if not subject_user_id:
            raise ApiError(status_code=422, code="INVALID_SUBJECT", message="Subject user id is required.")
        attendance_kind = parse_kind(kind)
        if evidence.captured_photo is not None:
            self._scorer.validate(evidence.captured_photo)
        if evidence.fingerprint is not None:
            validate_fingerprint(evidence.fingerprint)

        verification, device = await self._gather_evidence(subject_user_id, evidence, request_id=request_id)
        context = EventContext(
            subject_user_id=subject_user_id,
            kind=attendance_kind,
            occurred_at=normalize_ts(evidence.occurred_at),
            photo_supplied=evidence.captured_photo is not None,
            device_id=device.device_id if device is not None else None,
        )

        async with self._locks.hold(subject_user_id):
            persist_task = asyncio.ensure_future(
                asyncio.to_thread(self._persist, context, evidence, verification, device)
            )
            try:
                persisted = await asyncio.shield(persist_task)
            except asyncio.CancelledError:
                # The worker thread keeps writing; the subject stays locked until it is done.
                await asyncio.wait({persist_task})
                logger.warning(
                    "attendance_record_cancelled",
                    extra={
                        "request_id": request_id,
                        "subject_user_id": subject_user_id,
                        "persisted": persist_task.exception() is None,
                    },
                )
                raise

        await asyncio.to_thread(self._after_commit, persisted, verification, device, request_id)

        fanout: FanoutResult | None = None
        if persisted.finding is not None:
            fanout = await self._fan_out(persisted, request_id=request_id)
        if device is not None and device.is_new_device:
            await self._alert_new_device(subject_user_id, device, request_id=request_id)

        logger.info(
            "attendance_event_recorded",
            extra={
                "request_id": request_id,
                "event_id": persisted.event.id,
                "subject_user_id": subject_user_id,
                "kind": attendance_kind.value,
                "status": persisted.event.status.value,
                "anomaly_kind": persisted.finding.kind.value if persisted.finding else None,
                "anomaly_id": persisted.anomaly.id if persisted.anomaly else None,
            },
        )
        return RecordedEvent(
            event=persisted.event,
            anomaly=persisted.anomaly,
            finding=persisted.finding,
            verification=verification,
            device=device,
            fanout=fanout,
        )

    def list_events(
        self,
        subject_user_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[AttendanceEvent]:
        statement = select(AttendanceEvent).where(AttendanceEvent.subject_user_id == subject_user_id)
        if start is not None:
            statement = statement.where(AttendanceEvent.occurred_at >= normalize_ts(start))
        if end is not None:
            statement = statement.where(AttendanceEvent.occurred_at < normalize_ts(end))
        statement = statement.order_by(AttendanceEvent.occurred_at.desc(), AttendanceEvent.id.desc()).limit(
            max(1, min(limit, 500))
        )
        with self._session_factory() as db:
            return list(db.scalars(statement).all())

    async def _gather_evidence(
        self,
        subject_user_id: str,
        evidence: AttendanceEvidence,
        *,
        request_id: str | None,
    ) -> tuple[VerificationResult | None, DeviceRegistration | None]:
        async def _score() -> VerificationResult | None:
            if evidence.captured_photo is None:
                return None
            return await asyncio.to_thread(self._scorer.score, subject_user_id, evidence.captured_photo)

        async def _register() -> DeviceRegistration | None:
            if evidence.fingerprint is None:
                return None
            return await asyncio.to_thread(
                self._registry.register,
                subject_user_id,
                evidence.fingerprint,
                evidence.source_ip,
                alert_new_device=False,
            )

        verification, device = await asyncio.gather(_score(), _register(), return_exceptions=True)
        if isinstance(verification, BaseException):
            raise verification
        if isinstance(device, ApiError):
            raise device
        if isinstance(device, BaseException):
            if not isinstance(device, Exception):
                raise device
            logger.warning(
                "device_registration_failed",
                extra={
                    "request_id": request_id,
                    "subject_user_id": subject_user_id,
                    "error": str(device) or device.__class__.__name__,
                },
            )
            device = None
        return verification, device

    def _persist(
        self,
        context: EventContext,
        evidence: AttendanceEvidence,
        verification: VerificationResult | None,
        device: DeviceRegistration | None,
    ) -> _Persisted:
        with self._session_factory() as db:
            try:
                self._acquire_subject_lock(db, context.subject_user_id)
                history = self._load_history(db, context)
                finding = self._evaluator.evaluate(context, verification, history)
                status = self._evaluator.derive_status(finding, verification)
                event = self._build_event(context, evidence, verification, status)
                db.add(event)
                db.flush()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception(
                    "attendance_event_write_failed",
                    extra={"subject_user_id": context.subject_user_id, "kind": context.kind.value},
                )
                raise StoreUnavailableError() from exc

            if finding is None:
                try:
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.exception(
                        "attendance_event_write_failed",
                        extra={"subject_user_id": context.subject_user_id, "kind": context.kind.value},
                    )
                    raise StoreUnavailableError() from exc
                return _Persisted(event=event, anomaly=None, finding=None)

            try:
                anomaly = self._add_anomaly(db, event, finding)
                db.commit()
                return _Persisted(event=event, anomaly=anomaly, finding=finding)
            except SQLAlchemyError as exc:
                db.rollback()
                anomaly_error = str(exc) or exc.__class__.__name__
                logger.exception(
                    "anomaly_write_failed",
                    extra={
                        "subject_user_id": context.subject_user_id,
                        "anomaly_kind": finding.kind.value,
                        "severity": finding.severity.value,
                    },
                )

            # The event alone must still be recorded.
            try:
                self._acquire_subject_lock(db, context.subject_user_id)
                event = self._build_event(context, evidence, verification, status)
                db.add(event)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception(
                    "attendance_event_write_failed",
                    extra={"subject_user_id": context.subject_user_id, "kind": context.kind.value},
                )
                raise StoreUnavailableError() from exc
            return _Persisted(event=event, anomaly=None, finding=finding, anomaly_error=anomaly_error)

    def _acquire_subject_lock(self, db: Session, subject_user_id: str) -> None:
        if db.get_bind().dialect.name != "postgresql":
            return
        db.execute(text("SELECT pg_advisory_xact_lock(:lock_key)"), {"lock_key": subject_lock_key(subject_user_id)})

    def _load_history(self, db: Session, context: EventContext) -> EventHistory:
        config = self._evaluator.config
        occurred_at = normalize_ts(context.occurred_at)
        prior_events = select(AttendanceEvent).where(
            AttendanceEvent.subject_user_id == context.subject_user_id,
            AttendanceEvent.occurred_at <= occurred_at,
        )
        newest_first = (AttendanceEvent.occurred_at.desc(), AttendanceEvent.id.desc())

        rows: dict[int, AttendanceEvent] = {}
        previous = db.scalar(prior_events.order_by(*newest_first).limit(1))
        if previous is not None:
            rows[previous.id] = previous
        in_window = db.scalars(
            prior_events.where(AttendanceEvent.occurred_at >= occurred_at - config.duplicate_window)
            .order_by(*newest_first)
            .limit(self._history_limit)
        ).all()
        for row in in_window:
            rows[row.id] = row

        events = tuple(
            PriorEvent(event_id=row.id, kind=row.kind, occurred_at=normalize_ts(row.occurred_at))
            for row in sorted(rows.values(), key=lambda item: (normalize_ts(item.occurred_at), item.id), reverse=True)
        )
        device_count = self._registry.count_recent_distinct_devices(
            context.subject_user_id,
            config.device_churn_window,
            now=occurred_at,
            db=db,
        )
        return EventHistory(events=events, recent_device_count=device_count)

    def _build_event(
        self,
        context: EventContext,
        evidence: AttendanceEvidence,
        verification: VerificationResult | None,
        status: EventStatus,
    ) -> AttendanceEvent:
        geolocation = evidence.geolocation
        return AttendanceEvent(
            subject_user_id=context.subject_user_id,
            kind=context.kind,
            occurred_at=normalize_ts(context.occurred_at),
            captured_photo=evidence.captured_photo,
            capture_method=evidence.capture_method,
            device_fingerprint_id=context.device_id,
            source_ip=evidence.source_ip,
            lat=geolocation.lat if geolocation else None,
            lng=geolocation.lng if geolocation else None,
            accuracy_m=geolocation.accuracy_m if geolocation else None,
            face_verified=bool(verification and verification.matched),
            verification_score=verification.confidence if verification else 0,
            status=status,
            created_at=utcnow(),
        )

    def _add_anomaly(self, db: Session, event: AttendanceEvent, finding: Finding) -> Anomaly:
        anomaly = Anomaly(
            kind=finding.kind,
            severity=finding.severity,
            subject_entity_type=ENTITY_ATTENDANCE_EVENT,
            subject_entity_id=str(event.id),
            attendance_event_id=event.id,
            subject_user_id=event.subject_user_id,
            description=finding.reason[:1000],
            context=dict(finding.context),
            status=AnomalyStatus.PENDING,
            created_at=utcnow(),
        )
        db.add(anomaly)
        db.flush()
        return anomaly

    def _after_commit(
        self,
        persisted: _Persisted,
        verification: VerificationResult | None,
        device: DeviceRegistration | None,
        request_id: str | None,
    ) -> None:
        event = persisted.event
        finding = persisted.finding
        self._audit.record(
            actor_user_id=event.subject_user_id,
            action=ATTENDANCE_CHECK_IN if event.kind == AttendanceKind.CHECK_IN else ATTENDANCE_CHECK_OUT,
            entity_type=ENTITY_ATTENDANCE_EVENT,
            entity_id=event.id,
            severity=AuditSeverity.WARNING if finding is not None else AuditSeverity.INFO,
            metadata={
                "status": event.status.value,
                "face_verified": event.face_verified,
                "verification_score": event.verification_score,
                "device_fingerprint_id": event.device_fingerprint_id,
                "source_ip": event.source_ip,
                "anomaly_kind": finding.kind.value if finding else None,
            },
            request_id=request_id,
        )

        if persisted.anomaly is not None and finding is not None:
            self._audit.record(
                actor_user_id=None,
                action=ANOMALY_DETECTED,
                entity_type=ENTITY_ANOMALY,
                entity_id=persisted.anomaly.id,
                severity=ANOMALY_AUDIT_SEVERITY[finding.severity],
                metadata={
                    "attendance_event_id": event.id,
                    "kind": finding.kind.value,
                    "severity": finding.severity.value,
                    "description": finding.reason,
                },
                request_id=request_id,
            )
        elif finding is not None:
            self._audit.record(
                actor_user_id=None,
                action=ANOMALY_WRITE_FAILED,
                entity_type=ENTITY_ATTENDANCE_EVENT,
                entity_id=event.id,
                severity=AuditSeverity.ERROR,
                metadata={
                    "kind": finding.kind.value,
                    "severity": finding.severity.value,
                    "description": finding.reason,
                    "error": persisted.anomaly_error,
                },
                request_id=request_id,
            )

        if (
            self._auto_trust
            and event.status == EventStatus.ACCEPTED
            and verification is not None
            and verification.matched
            and device is not None
            and device.trust_level == TrustLevel.UNTRUSTED
        ):
            try:
                self._registry.trust(device.device_id, event.subject_user_id, system=True, event_id=event.id)
            except Exception as exc:
                logger.warning(
                    "device_auto_trust_failed",
                    extra={
                        "request_id": request_id,
                        "device_id": device.device_id,
                        "event_id": event.id,
                        "error": str(exc) or exc.__class__.__name__,
                    },
                )

    async def _alert_new_device(
        self,
        subject_user_id: str,
        device: DeviceRegistration,
        *,
        request_id: str | None,
    ) -> None:
        try:
            await asyncio.to_thread(self._registry.alert_new_device, subject_user_id, device)
        except Exception:
            logger.exception(
                "new_device_alert_failed",
                extra={"request_id": request_id, "device_id": device.device_id},
            )

    async def _fan_out(self, persisted: _Persisted, *, request_id: str | None) -> FanoutResult | None:
        finding = persisted.finding
        if finding is None:
            return None
        event = persisted.event
        try:
            return await asyncio.to_thread(
                self._alerts.notify_subject_and_role,
                subject_user_id=event.subject_user_id,
                role=self._oversight_role,
                title=f"{finding.severity.value} attendance anomaly: {finding.kind.value}",
                message=finding.reason,
                subject_priority=subject_priority(finding.severity),
                role_priority=oversight_priority(finding.severity),
                metadata={
                    "attendance_event_id": event.id,
                    "anomaly_id": persisted.anomaly.id if persisted.anomaly else None,
                    "kind": finding.kind.value,
                    "severity": finding.severity.value,
                    "status": event.status.value,
                },
            )
        except Exception:
            logger.exception(
                "alert_fanout_failed",
                extra={"request_id": request_id, "event_id": event.id},
            )
            return None
