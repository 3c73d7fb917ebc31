from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_integrity.audit import ANOMALY_RESOLVED, ENTITY_ANOMALY, AuditTrail
from attendance_integrity.errors import AlreadyResolvedError, ApiError, StoreUnavailableError
from attendance_integrity.models import (
    Anomaly,
    AnomalySeverity,
    AnomalyStatus,
    AttendanceEvent,
    AuditSeverity,
)
from attendance_integrity.timeutils import utcnow

logger = logging.getLogger("attendance_integrity.review")

TERMINAL_STATUSES = frozenset({AnomalyStatus.RESOLVED, AnomalyStatus.FALSE_POSITIVE, AnomalyStatus.IGNORED})


def _anomaly_not_found(anomaly_id: int) -> ApiError:
    return ApiError(status_code=404, code="ANOMALY_NOT_FOUND", message=f"Anomaly {anomaly_id} not found.")


class AnomalyReviewWorkflow:
    """PENDING -> RESOLVED | FALSE_POSITIVE | IGNORED, once.

    The linked attendance event is never touched: its status records what was
    known when it was captured.
    """

    def __init__(self, session_factory: Callable[[], Session], audit: AuditTrail):
        self._session_factory = session_factory
        self._audit = audit

    def resolve(
        self,
        anomaly_id: int,
        reviewer_user_id: str,
        outcome: AnomalyStatus | str,
        note: str | None = None,
        *,
        request_id: str | None = None,
    ) -> Anomaly:
        try:
            target_status = AnomalyStatus(outcome)
        except ValueError as exc:
            raise ApiError(
                status_code=422,
                code="INVALID_RESOLUTION",
                message=f"Unknown resolution outcome: {outcome}",
            ) from exc
        if target_status not in TERMINAL_STATUSES:
            raise ApiError(
                status_code=422,
                code="INVALID_RESOLUTION",
                message="Resolution outcome must be RESOLVED, FALSE_POSITIVE or IGNORED.",
            )

        cleaned_note = (note or "").strip() or None
        resolved_at = utcnow()
        with self._session_factory() as db:
            try:
                result = db.execute(
                    update(Anomaly)
                    .where(
                        Anomaly.id == anomaly_id,
                        Anomaly.status == AnomalyStatus.PENDING,
                    )
                    .values(
                        status=target_status,
                        resolved_by=reviewer_user_id,
                        resolved_at=resolved_at,
                        resolution_note=cleaned_note[:2000] if cleaned_note else None,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("anomaly_resolve_write_failed", extra={"anomaly_id": anomaly_id})
                raise StoreUnavailableError() from exc

            anomaly = db.get(Anomaly, anomaly_id)
            if anomaly is None:
                raise _anomaly_not_found(anomaly_id)
            if result.rowcount != 1:
                logger.info(
                    "anomaly_already_resolved",
                    extra={"anomaly_id": anomaly_id, "status": anomaly.status.value, "reviewer": reviewer_user_id},
                )
                raise AlreadyResolvedError(anomaly_id)

        self._audit.record(
            actor_user_id=reviewer_user_id,
            action=ANOMALY_RESOLVED,
            entity_type=ENTITY_ANOMALY,
            entity_id=anomaly_id,
            severity=AuditSeverity.INFO,
            metadata={
                "outcome": target_status.value,
                "note": cleaned_note,
                "attendance_event_id": anomaly.attendance_event_id,
            },
            request_id=request_id,
        )
        return anomaly

    def get(self, anomaly_id: int) -> Anomaly:
        with self._session_factory() as db:
            anomaly = db.get(Anomaly, anomaly_id)
            if anomaly is None:
                raise _anomaly_not_found(anomaly_id)
            return anomaly

    def list_anomalies(
        self,
        *,
        status: AnomalyStatus | None = None,
        severity: AnomalySeverity | None = None,
        subject_user_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[tuple[Anomaly, AttendanceEvent | None]]:
        statement = select(Anomaly, AttendanceEvent).outerjoin(
            AttendanceEvent,
            AttendanceEvent.id == Anomaly.attendance_event_id,
        )
        if status is not None:
            statement = statement.where(Anomaly.status == status)
        if severity is not None:
            statement = statement.where(Anomaly.severity == severity)
        if subject_user_id:
            statement = statement.where(Anomaly.subject_user_id == subject_user_id)
        if since is not None:
            statement = statement.where(Anomaly.created_at >= since)
        statement = statement.order_by(Anomaly.created_at.desc(), Anomaly.id.desc()).limit(max(1, min(limit, 500)))

        with self._session_factory() as db:
            return [(row[0], row[1]) for row in db.execute(statement).all()]
