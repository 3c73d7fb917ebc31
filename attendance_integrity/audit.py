from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_integrity.models import AuditEntry, AuditSeverity
from attendance_integrity.timeutils import utcnow

logger = logging.getLogger("attendance_integrity.audit")

ATTENDANCE_CHECK_IN = "ATTENDANCE_CHECK_IN"
ATTENDANCE_CHECK_OUT = "ATTENDANCE_CHECK_OUT"
ANOMALY_DETECTED = "ANOMALY_DETECTED"
ANOMALY_RESOLVED = "ANOMALY_RESOLVED"
ANOMALY_WRITE_FAILED = "ANOMALY_WRITE_FAILED"
NEW_DEVICE_REGISTERED = "NEW_DEVICE_REGISTERED"
DEVICE_TRUSTED = "DEVICE_TRUSTED"
DEVICE_TRUST_REVOKED = "DEVICE_TRUST_REVOKED"
DEVICE_DELETED = "DEVICE_DELETED"
FACE_VERIFICATION_ATTEMPT = "FACE_VERIFICATION_ATTEMPT"
FACE_VERIFICATION_ERROR = "FACE_VERIFICATION_ERROR"
NOTIFICATION_DELIVERY_FAILED = "NOTIFICATION_DELIVERY_FAILED"

ENTITY_ATTENDANCE_EVENT = "attendance_event"
ENTITY_ANOMALY = "anomaly"
ENTITY_DEVICE = "device"
ENTITY_USER = "user"


class AuditTrail:
    """Append-only audit log shared by every component.

    ``record`` never raises: a failed write is rolled back and reported through
    the ``attendance_integrity.audit`` logger so the calling operation carries on.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(
        self,
        *,
        actor_user_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | int | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        metadata: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        normalized_entity_id = str(entity_id) if entity_id is not None else None
        try:
            with self._session_factory() as db:
                db.add(
                    AuditEntry(
                        actor_user_id=actor_user_id,
                        action=action,
                        entity_type=entity_type,
                        entity_id=normalized_entity_id,
                        severity=severity,
                        details=metadata or {},
                        created_at=utcnow(),
                    )
                )
                db.commit()
        except Exception:
            logger.exception(
                "audit_log_write_failed",
                extra={
                    "request_id": request_id,
                    "action": action,
                    "actor_user_id": actor_user_id,
                    "entity_type": entity_type,
                    "entity_id": normalized_entity_id,
                    "severity": severity.value,
                },
            )
            return

        logger.info(
            "audit_event",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_user_id": actor_user_id,
                "entity_type": entity_type,
                "entity_id": normalized_entity_id,
                "severity": severity.value,
                "details": metadata or {},
            },
        )


def list_audit_entries(
    db: Session,
    *,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_user_id: str | None = None,
    limit: int = 100,
) -> list[AuditEntry]:
    stmt = select(AuditEntry)
    if action:
        stmt = stmt.where(AuditEntry.action == action)
    if entity_type:
        stmt = stmt.where(AuditEntry.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditEntry.entity_id == entity_id)
    if actor_user_id:
        stmt = stmt.where(AuditEntry.actor_user_id == actor_user_id)
    stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).limit(max(1, min(limit, 500)))
    return list(db.scalars(stmt).all())
