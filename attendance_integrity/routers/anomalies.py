from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attendance_integrity.audit import list_audit_entries
from attendance_integrity.container import Services, get_db_session, get_services
from attendance_integrity.errors import get_request_id
from attendance_integrity.models import AnomalySeverity, AnomalyStatus
from attendance_integrity.schemas import (
    AnomalyRead,
    AnomalyResolveRequest,
    AnomalyWithEventRead,
    AttendanceEventRead,
    AuditEntryRead,
)
from attendance_integrity.security import Actor, require_oversight

router = APIRouter(prefix="/api", tags=["anomalies"])


@router.get("/anomalies", response_model=list[AnomalyWithEventRead])
def list_anomalies(
    status: AnomalyStatus | None = None,
    severity: AnomalySeverity | None = None,
    subject_user_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _actor: Actor = Depends(require_oversight),
    services: Services = Depends(get_services),
) -> list[AnomalyWithEventRead]:
    rows = services.review.list_anomalies(
        status=status,
        severity=severity,
        subject_user_id=subject_user_id,
        limit=limit,
    )
    return [
        AnomalyWithEventRead(
            anomaly=AnomalyRead.model_validate(anomaly),
            event=AttendanceEventRead.model_validate(event) if event is not None else None,
        )
        for anomaly, event in rows
    ]


@router.get("/anomalies/{anomaly_id}", response_model=AnomalyRead)
def get_anomaly(
    anomaly_id: int,
    _actor: Actor = Depends(require_oversight),
    services: Services = Depends(get_services),
) -> AnomalyRead:
    return AnomalyRead.model_validate(services.review.get(anomaly_id))


@router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyRead)
def resolve_anomaly(
    anomaly_id: int,
    payload: AnomalyResolveRequest,
    request: Request,
    actor: Actor = Depends(require_oversight),
    services: Services = Depends(get_services),
) -> AnomalyRead:
    anomaly = services.review.resolve(
        anomaly_id,
        actor.user_id,
        payload.outcome,
        payload.note,
        request_id=get_request_id(request),
    )
    return AnomalyRead.model_validate(anomaly)


@router.get("/audit-logs", response_model=list[AuditEntryRead])
def list_audit_logs(
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_user_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _actor: Actor = Depends(require_oversight),
    db: Session = Depends(get_db_session),
) -> list[AuditEntryRead]:
    rows = list_audit_entries(
        db,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        limit=limit,
    )
    return [AuditEntryRead.model_validate(item) for item in rows]
