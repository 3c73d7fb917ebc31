from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from attendance_integrity.container import Services, get_db_session, get_services
from attendance_integrity.errors import get_request_id
from attendance_integrity.models import AttendanceKind
from attendance_integrity.schemas import (
    AnomalyRead,
    AttendanceEventCreate,
    AttendanceEventRead,
    AttendanceRecordResponse,
    AttendanceSubmission,
    MonthlySummaryRead,
    TodayStatusRead,
    VerificationRead,
)
from attendance_integrity.security import Actor, require_actor, require_oversight
from attendance_integrity.services.recorder import AttendanceEvidence, Geolocation, RecordedEvent
from attendance_integrity.services.reports import summarize_month, today_status
from attendance_integrity.timeutils import resolve_timezone

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _evidence_from(payload: AttendanceSubmission, request: Request) -> AttendanceEvidence:
    geolocation = None
    if payload.lat is not None and payload.lng is not None:
        geolocation = Geolocation(lat=payload.lat, lng=payload.lng, accuracy_m=payload.accuracy_m)
    return AttendanceEvidence(
        captured_photo=payload.photo,
        capture_method=payload.capture_method,
        fingerprint=payload.fingerprint,
        source_ip=client_ip(request),
        geolocation=geolocation,
    )


def _to_response(recorded: RecordedEvent) -> AttendanceRecordResponse:
    verification = recorded.verification
    return AttendanceRecordResponse(
        event_id=recorded.event.id,
        status=recorded.event.status,
        event=AttendanceEventRead.model_validate(recorded.event),
        anomaly=AnomalyRead.model_validate(recorded.anomaly) if recorded.anomaly is not None else None,
        verification=(
            VerificationRead(
                matched=verification.matched,
                confidence=verification.confidence,
                reason=verification.reason,
            )
            if verification is not None
            else None
        ),
        device_id=recorded.device.device_id if recorded.device is not None else None,
        is_new_device=bool(recorded.device and recorded.device.is_new_device),
    )


async def _submit(
    kind: AttendanceKind,
    payload: AttendanceSubmission,
    request: Request,
    actor: Actor,
    services: Services,
) -> AttendanceRecordResponse:
    recorded = await services.recorder.record(
        actor.user_id,
        kind,
        _evidence_from(payload, request),
        request_id=get_request_id(request),
    )
    request.state.event_id = recorded.event.id
    request.state.event_status = recorded.event.status.value
    return _to_response(recorded)


@router.post("/events", response_model=AttendanceRecordResponse, status_code=status.HTTP_201_CREATED)
async def submit_event(
    payload: AttendanceEventCreate,
    request: Request,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> AttendanceRecordResponse:
    return await _submit(payload.kind, payload, request, actor, services)


@router.post("/check-in", response_model=AttendanceRecordResponse, status_code=status.HTTP_201_CREATED)
async def check_in(
    payload: AttendanceSubmission,
    request: Request,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> AttendanceRecordResponse:
    return await _submit(AttendanceKind.CHECK_IN, payload, request, actor, services)


@router.post("/check-out", response_model=AttendanceRecordResponse, status_code=status.HTTP_201_CREATED)
async def check_out(
    payload: AttendanceSubmission,
    request: Request,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> AttendanceRecordResponse:
    return await _submit(AttendanceKind.CHECK_OUT, payload, request, actor, services)


@router.get("/me", response_model=list[AttendanceEventRead])
def list_my_events(
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> list[AttendanceEventRead]:
    events = services.recorder.list_events(actor.user_id, start=start, end=end, limit=limit)
    return [AttendanceEventRead.model_validate(item) for item in events]


@router.get("/me/summary", response_model=MonthlySummaryRead)
def my_monthly_summary(
    year: int = Query(ge=2000, le=2100),
    month: int = Query(ge=1, le=12),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db_session),
) -> MonthlySummaryRead:
    summary = summarize_month(
        db,
        subject_user_id=actor.user_id,
        year=year,
        month=month,
        tz=resolve_timezone(services.settings.attendance_timezone),
    )
    return MonthlySummaryRead.model_validate(summary)


@router.get("/me/today", response_model=TodayStatusRead)
def my_today_status(
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db_session),
) -> TodayStatusRead:
    status_today = today_status(
        db,
        subject_user_id=actor.user_id,
        tz=resolve_timezone(services.settings.attendance_timezone),
    )
    return TodayStatusRead.model_validate(status_today)


@router.get("/users/{user_id}", response_model=list[AttendanceEventRead])
def list_user_events(
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _actor: Actor = Depends(require_oversight),
    services: Services = Depends(get_services),
) -> list[AttendanceEventRead]:
    events = services.recorder.list_events(user_id, start=start, end=end, limit=limit)
    return [AttendanceEventRead.model_validate(item) for item in events]
