from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_integrity.models import (
    AnomalyKind,
    AnomalySeverity,
    AnomalyStatus,
    AttendanceKind,
    AuditSeverity,
    CaptureMethod,
    EventStatus,
    NotificationPriority,
    TrustLevel,
)


class AttendanceSubmission(BaseModel):
    photo: str | None = None
    capture_method: CaptureMethod | None = None
    fingerprint: dict[str, Any] | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_geolocation(self) -> "AttendanceSubmission":
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be provided together")
        if self.accuracy_m is not None and self.lat is None:
            raise ValueError("accuracy_m requires lat and lng")
        return self


class AttendanceEventCreate(AttendanceSubmission):
    kind: AttendanceKind


class AnomalyRead(BaseModel):
    id: int
    kind: AnomalyKind
    severity: AnomalySeverity
    subject_entity_type: str
    subject_entity_id: str
    attendance_event_id: int | None
    subject_user_id: str | None
    description: str
    context: dict[str, Any]
    status: AnomalyStatus
    created_at: datetime
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_note: str | None

    model_config = ConfigDict(from_attributes=True)


class AttendanceEventRead(BaseModel):
    id: int
    subject_user_id: str
    kind: AttendanceKind
    occurred_at: datetime
    capture_method: CaptureMethod | None
    device_fingerprint_id: int | None
    source_ip: str | None
    lat: float | None
    lng: float | None
    accuracy_m: float | None
    face_verified: bool
    verification_score: int
    status: EventStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationRead(BaseModel):
    matched: bool
    confidence: int
    reason: str


class AttendanceRecordResponse(BaseModel):
    event_id: int
    status: EventStatus
    event: AttendanceEventRead
    anomaly: AnomalyRead | None = None
    verification: VerificationRead | None = None
    device_id: int | None = None
    is_new_device: bool = False


class MonthlySummaryRead(BaseModel):
    subject_user_id: str
    year: int
    month: int
    total_events: int
    check_ins: int
    check_outs: int
    rejected_events: int
    pending_review_events: int
    anomalies_flagged: int
    worked_minutes: int
    unmatched_check_ins: int
    unmatched_check_outs: int
    worked_minutes_by_day: dict[date, int]

    model_config = ConfigDict(from_attributes=True)


class TodayStatusRead(BaseModel):
    subject_user_id: str
    day: date
    has_checked_in: bool
    has_checked_out: bool
    is_checked_in: bool
    events_today: int
    last_event_kind: AttendanceKind | None = None
    last_event_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DeviceRead(BaseModel):
    id: int
    owner_user_id: str
    fingerprint_hash: str
    platform: str | None
    browser: str | None
    user_agent: str | None
    trust_level: TrustLevel
    first_seen_at: datetime
    last_seen_at: datetime
    last_ip: str | None

    model_config = ConfigDict(from_attributes=True)


class AnomalyResolveRequest(BaseModel):
    outcome: Literal["RESOLVED", "FALSE_POSITIVE", "IGNORED"]
    note: str | None = Field(default=None, max_length=2000)


class AnomalyWithEventRead(BaseModel):
    anomaly: AnomalyRead
    event: AttendanceEventRead | None = None


class AuditEntryRead(BaseModel):
    id: int
    actor_user_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    severity: AuditSeverity
    details: dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    recipient_user_id: str
    title: str
    body: str
    priority: NotificationPriority
    details: dict[str, Any]
    is_read: bool
    created_at: datetime
    read_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class PushSubscribeRequest(BaseModel):
    subscription: dict[str, Any]


class PushSubscribeResponse(BaseModel):
    ok: bool
    subscription_id: int
