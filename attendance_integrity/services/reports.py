from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from attendance_integrity.errors import ApiError
from attendance_integrity.models import Anomaly, AttendanceEvent, AttendanceKind, EventStatus
from attendance_integrity.timeutils import (
    day_bounds_utc,
    local_date_of,
    minutes_between,
    month_bounds_utc,
    normalize_ts,
    utcnow,
)


@dataclass(frozen=True)
class WorkedSession:
    check_in_at: datetime
    check_out_at: datetime
    minutes: int


@dataclass(frozen=True)
class SessionPairing:
    sessions: list[WorkedSession]
    unmatched_check_ins: int
    unmatched_check_outs: int


@dataclass(frozen=True)
class MonthlySummary:
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
    worked_minutes_by_day: dict[date, int] = field(default_factory=dict)


@dataclass(frozen=True)
class TodayStatus:
    subject_user_id: str
    day: date
    has_checked_in: bool
    has_checked_out: bool
    is_checked_in: bool
    events_today: int
    last_event_kind: AttendanceKind | None = None
    last_event_at: datetime | None = None


def pair_sessions(events: Iterable[tuple[AttendanceKind, datetime]]) -> SessionPairing:
    """Pair each CHECK_IN with the next CHECK_OUT, oldest first.

    A second CHECK_IN before any CHECK_OUT abandons the first one.
    """
    ordered = sorted(((kind, normalize_ts(ts)) for kind, ts in events), key=lambda item: item[1])
    sessions: list[WorkedSession] = []
    open_check_in: datetime | None = None
    unmatched_check_ins = 0
    unmatched_check_outs = 0

    for kind, ts in ordered:
        if kind == AttendanceKind.CHECK_IN:
            if open_check_in is not None:
                unmatched_check_ins += 1
            open_check_in = ts
            continue
        if open_check_in is None:
            unmatched_check_outs += 1
            continue
        sessions.append(
            WorkedSession(
                check_in_at=open_check_in,
                check_out_at=ts,
                minutes=minutes_between(open_check_in, ts),
            )
        )
        open_check_in = None

    if open_check_in is not None:
        unmatched_check_ins += 1
    return SessionPairing(
        sessions=sessions,
        unmatched_check_ins=unmatched_check_ins,
        unmatched_check_outs=unmatched_check_outs,
    )


def summarize_month(
    db: Session,
    *,
    subject_user_id: str,
    year: int,
    month: int,
    tz: ZoneInfo,
) -> MonthlySummary:
    if month < 1 or month > 12 or year < 2000 or year > 2100:
        raise ApiError(status_code=422, code="INVALID_PERIOD", message="Year or month is out of range.")

    start_utc, end_utc = month_bounds_utc(year, month, tz)
    events = list(
        db.scalars(
            select(AttendanceEvent)
            .where(
                AttendanceEvent.subject_user_id == subject_user_id,
                AttendanceEvent.occurred_at >= start_utc,
                AttendanceEvent.occurred_at < end_utc,
            )
            .order_by(AttendanceEvent.occurred_at.asc(), AttendanceEvent.id.asc())
        ).all()
    )
    anomalies_flagged = int(
        db.scalar(
            select(func.count(Anomaly.id))
            .join(AttendanceEvent, AttendanceEvent.id == Anomaly.attendance_event_id)
            .where(
                AttendanceEvent.subject_user_id == subject_user_id,
                AttendanceEvent.occurred_at >= start_utc,
                AttendanceEvent.occurred_at < end_utc,
            )
        )
        or 0
    )

    # Rejected events never count towards worked time.
    pairing = pair_sessions(
        (item.kind, item.occurred_at) for item in events if item.status != EventStatus.REJECTED
    )
    by_day: dict[date, int] = {}
    for session in pairing.sessions:
        local_day = session.check_in_at.astimezone(tz).date()
        by_day[local_day] = by_day.get(local_day, 0) + session.minutes

    return MonthlySummary(
        subject_user_id=subject_user_id,
        year=year,
        month=month,
        total_events=len(events),
        check_ins=sum(1 for item in events if item.kind == AttendanceKind.CHECK_IN),
        check_outs=sum(1 for item in events if item.kind == AttendanceKind.CHECK_OUT),
        rejected_events=sum(1 for item in events if item.status == EventStatus.REJECTED),
        pending_review_events=sum(1 for item in events if item.status == EventStatus.PENDING_REVIEW),
        anomalies_flagged=anomalies_flagged,
        worked_minutes=sum(session.minutes for session in pairing.sessions),
        unmatched_check_ins=pairing.unmatched_check_ins,
        unmatched_check_outs=pairing.unmatched_check_outs,
        worked_minutes_by_day=dict(sorted(by_day.items())),
    )


def today_status(
    db: Session,
    *,
    subject_user_id: str,
    tz: ZoneInfo,
    now_utc: datetime | None = None,
) -> TodayStatus:
    """Check-in/check-out state for the local calendar day containing ``now_utc``.

    Rejected events are ignored, so a refused check-in leaves the day open.
    """
    day = local_date_of(now_utc or utcnow(), tz)
    start_utc, end_utc = day_bounds_utc(day, tz)
    events = list(
        db.scalars(
            select(AttendanceEvent)
            .where(
                AttendanceEvent.subject_user_id == subject_user_id,
                AttendanceEvent.occurred_at >= start_utc,
                AttendanceEvent.occurred_at < end_utc,
                AttendanceEvent.status != EventStatus.REJECTED,
            )
            .order_by(AttendanceEvent.occurred_at.asc(), AttendanceEvent.id.asc())
        ).all()
    )
    last = events[-1] if events else None
    return TodayStatus(
        subject_user_id=subject_user_id,
        day=day,
        has_checked_in=any(item.kind == AttendanceKind.CHECK_IN for item in events),
        has_checked_out=any(item.kind == AttendanceKind.CHECK_OUT for item in events),
        is_checked_in=last is not None and last.kind == AttendanceKind.CHECK_IN,
        events_today=len(events),
        last_event_kind=last.kind if last is not None else None,
        last_event_at=normalize_ts(last.occurred_at) if last is not None else None,
    )
