"""Anomaly rules evaluated once per attendance event.

Everything here is pure: the evaluator reads only its arguments, never the
clock, the store or the network. Rules are checked in a fixed order and the
first one that matches is the finding; they are never combined.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from attendance_integrity.models import (
    AnomalyKind,
    AnomalySeverity,
    AttendanceKind,
    EventStatus,
)
from attendance_integrity.services.verification import LOW_CONFIDENCE_THRESHOLD, VerificationResult
from attendance_integrity.timeutils import DEFAULT_TIMEZONE, local_time_of, normalize_ts


@dataclass(frozen=True)
class RuleConfig:
    low_confidence_threshold: int = LOW_CONFIDENCE_THRESHOLD
    workday_start_hour: int = 6
    workday_end_hour: int = 22
    duplicate_window: timedelta = timedelta(minutes=5)
    device_churn_window: timedelta = timedelta(days=7)
    device_churn_max_devices: int = 3
    require_face_verification: bool = False
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo(DEFAULT_TIMEZONE))


@dataclass(frozen=True)
class EventContext:
    subject_user_id: str
    kind: AttendanceKind
    occurred_at: datetime
    photo_supplied: bool = False
    device_id: int | None = None


@dataclass(frozen=True)
class PriorEvent:
    event_id: int
    kind: AttendanceKind
    occurred_at: datetime


@dataclass(frozen=True)
class EventHistory:
    """Snapshot of the subject's past taken under the subject lock.

    ``events`` holds prior events, newest first, all at or before the event
    being evaluated.
    """

    events: tuple[PriorEvent, ...] = ()
    recent_device_count: int = 0

    @property
    def previous(self) -> PriorEvent | None:
        return self.events[0] if self.events else None


@dataclass(frozen=True)
class Finding:
    kind: AnomalyKind
    severity: AnomalySeverity
    reason: str
    context: dict[str, Any] = field(default_factory=dict)


Rule = Callable[[EventContext, Optional[VerificationResult], EventHistory, RuleConfig], Optional[Finding]]


def verification_failure_rule(
    event: EventContext,
    verification: VerificationResult | None,
    history: EventHistory,
    config: RuleConfig,
) -> Finding | None:
    if verification is None:
        if config.require_face_verification and not event.photo_supplied:
            return Finding(
                kind=AnomalyKind.FACE_VERIFICATION_FAIL,
                severity=AnomalySeverity.HIGH,
                reason="Face verification required but no photo was supplied",
                context={"confidence": 0, "matched": False, "verification_reason": "no photo provided"},
            )
        return None

    if verification.matched and verification.confidence >= config.low_confidence_threshold:
        return None
    return Finding(
        kind=AnomalyKind.FACE_VERIFICATION_FAIL,
        severity=AnomalySeverity.HIGH,
        reason=f"Face verification failed: {verification.reason} (confidence {verification.confidence}%)",
        context={
            "confidence": verification.confidence,
            "matched": verification.matched,
            "verification_reason": verification.reason,
        },
    )


def unusual_hours_rule(
    event: EventContext,
    verification: VerificationResult | None,
    history: EventHistory,
    config: RuleConfig,
) -> Finding | None:
    local_time = local_time_of(event.occurred_at, config.timezone)
    earliest = time(hour=config.workday_start_hour)
    latest = time(hour=config.workday_end_hour)
    if earliest <= local_time <= latest:
        return None
    return Finding(
        kind=AnomalyKind.UNUSUAL_HOURS,
        severity=AnomalySeverity.MEDIUM,
        reason=f"Attendance recorded outside normal hours at {local_time.strftime('%H:%M')}",
        context={
            "local_time": local_time.strftime("%H:%M:%S"),
            "timezone": str(config.timezone),
            "allowed_from": earliest.strftime("%H:%M"),
            "allowed_until": latest.strftime("%H:%M"),
        },
    )


def duplicate_event_rule(
    event: EventContext,
    verification: VerificationResult | None,
    history: EventHistory,
    config: RuleConfig,
) -> Finding | None:
    occurred_at = normalize_ts(event.occurred_at)
    for prior in history.events:
        if prior.kind != event.kind:
            continue
        elapsed = occurred_at - normalize_ts(prior.occurred_at)
        if timedelta(0) <= elapsed <= config.duplicate_window:
            return Finding(
                kind=AnomalyKind.DUPLICATE_EVENT,
                severity=AnomalySeverity.MEDIUM,
                reason=(
                    f"Duplicate {event.kind.value} within "
                    f"{int(config.duplicate_window.total_seconds() // 60)} minutes"
                ),
                context={
                    "previous_event_id": prior.event_id,
                    "seconds_since_previous": int(elapsed.total_seconds()),
                },
            )
    return None


def missing_checkout_rule(
    event: EventContext,
    verification: VerificationResult | None,
    history: EventHistory,
    config: RuleConfig,
) -> Finding | None:
    previous = history.previous
    if event.kind != AttendanceKind.CHECK_IN or previous is None:
        return None
    if previous.kind != AttendanceKind.CHECK_IN:
        return None
    return Finding(
        kind=AnomalyKind.MISSING_CHECKOUT,
        severity=AnomalySeverity.LOW,
        reason="Check-in recorded while the previous check-in has no check-out",
        context={
            "previous_event_id": previous.event_id,
            "previous_occurred_at": normalize_ts(previous.occurred_at).isoformat(),
        },
    )


def device_churn_rule(
    event: EventContext,
    verification: VerificationResult | None,
    history: EventHistory,
    config: RuleConfig,
) -> Finding | None:
    if history.recent_device_count <= config.device_churn_max_devices:
        return None
    return Finding(
        kind=AnomalyKind.DEVICE_CHURN,
        severity=AnomalySeverity.MEDIUM,
        reason=(
            f"{history.recent_device_count} distinct devices used in the last "
            f"{config.device_churn_window.days} days"
        ),
        context={
            "device_count": history.recent_device_count,
            "max_devices": config.device_churn_max_devices,
            "window_days": config.device_churn_window.days,
        },
    )


RULES: tuple[Rule, ...] = (
    verification_failure_rule,
    unusual_hours_rule,
    duplicate_event_rule,
    missing_checkout_rule,
    device_churn_rule,
)


class AnomalyRuleEvaluator:
    def __init__(self, config: RuleConfig | None = None, rules: tuple[Rule, ...] = RULES):
        self.config = config or RuleConfig()
        self._rules = rules

    def evaluate(
        self,
        event: EventContext,
        verification: VerificationResult | None,
        history: EventHistory,
    ) -> Finding | None:
        for rule in self._rules:
            finding = rule(event, verification, history, self.config)
            if finding is not None:
                return finding
        return None

    def derive_status(self, finding: Finding | None, verification: VerificationResult | None) -> EventStatus:
        if finding is None:
            return EventStatus.ACCEPTED
        confidence = verification.confidence if verification is not None else 0
        if finding.severity == AnomalySeverity.HIGH and confidence < self.config.low_confidence_threshold:
            return EventStatus.REJECTED
        return EventStatus.PENDING_REVIEW
