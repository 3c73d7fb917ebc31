from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_integrity.audit import (
    DEVICE_DELETED,
    DEVICE_TRUST_REVOKED,
    DEVICE_TRUSTED,
    ENTITY_DEVICE,
    NEW_DEVICE_REGISTERED,
    AuditTrail,
)
from attendance_integrity.errors import ApiError
from attendance_integrity.models import AuditSeverity, DeviceFingerprint, NotificationPriority, TrustLevel
from attendance_integrity.services.alerts import AlertFanout, FanoutResult
from attendance_integrity.timeutils import normalize_ts, utcnow

logger = logging.getLogger("attendance_integrity.fingerprints")

# Canonical field -> accepted aliases from browser collectors.
FINGERPRINT_FIELDS: dict[str, tuple[str, ...]] = {
    "user_agent": ("user_agent", "userAgent"),
    "platform": ("platform",),
    "browser": ("browser",),
    "screen_resolution": ("screen_resolution", "screenResolution"),
    "timezone": ("timezone", "timeZone"),
    "language": ("language",),
    "plugins": ("plugins",),
    "canvas_hash": ("canvas_hash", "canvasHash", "canvas"),
    "webgl_hash": ("webgl_hash", "webglHash", "webgl", "webglRenderer"),
}


@dataclass(frozen=True)
class DeviceRegistration:
    device_id: int
    is_new_device: bool
    trust_level: TrustLevel
    platform: str | None = None
    browser: str | None = None


def _clean_text(value: Any, *, max_length: int = 1024) -> str | None:
    if value is None:
        return None
    text_value = " ".join(str(value).split())
    if not text_value:
        return None
    return text_value[:max_length]


def normalize_fingerprint(payload: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for canonical_key, aliases in FINGERPRINT_FIELDS.items():
        raw_value = next((payload[alias] for alias in aliases if payload.get(alias) is not None), None)
        if canonical_key == "plugins":
            if isinstance(raw_value, (list, tuple)):
                plugins = sorted({item for item in (_clean_text(value) for value in raw_value) if item})
                normalized[canonical_key] = plugins or None
            else:
                normalized[canonical_key] = None
            continue
        cleaned = _clean_text(raw_value)
        if cleaned is not None and canonical_key in {"platform", "browser", "language"}:
            cleaned = cleaned.lower()
        normalized[canonical_key] = cleaned
    return normalized


def fingerprint_hash(normalized: dict[str, Any]) -> str:
    encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def validate_fingerprint(payload: dict[str, Any]) -> dict[str, Any]:
    normalized = normalize_fingerprint(payload)
    if not any(value for value in normalized.values()):
        raise ApiError(
            status_code=422,
            code="INVALID_FINGERPRINT",
            message="Device fingerprint payload is empty.",
        )
    return normalized


def _device_not_found() -> ApiError:
    return ApiError(status_code=404, code="DEVICE_NOT_FOUND", message="Device not found.")


class FingerprintRegistry:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        audit: AuditTrail,
        alerts: AlertFanout | None,
        *,
        oversight_role: str,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._alerts = alerts
        self._oversight_role = oversight_role

    def register(
        self,
        owner_user_id: str,
        payload: dict[str, Any],
        source_ip: str | None = None,
        *,
        alert_new_device: bool = True,
    ) -> DeviceRegistration:
        """Find or create the owner's device for this fingerprint.

        Callers that write other records first pass ``alert_new_device=False``
        and call :meth:`alert_new_device` once their own commit has landed.
        """
        normalized = validate_fingerprint(payload)
        digest = fingerprint_hash(normalized)
        now_utc = utcnow()

        with self._session_factory() as db:
            existing = self._find(db, owner_user_id, digest)
            if existing is not None:
                return self._touch(db, existing, now_utc=now_utc, source_ip=source_ip)

            device = DeviceFingerprint(
                owner_user_id=owner_user_id,
                fingerprint_hash=digest,
                payload=normalized,
                platform=normalized["platform"],
                browser=normalized["browser"],
                user_agent=normalized["user_agent"],
                trust_level=TrustLevel.UNTRUSTED,
                first_seen_at=now_utc,
                last_seen_at=now_utc,
                last_ip=source_ip,
            )
            db.add(device)
            try:
                db.commit()
            except IntegrityError:
                # Concurrent first sighting of the same device won the insert.
                db.rollback()
                existing = self._find(db, owner_user_id, digest)
                if existing is None:
                    raise
                return self._touch(db, existing, now_utc=now_utc, source_ip=source_ip)
            db.refresh(device)

        logger.info(
            "device_registered",
            extra={"owner_user_id": owner_user_id, "device_id": device.id, "platform": device.platform},
        )
        self._audit.record(
            actor_user_id=owner_user_id,
            action=NEW_DEVICE_REGISTERED,
            entity_type=ENTITY_DEVICE,
            entity_id=device.id,
            severity=AuditSeverity.INFO,
            metadata={
                "fingerprint_hash": digest,
                "source_ip": source_ip,
                "platform": device.platform,
                "browser": device.browser,
            },
        )
        registration = DeviceRegistration(
            device_id=device.id,
            is_new_device=True,
            trust_level=TrustLevel.UNTRUSTED,
            platform=device.platform,
            browser=device.browser,
        )
        if alert_new_device:
            self.alert_new_device(owner_user_id, registration)
        return registration

    def alert_new_device(self, owner_user_id: str, registration: DeviceRegistration) -> FanoutResult | None:
        if self._alerts is None or not registration.is_new_device:
            return None
        return self._alerts.notify_subject_and_role(
            subject_user_id=owner_user_id,
            role=self._oversight_role,
            title="New device detected",
            message=f"User {owner_user_id} submitted attendance from a new device.",
            subject_priority=NotificationPriority.NORMAL,
            role_priority=NotificationPriority.NORMAL,
            metadata={
                "device_id": registration.device_id,
                "platform": registration.platform,
                "browser": registration.browser,
            },
        )

    def trust(
        self,
        device_id: int,
        owner_user_id: str,
        *,
        system: bool = False,
        event_id: int | None = None,
    ) -> DeviceFingerprint:
        """Mark a device as trusted.

        ``system=True`` is the elevated flow used after a verified, accepted
        attendance event; the audit entry then carries no actor.
        """
        device = self._set_trust(device_id, owner_user_id, TrustLevel.TRUSTED)
        self._audit.record(
            actor_user_id=None if system else owner_user_id,
            action=DEVICE_TRUSTED,
            entity_type=ENTITY_DEVICE,
            entity_id=device.id,
            metadata={
                "owner_user_id": owner_user_id,
                "reason": "verified_event" if system else "owner",
                "attendance_event_id": event_id,
            },
        )
        return device

    def revoke(self, device_id: int, owner_user_id: str) -> DeviceFingerprint:
        device = self._set_trust(device_id, owner_user_id, TrustLevel.UNTRUSTED)
        self._audit.record(
            actor_user_id=owner_user_id,
            action=DEVICE_TRUST_REVOKED,
            entity_type=ENTITY_DEVICE,
            entity_id=device.id,
            severity=AuditSeverity.WARNING,
            metadata={"owner_user_id": owner_user_id},
        )
        return device

    def delete(self, device_id: int, owner_user_id: str) -> None:
        with self._session_factory() as db:
            device = self._owned(db, device_id, owner_user_id)
            fingerprint_digest = device.fingerprint_hash
            db.delete(device)
            db.commit()
        self._audit.record(
            actor_user_id=owner_user_id,
            action=DEVICE_DELETED,
            entity_type=ENTITY_DEVICE,
            entity_id=device_id,
            severity=AuditSeverity.WARNING,
            metadata={"owner_user_id": owner_user_id, "fingerprint_hash": fingerprint_digest},
        )

    def get(self, device_id: int) -> DeviceFingerprint | None:
        with self._session_factory() as db:
            return db.get(DeviceFingerprint, device_id)

    def count_recent_distinct_devices(
        self,
        owner_user_id: str,
        window: timedelta,
        *,
        now: datetime | None = None,
        db: Session | None = None,
    ) -> int:
        cutoff = normalize_ts(now) - window
        statement = select(func.count(func.distinct(DeviceFingerprint.fingerprint_hash))).where(
            DeviceFingerprint.owner_user_id == owner_user_id,
            DeviceFingerprint.last_seen_at >= cutoff,
        )
        if db is not None:
            return int(db.scalar(statement) or 0)
        with self._session_factory() as session:
            return int(session.scalar(statement) or 0)

    def list_devices(self, owner_user_id: str) -> list[DeviceFingerprint]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(DeviceFingerprint)
                    .where(DeviceFingerprint.owner_user_id == owner_user_id)
                    .order_by(DeviceFingerprint.last_seen_at.desc(), DeviceFingerprint.id.desc())
                ).all()
            )

    def _find(self, db: Session, owner_user_id: str, digest: str) -> DeviceFingerprint | None:
        return db.scalar(
            select(DeviceFingerprint).where(
                DeviceFingerprint.owner_user_id == owner_user_id,
                DeviceFingerprint.fingerprint_hash == digest,
            )
        )

    def _owned(self, db: Session, device_id: int, owner_user_id: str) -> DeviceFingerprint:
        device = db.get(DeviceFingerprint, device_id)
        if device is None or device.owner_user_id != owner_user_id:
            raise _device_not_found()
        return device

    def _touch(
        self,
        db: Session,
        device: DeviceFingerprint,
        *,
        now_utc: datetime,
        source_ip: str | None,
    ) -> DeviceRegistration:
        device.last_seen_at = now_utc
        if source_ip:
            device.last_ip = source_ip
        db.commit()
        return DeviceRegistration(device_id=device.id, is_new_device=False, trust_level=device.trust_level)

    def _set_trust(self, device_id: int, owner_user_id: str, trust_level: TrustLevel) -> DeviceFingerprint:
        with self._session_factory() as db:
            device = self._owned(db, device_id, owner_user_id)
            device.trust_level = trust_level
            db.commit()
            db.refresh(device)
            return device
