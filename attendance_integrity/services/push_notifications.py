from __future__ import annotations

import json
import logging
from typing import Any, Callable

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_integrity.errors import ApiError
from attendance_integrity.models import NotificationPriority, PushSubscription, UserNotification
from attendance_integrity.settings import Settings, get_settings, is_push_enabled
from attendance_integrity.timeutils import utcnow

logger = logging.getLogger("attendance_integrity.push")

PUSH_PRIORITIES = frozenset({NotificationPriority.HIGH, NotificationPriority.URGENT})


def get_push_public_config(settings: Settings | None = None) -> dict[str, Any]:
    settings = settings or get_settings()
    enabled = is_push_enabled(settings)
    return {
        "enabled": enabled,
        "vapid_public_key": settings.push_vapid_public_key if enabled else None,
    }


def _parse_subscription_payload(subscription: dict[str, Any]) -> tuple[str, str, str]:
    endpoint = str(subscription.get("endpoint") or "").strip()
    keys = subscription.get("keys")
    if not isinstance(keys, dict):
        raise ApiError(
            status_code=422,
            code="INVALID_PUSH_SUBSCRIPTION",
            message="Subscription keys are missing.",
        )

    p256dh = str(keys.get("p256dh") or "").strip()
    auth = str(keys.get("auth") or "").strip()
    if not endpoint or not p256dh or not auth:
        raise ApiError(
            status_code=422,
            code="INVALID_PUSH_SUBSCRIPTION",
            message="Subscription payload is incomplete.",
        )
    return endpoint, p256dh, auth


def upsert_push_subscription(
    db: Session,
    *,
    user_id: str,
    subscription: dict[str, Any],
    user_agent: str | None,
    settings: Settings | None = None,
) -> PushSubscription:
    if not is_push_enabled(settings):
        raise ApiError(
            status_code=503,
            code="PUSH_NOT_CONFIGURED",
            message="Push notification service is not configured.",
        )

    endpoint, p256dh, auth = _parse_subscription_payload(subscription)
    now_utc = utcnow()

    row = db.scalar(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    if row is None:
        row = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            is_active=True,
            user_agent=user_agent,
            last_error=None,
            last_seen_at=now_utc,
        )
        db.add(row)
    else:
        row.user_id = user_id
        row.p256dh = p256dh
        row.auth = auth
        row.is_active = True
        row.user_agent = user_agent
        row.last_error = None
        row.last_seen_at = now_utc

    db.commit()
    db.refresh(row)
    return row


def list_notifications(
    db: Session,
    *,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[UserNotification]:
    stmt = select(UserNotification).where(UserNotification.recipient_user_id == user_id)
    if unread_only:
        stmt = stmt.where(UserNotification.is_read.is_(False))
    stmt = stmt.order_by(UserNotification.created_at.desc(), UserNotification.id.desc()).limit(max(1, min(limit, 200)))
    return list(db.scalars(stmt).all())


def mark_notification_read(db: Session, *, user_id: str, notification_id: int) -> UserNotification:
    row = db.get(UserNotification, notification_id)
    if row is None or row.recipient_user_id != user_id:
        raise ApiError(
            status_code=404,
            code="NOTIFICATION_NOT_FOUND",
            message="Notification not found.",
        )
    if not row.is_read:
        row.is_read = True
        row.read_at = utcnow()
        db.commit()
        db.refresh(row)
    return row


def _send_to_subscription_row(
    row: PushSubscription,
    *,
    settings: Settings,
    title: str,
    body: str,
    data: dict[str, Any] | None,
) -> tuple[bool, str | None, int | None]:
    if not is_push_enabled(settings):
        return False, "push_disabled", None

    payload = {
        "title": title,
        "body": body,
        "data": data or {},
        "ts_utc": utcnow().isoformat(),
    }
    try:
        webpush(
            subscription_info={
                "endpoint": row.endpoint,
                "keys": {
                    "p256dh": row.p256dh,
                    "auth": row.auth,
                },
            },
            data=json.dumps(payload, default=str),
            vapid_private_key=settings.push_vapid_private_key,
            vapid_claims={"sub": settings.push_vapid_subject},
            ttl=60,
        )
        return True, None, None
    except WebPushException as exc:
        status_code: int | None = None
        if exc.response is not None:
            status_code = exc.response.status_code
        return False, str(exc), status_code
    except Exception as exc:
        return False, str(exc) or exc.__class__.__name__, None


def send_push_to_subscriptions(
    db: Session,
    *,
    subscriptions: list[PushSubscription],
    settings: Settings,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    sent = 0
    failed = 0
    deactivated = 0
    failures: list[dict[str, Any]] = []
    now_utc = utcnow()

    for row in subscriptions:
        ok, error_text, status_code = _send_to_subscription_row(
            row,
            settings=settings,
            title=title,
            body=body,
            data=data,
        )
        row.last_seen_at = now_utc
        if ok:
            sent += 1
            row.last_error = None
            continue

        failed += 1
        row.last_error = error_text
        if status_code in {404, 410} and row.is_active:
            row.is_active = False
            deactivated += 1
        failures.append(
            {
                "subscription_id": row.id,
                "status_code": status_code,
                "error": error_text,
            }
        )

    db.commit()
    return {
        "total_targets": len(subscriptions),
        "sent": sent,
        "failed": failed,
        "deactivated": deactivated,
        "failures": failures,
    }


class InAppPushNotifier:
    """Notifier writing to the in-app inbox, with Web Push for HIGH and URGENT.

    The inbox row is the delivery of record; a store failure propagates so the
    fan-out can isolate it per recipient. Push failures are only logged.
    """

    def __init__(self, session_factory: Callable[[], Session], settings: Settings | None = None):
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    def send(
        self,
        recipient_user_id: str,
        title: str,
        body: str,
        priority: NotificationPriority,
        metadata: dict[str, Any],
    ) -> UserNotification:
        with self._session_factory() as db:
            row = UserNotification(
                recipient_user_id=recipient_user_id,
                title=title[:255],
                body=body[:2000],
                priority=priority,
                details=metadata,
                is_read=False,
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)

            if priority in PUSH_PRIORITIES and is_push_enabled(self._settings):
                subscriptions = list(
                    db.scalars(
                        select(PushSubscription)
                        .where(
                            PushSubscription.user_id == recipient_user_id,
                            PushSubscription.is_active.is_(True),
                        )
                        .order_by(PushSubscription.id.desc())
                    ).all()
                )
                if subscriptions:
                    summary = send_push_to_subscriptions(
                        db,
                        subscriptions=subscriptions,
                        settings=self._settings,
                        title=title,
                        body=body,
                        data={"notification_id": row.id, "priority": priority.value, **metadata},
                    )
                    if summary["failed"]:
                        logger.warning(
                            "push_delivery_partial_failure",
                            extra={"recipient_user_id": recipient_user_id, **summary},
                        )
            return row
