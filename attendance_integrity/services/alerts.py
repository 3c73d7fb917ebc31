from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_integrity.audit import (
    ENTITY_USER,
    NOTIFICATION_DELIVERY_FAILED,
    AuditTrail,
)
from attendance_integrity.models import (
    AnomalySeverity,
    AuditSeverity,
    NotificationPriority,
    UserAccount,
)

logger = logging.getLogger("attendance_integrity.alerts")

# Priority by audience: the subject hears about their own event, the oversight
# role watches every subject and is escalated one step earlier.
SUBJECT_PRIORITY: dict[AnomalySeverity, NotificationPriority] = {
    AnomalySeverity.LOW: NotificationPriority.NORMAL,
    AnomalySeverity.MEDIUM: NotificationPriority.NORMAL,
    AnomalySeverity.HIGH: NotificationPriority.HIGH,
    AnomalySeverity.CRITICAL: NotificationPriority.URGENT,
}
OVERSIGHT_PRIORITY: dict[AnomalySeverity, NotificationPriority] = {
    AnomalySeverity.LOW: NotificationPriority.NORMAL,
    AnomalySeverity.MEDIUM: NotificationPriority.HIGH,
    AnomalySeverity.HIGH: NotificationPriority.HIGH,
    AnomalySeverity.CRITICAL: NotificationPriority.URGENT,
}


class Notifier(Protocol):
    def send(
        self,
        recipient_user_id: str,
        title: str,
        body: str,
        priority: NotificationPriority,
        metadata: dict[str, Any],
    ) -> Any: ...


class RoleDirectory(Protocol):
    def list_active_users_with_role(self, role: str) -> list[str]: ...


class SqlRoleDirectory:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def list_active_users_with_role(self, role: str) -> list[str]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(UserAccount.id)
                    .where(
                        UserAccount.role == role,
                        UserAccount.is_active.is_(True),
                    )
                    .order_by(UserAccount.id.asc())
                ).all()
            )


@dataclass
class FanoutResult:
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def merge(self, other: FanoutResult) -> FanoutResult:
        self.delivered.extend(other.delivered)
        self.failed.update(other.failed)
        return self

    @property
    def total_targets(self) -> int:
        return len(self.delivered) + len(self.failed)


def subject_priority(severity: AnomalySeverity) -> NotificationPriority:
    return SUBJECT_PRIORITY[severity]


def oversight_priority(severity: AnomalySeverity) -> NotificationPriority:
    return OVERSIGHT_PRIORITY[severity]


class AlertFanout:
    """Best-effort delivery of alerts to single users and to whole roles.

    Every recipient is dispatched on the worker pool and waited on together, so
    one slow or failing delivery costs at most ``timeout_seconds`` and never
    blocks the other recipients. Failures are logged and audited, never raised.
    """

    def __init__(
        self,
        notifier: Notifier,
        role_directory: RoleDirectory,
        audit: AuditTrail,
        *,
        timeout_seconds: float = 3.0,
        max_workers: int = 8,
    ):
        self._notifier = notifier
        self._role_directory = role_directory
        self._audit = audit
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="alert-fanout")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def notify(
        self,
        recipient_user_id: str,
        title: str,
        message: str,
        priority: NotificationPriority,
        metadata: dict[str, Any] | None = None,
    ) -> FanoutResult:
        return self._dispatch([recipient_user_id], title, message, priority, metadata or {})

    def notify_role(
        self,
        role: str,
        title: str,
        message: str,
        priority: NotificationPriority,
        metadata: dict[str, Any] | None = None,
    ) -> FanoutResult:
        try:
            recipients = self._role_directory.list_active_users_with_role(role)
        except Exception as exc:
            logger.exception("role_directory_lookup_failed", extra={"role": role})
            self._audit_failure(f"role:{role}", title, str(exc) or exc.__class__.__name__)
            return FanoutResult(failed={f"role:{role}": str(exc) or exc.__class__.__name__})
        return self._dispatch(recipients, title, message, priority, metadata or {})

    def notify_subject_and_role(
        self,
        *,
        subject_user_id: str,
        role: str,
        title: str,
        message: str,
        subject_priority: NotificationPriority,
        role_priority: NotificationPriority,
        metadata: dict[str, Any] | None = None,
    ) -> FanoutResult:
        payload = metadata or {}
        try:
            role_members = self._role_directory.list_active_users_with_role(role)
        except Exception as exc:
            logger.exception("role_directory_lookup_failed", extra={"role": role})
            self._audit_failure(f"role:{role}", title, str(exc) or exc.__class__.__name__)
            role_members = []

        targets: list[tuple[str, NotificationPriority]] = [(subject_user_id, subject_priority)]
        targets.extend((member, role_priority) for member in role_members if member != subject_user_id)
        return self._dispatch_targets(targets, title, message, payload)

    def _dispatch(
        self,
        recipients: list[str],
        title: str,
        message: str,
        priority: NotificationPriority,
        metadata: dict[str, Any],
    ) -> FanoutResult:
        return self._dispatch_targets([(item, priority) for item in recipients], title, message, metadata)

    def _dispatch_targets(
        self,
        targets: list[tuple[str, NotificationPriority]],
        title: str,
        message: str,
        metadata: dict[str, Any],
    ) -> FanoutResult:
        result = FanoutResult()
        if not targets:
            return result

        futures: dict[Future[Any], str] = {}
        for recipient_user_id, priority in targets:
            future = self._executor.submit(
                self._notifier.send,
                recipient_user_id,
                title,
                message,
                priority,
                dict(metadata),
            )
            futures[future] = recipient_user_id

        done, not_done = wait(futures, timeout=self._timeout_seconds)
        for future in done:
            recipient_user_id = futures[future]
            exc = future.exception()
            if exc is None:
                result.delivered.append(recipient_user_id)
                continue
            error_text = str(exc) or exc.__class__.__name__
            result.failed[recipient_user_id] = error_text
            logger.warning(
                "notification_delivery_failed",
                extra={"recipient_user_id": recipient_user_id, "title": title, "error": error_text},
            )
            self._audit_failure(recipient_user_id, title, error_text)

        for future in not_done:
            future.cancel()
            recipient_user_id = futures[future]
            result.failed[recipient_user_id] = "timeout"
            logger.warning(
                "notification_delivery_timeout",
                extra={
                    "recipient_user_id": recipient_user_id,
                    "title": title,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            self._audit_failure(recipient_user_id, title, "timeout")

        result.delivered.sort()
        return result

    def _audit_failure(self, recipient: str, title: str, error_text: str) -> None:
        self._audit.record(
            actor_user_id=None,
            action=NOTIFICATION_DELIVERY_FAILED,
            entity_type=ENTITY_USER,
            entity_id=recipient,
            severity=AuditSeverity.INFO,
            metadata={"title": title, "error": error_text},
        )
