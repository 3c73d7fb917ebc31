from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attendance_integrity.container import Services, get_db_session, get_services
from attendance_integrity.schemas import NotificationRead, PushSubscribeRequest, PushSubscribeResponse
from attendance_integrity.security import Actor, require_actor
from attendance_integrity.services.push_notifications import (
    get_push_public_config,
    list_notifications,
    mark_notification_read,
    upsert_push_subscription,
)

router = APIRouter(prefix="/api", tags=["notifications"])


@router.get("/notifications", response_model=list[NotificationRead])
def list_my_notifications(
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db_session),
) -> list[NotificationRead]:
    rows = list_notifications(db, user_id=actor.user_id, unread_only=unread_only, limit=limit)
    return [NotificationRead.model_validate(item) for item in rows]


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def read_notification(
    notification_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db_session),
) -> NotificationRead:
    row = mark_notification_read(db, user_id=actor.user_id, notification_id=notification_id)
    return NotificationRead.model_validate(row)


@router.get("/push/config")
def push_config(services: Services = Depends(get_services)) -> dict[str, object]:
    return get_push_public_config(services.settings)


@router.post("/push/subscribe", response_model=PushSubscribeResponse)
def subscribe_push(
    payload: PushSubscribeRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db_session),
) -> PushSubscribeResponse:
    row = upsert_push_subscription(
        db,
        user_id=actor.user_id,
        subscription=payload.subscription,
        user_agent=request.headers.get("user-agent"),
        settings=services.settings,
    )
    return PushSubscribeResponse(ok=True, subscription_id=row.id)
