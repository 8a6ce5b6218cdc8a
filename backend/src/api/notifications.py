"""
Notifications API endpoints for push subscriptions, history and actions.

Provides endpoints for:
- Push subscription management (subscribe, unsubscribe, list)
- Notification history (list, detail, stats)
- Notification actions (complete, snooze, mute, open map)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.orm import Session

from backend.src.api.dependencies import (
    get_action_service,
    get_current_user_id,
    get_push_subscription_service,
    get_scheduler,
    limiter,
)
from backend.src.models import Notification, NotificationStatus, Task
from backend.src.schemas.notifications import (
    MuteResponse,
    NotificationActionRequest,
    NotificationActionResponse,
    NotificationListResponse,
    NotificationResponse,
    NotificationStatsResponse,
    PushSubscriptionCreate,
    PushSubscriptionRemove,
    PushSubscriptionResponse,
    SnoozeResponse,
)
from backend.src.services.coverage import covered_task_ids
from backend.src.services.notification_action_service import NotificationActionService
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"],
)


def _to_response(db: Session, notification: Notification) -> NotificationResponse:
    """Build a response including the other tasks a bundle covers."""
    bundled: List[str] = []
    if notification.is_bundle:
        others = [
            task_id for task_id in covered_task_ids(db, notification)
            if task_id != notification.task_id
        ]
        if others:
            bundled = [
                task.guid
                for task in db.query(Task).filter(Task.id.in_(others)).order_by(Task.id).all()
            ]
    return NotificationResponse.from_notification(notification, bundled)


# ============================================================================
# Push Subscription Endpoints
# ============================================================================


@router.post(
    "/subscribe",
    response_model=PushSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push subscription",
)
@limiter.limit("10/minute")
def create_push_subscription(
    request: Request,
    body: PushSubscriptionCreate,
    user_id: str = Depends(get_current_user_id),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """
    Register a Web Push subscription for the user's current device.

    If a subscription with the same endpoint already exists, it is replaced.
    """
    subscription = service.create_subscription(
        user_id=user_id,
        endpoint=body.endpoint,
        p256dh_key=body.p256dh_key,
        auth_key=body.auth_key,
        device_name=body.device_name,
    )
    return PushSubscriptionResponse.model_validate(subscription)


@router.delete(
    "/subscribe",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a push subscription",
)
def remove_push_subscription(
    body: PushSubscriptionRemove,
    user_id: str = Depends(get_current_user_id),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """Remove the subscription for the given endpoint (404 if unknown)."""
    service.remove_subscription(user_id=user_id, endpoint=body.endpoint)


@router.get(
    "/subscriptions",
    response_model=List[PushSubscriptionResponse],
    summary="List push subscriptions",
)
def list_push_subscriptions(
    user_id: str = Depends(get_current_user_id),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    return [
        PushSubscriptionResponse.model_validate(s)
        for s in service.list_subscriptions(user_id=user_id)
    ]


@router.delete(
    "/subscriptions/{guid}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a push subscription by GUID",
)
def remove_push_subscription_by_guid(
    guid: str = Path(..., description="Subscription GUID (sub_xxx)"),
    user_id: str = Depends(get_current_user_id),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    service.remove_subscription_by_guid(user_id=user_id, guid=guid)


# ============================================================================
# Notification History Endpoints
# ============================================================================


@router.get(
    "",
    response_model=NotificationListResponse,
    summary="List notifications",
)
def list_notifications(
    status_filter: Optional[NotificationStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    scheduler: NotificationScheduler = Depends(get_scheduler),
):
    """The user's notifications, newest first."""
    notifications, total = scheduler.list_notifications(
        user_id, status=status_filter, limit=limit, offset=offset
    )
    return NotificationListResponse(
        items=[_to_response(scheduler.db, n) for n in notifications],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/stats",
    response_model=NotificationStatsResponse,
    summary="Notification statistics",
)
def get_notification_stats(
    user_id: str = Depends(get_current_user_id),
    scheduler: NotificationScheduler = Depends(get_scheduler),
):
    """Counts by status, including retries pending and terminal failures."""
    return NotificationStatsResponse(**scheduler.get_stats(user_id))


@router.get(
    "/{guid}",
    response_model=NotificationResponse,
    summary="Get a notification",
)
def get_notification(
    guid: str = Path(..., description="Notification GUID (ntf_xxx)"),
    user_id: str = Depends(get_current_user_id),
    scheduler: NotificationScheduler = Depends(get_scheduler),
):
    return _to_response(scheduler.db, scheduler.get_notification(guid, user_id))


# ============================================================================
# Action Endpoint
# ============================================================================


@router.post(
    "/{guid}/actions",
    response_model=NotificationActionResponse,
    summary="Act on a notification",
    responses={
        409: {"description": "The notification is closed"},
        422: {"description": "Action not offered, or task not covered by the notification"},
    },
)
@limiter.limit("60/minute")
def apply_notification_action(
    request: Request,
    body: NotificationActionRequest,
    guid: str = Path(..., description="Notification GUID (ntf_xxx)"),
    user_id: str = Depends(get_current_user_id),
    actions: NotificationActionService = Depends(get_action_service),
):
    """
    Apply complete, snooze_15m, snooze_1h, snooze_today, mute or open_map.

    On a bundle, complete and mute apply to the task named by task_guid
    (the primary task by default); snoozes apply to the whole bundle.
    """
    result = actions.apply(
        user_id,
        guid,
        body.action,
        task_guid=body.task_guid,
        mute_duration=body.mute_duration,
    )
    return NotificationActionResponse(
        action=result.action,
        notification=_to_response(actions.db, result.notification),
        task_guid=result.task.guid,
        task_status=result.task.status.value,
        snooze=SnoozeResponse.model_validate(result.snooze) if result.snooze else None,
        mute=MuteResponse.model_validate(result.mute) if result.mute else None,
        map_target=result.map_target,
    )
