"""
Task sync API endpoints.

The task CRUD service owns task authoring; it calls these endpoints when
a task is created, updated or changes status so that geofences, pending
notifications and suppression windows follow the task.

Provides endpoints for:
- Task upsert (geofence regeneration and registry re-optimization)
- Task status changes (completed, active, deleted, muted, unmuted)
- Task lookup and the task's stored geofences
"""

from typing import List

from fastapi import APIRouter, Depends, Path, Request

from backend.src.api.dependencies import (
    get_current_user_id,
    get_lifecycle_service,
    limiter,
)
from backend.src.schemas.tasks import (
    GeofenceResponse,
    RegistryResultResponse,
    TaskResponse,
    TaskStatusChangeRequest,
    TaskStatusChangeResponse,
    TaskSyncResponse,
    TaskUpsert,
)
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/tasks",
    tags=["Tasks"],
)


@router.put(
    "/{guid}",
    response_model=TaskSyncResponse,
    summary="Create or update a synced task",
)
@limiter.limit("60/minute")
def upsert_task(
    request: Request,
    body: TaskUpsert,
    guid: str = Path(..., description="Task GUID (tsk_xxx)"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: TaskLifecycleService = Depends(get_lifecycle_service),
):
    """
    Store the task, regenerate its geofences and re-optimize the user's
    registry. A capacity warning is reported when some geofences could
    not be admitted; the task is still stored.
    """
    task, result = lifecycle.upsert_task(user_id, guid, body.model_dump())
    return TaskSyncResponse(
        task=TaskResponse.from_task(task, lifecycle.registry.list_for_task(task.id)),
        registry=RegistryResultResponse.from_result(result),
    )


@router.post(
    "/{guid}/status",
    response_model=TaskStatusChangeResponse,
    summary="Apply a task status change",
)
def change_task_status(
    body: TaskStatusChangeRequest,
    guid: str = Path(..., description="Task GUID (tsk_xxx)"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: TaskLifecycleService = Depends(get_lifecycle_service),
):
    """
    Completing, deleting or muting a task cancels its pending
    notifications in this request; un-muting restores eligibility
    without requiring a fresh crossing.
    """
    result = lifecycle.change_status(
        user_id,
        guid,
        body.status,
        mute_duration=body.mute_duration,
        reason=body.reason,
    )
    return TaskStatusChangeResponse.from_result(result)


@router.get(
    "/{guid}",
    response_model=TaskResponse,
    summary="Get a synced task",
)
def get_task(
    guid: str = Path(..., description="Task GUID (tsk_xxx)"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: TaskLifecycleService = Depends(get_lifecycle_service),
):
    task = lifecycle.get_task(user_id, guid)
    return TaskResponse.from_task(task, lifecycle.registry.list_for_task(task.id))


@router.get(
    "/{guid}/geofences",
    response_model=List[GeofenceResponse],
    summary="List a task's geofences",
)
def list_task_geofences(
    guid: str = Path(..., description="Task GUID (tsk_xxx)"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: TaskLifecycleService = Depends(get_lifecycle_service),
):
    """All stored geofences of the task, active or not, outermost first."""
    task = lifecycle.get_task(user_id, guid)
    return [GeofenceResponse.from_geofence(g) for g in lifecycle.registry.list_for_task(task.id)]
