"""
Offline event queue API endpoints.

Provides endpoints for inspecting and requeueing reports that exhausted
their replay attempts, and for queue statistics.
"""

from fastapi import APIRouter, Depends, Path, Query

from backend.src.api.dependencies import get_current_user_id, get_queue_service
from backend.src.schemas.queue import (
    DeadEventListResponse,
    QueuedEventResponse,
    QueueStatsResponse,
)
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/queue",
    tags=["Queue"],
)


@router.get(
    "/dead",
    response_model=DeadEventListResponse,
    summary="List dead queue entries",
)
def list_dead_events(
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    queue: OfflineQueueService = Depends(get_queue_service),
):
    """Reports that failed every replay attempt, oldest first."""
    entries = queue.list_dead(user_id, limit=limit)
    return DeadEventListResponse(
        items=[QueuedEventResponse.model_validate(e) for e in entries],
        count=len(entries),
    )


@router.post(
    "/{guid}/requeue",
    response_model=QueuedEventResponse,
    summary="Requeue a dead entry",
)
def requeue_dead_event(
    guid: str = Path(..., description="Queue entry GUID (qev_xxx)"),
    user_id: str = Depends(get_current_user_id),
    queue: OfflineQueueService = Depends(get_queue_service),
):
    """Put a dead entry back in the queue with a fresh attempt budget."""
    return QueuedEventResponse.model_validate(queue.requeue_dead(guid, user_id))


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
)
def get_queue_stats(
    user_id: str = Depends(get_current_user_id),
    queue: OfflineQueueService = Depends(get_queue_service),
):
    return QueueStatsResponse(**queue.get_stats(user_id))
