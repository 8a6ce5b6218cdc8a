"""
Geofence crossing API endpoints.

Provides endpoints for:
- Reporting a single boundary crossing
- Offline bulk sync of buffered crossings
- Intake processing statistics

The single-report endpoint takes the raw JSON body so that malformed
reports are still recorded as failed events before the 422 is returned.

Handlers are plain functions so FastAPI runs them in its threadpool:
accepted enters dispatch push synchronously, with a bounded timeout per
device.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status

from backend.src.api.dependencies import (
    get_current_user_id,
    get_intake_service,
    get_queue_service,
    limiter,
)
from backend.src.schemas.events import (
    CrossingBatch,
    CrossingBatchResponse,
    CrossingResult,
    EventStatsResponse,
)
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/events",
    tags=["Events"],
)


@router.post(
    "/crossings",
    response_model=CrossingResult,
    summary="Report a geofence crossing",
    responses={
        202: {"description": "Store unavailable; report queued for replay"},
        422: {"description": "Malformed report"},
        503: {"description": "Store unavailable and the report could not be queued"},
    },
)
@limiter.limit("120/minute")
def report_crossing(
    request: Request,
    response: Response,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    intake: EventIntakeService = Depends(get_intake_service),
):
    """
    Decide one enter/exit report.

    Returns the event outcome: accepted (a notification was created or
    joined, or a dwell timer was cancelled) or suppressed with a reason.
    """
    outcome = intake.report_crossing(user_id, payload)
    if outcome.queued:
        response.status_code = status.HTTP_202_ACCEPTED
    client_event_id = payload.get("client_event_id")
    return outcome.to_result(str(client_event_id) if client_event_id is not None else None)


@router.post(
    "/crossings/batch",
    response_model=CrossingBatchResponse,
    summary="Sync crossings buffered while offline",
)
@limiter.limit("30/minute")
def sync_crossings(
    request: Request,
    body: CrossingBatch,
    user_id: str = Depends(get_current_user_id),
    queue: OfflineQueueService = Depends(get_queue_service),
):
    """
    Process a batch of buffered reports in chronological order.

    Each item is accepted or rejected on its own; the client clears the
    accepted items and may resend the retryable ones.
    """
    results = queue.process_batch(user_id, body.events)
    accepted = sum(1 for r in results if r.accepted)
    return CrossingBatchResponse(
        results=results,
        accepted=accepted,
        rejected=len(results) - accepted,
    )


@router.get(
    "/stats",
    response_model=EventStatsResponse,
    summary="Intake processing statistics",
)
def get_event_stats(
    days: int = Query(7, ge=1, le=90, description="Look-back window in days"),
    user_id: str = Depends(get_current_user_id),
    intake: EventIntakeService = Depends(get_intake_service),
):
    """Counts of processed, bundled, suppressed and failed events by reason."""
    return EventStatsResponse(**intake.get_processing_stats(user_id, days))
