"""
Geofence registry API endpoints.

Provides endpoints for:
- The user's currently registered (active) geofences
- Registry statistics
- On-demand re-optimization
- WebSocket channel for geofence-specs-changed messages
"""

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from backend.src.api.dependencies import get_current_user_id, get_registry_service
from backend.src.schemas.tasks import (
    GeofenceListResponse,
    GeofenceResponse,
    GeofenceStatsResponse,
    RegistryResultResponse,
)
from backend.src.services.geofence_registry_service import GeofenceRegistryService
from backend.src.utils.logging_config import get_logger
from backend.src.utils.websocket import get_connection_manager


logger = get_logger("api")

router = APIRouter(
    prefix="/geofences",
    tags=["Geofences"],
)


@router.get(
    "",
    response_model=GeofenceListResponse,
    summary="List registered geofences",
)
def list_active_geofences(
    user_id: str = Depends(get_current_user_id),
    registry: GeofenceRegistryService = Depends(get_registry_service),
):
    """The active set the device should currently have registered."""
    geofences = registry.list_active(user_id)
    return GeofenceListResponse(
        geofences=[GeofenceResponse.from_geofence(g) for g in geofences],
        active_count=len(geofences),
        capacity=registry.config.max_active_geofences,
    )


@router.get(
    "/stats",
    response_model=GeofenceStatsResponse,
    summary="Registry statistics",
)
def get_geofence_stats(
    user_id: str = Depends(get_current_user_id),
    registry: GeofenceRegistryService = Depends(get_registry_service),
):
    return GeofenceStatsResponse(**registry.get_stats(user_id))


@router.post(
    "/optimize",
    response_model=RegistryResultResponse,
    summary="Re-optimize the active set",
)
def optimize_geofences(
    user_id: str = Depends(get_current_user_id),
    registry: GeofenceRegistryService = Depends(get_registry_service),
):
    """
    Re-rank the user's geofences and activate the top N. Subscribers of
    the WebSocket channel receive the new set when it changed.
    """
    return RegistryResultResponse.from_result(registry.optimize_user(user_id))


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@router.websocket("/ws")
async def geofence_specs_websocket(websocket: WebSocket):
    """
    WebSocket channel for geofence-specs-changed messages.

    The user is identified by the X-User-Id header (or a user_id query
    parameter for clients that cannot set handshake headers).

    Messages are JSON objects:
    {
        "type": "geofences_changed",
        "user_id": "...",
        "geofences": [ ...active geofence specs... ]
    }
    """
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = get_connection_manager()
    channel_id = manager.user_channel(user_id)

    await manager.connect(channel_id, websocket)
    logger.info("WebSocket connected for geofence specs", extra={"user_id": user_id})

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=30.0
                )
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                await websocket.send_text('{"type": "heartbeat"}')
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for geofence specs", extra={"user_id": user_id})
    finally:
        manager.disconnect(channel_id, websocket)
