"""
Geofence-specs-changed publisher.

The on-device registration collaborator needs the complete active set
whenever it changes. Publishers receive the user id and the active
geofences after the registry commits.
"""

from typing import Any, Dict, List, Optional, Protocol

from backend.src.models import Geofence
from backend.src.utils.logging_config import get_logger
from backend.src.utils.websocket import ConnectionManager, get_connection_manager


logger = get_logger("registry")


def serialize_geofence(geofence: Geofence, task_guid: Optional[str] = None) -> Dict[str, Any]:
    """Wire form of an active geofence for device registration."""
    return {
        "guid": geofence.guid,
        "task_guid": task_guid or (geofence.task.guid if geofence.task else None),
        "tier": geofence.tier.value,
        "latitude": geofence.latitude,
        "longitude": geofence.longitude,
        "radius_m": geofence.radius_m,
    }


class GeofenceSpecsPublisher(Protocol):
    """Outbound port for geofence-specs-changed messages."""

    def publish(self, user_id: str, geofences: List[Geofence]) -> None:
        ...


class WebSocketSpecsPublisher:
    """Publishes the active set to the user's WebSocket channel."""

    def __init__(self, manager: Optional[ConnectionManager] = None):
        self.manager = manager or get_connection_manager()

    def publish(self, user_id: str, geofences: List[Geofence]) -> None:
        message = {
            "type": "geofences_changed",
            "user_id": user_id,
            "geofences": [serialize_geofence(g) for g in geofences],
        }
        sent = self.manager.publish_threadsafe(self.manager.user_channel(user_id), message)
        logger.debug(
            "Geofence specs published",
            extra={"user_id": user_id, "active": len(geofences), "delivered": sent},
        )

