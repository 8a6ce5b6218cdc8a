"""
Shared FastAPI dependencies for the NearMe API.

Identity comes from the X-User-Id header set by the auth gateway in
front of this service. Service factories build request-scoped services
from the request's database session, the pipeline config and the
application-level push gateway and geofence-specs publisher.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig, get_pipeline_config
from backend.src.config.settings import get_settings
from backend.src.db.database import get_db
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.geofence_registry_service import GeofenceRegistryService
from backend.src.services.geofence_sync import GeofenceSpecsPublisher, WebSocketSpecsPublisher
from backend.src.services.notification_action_service import NotificationActionService
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.src.services.push_gateway import PushGateway
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.services.task_lifecycle_service import TaskLifecycleService


# Rate limiter instance - shared by all routers and registered on the app
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().rate_limit_storage_uri,
)


# ============================================================================
# Identity
# ============================================================================


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """
    Resolve the calling user from the X-User-Id header.

    Raises:
        HTTPException 401: If the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    user_id = x_user_id.strip()
    if len(user_id) > 64:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id is too long",
        )
    return user_id


# ============================================================================
# Application-level collaborators
# ============================================================================


def get_push_gateway(request: Request) -> Optional[PushGateway]:
    """Push gateway from application state (None when push is disabled)."""
    return getattr(request.app.state, "push_gateway", None)


def get_specs_publisher(request: Request) -> GeofenceSpecsPublisher:
    """Geofence-specs publisher from application state."""
    publisher = getattr(request.app.state, "specs_publisher", None)
    return publisher or WebSocketSpecsPublisher()


# ============================================================================
# Service factories
# ============================================================================


def get_intake_service(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    gateway: Optional[PushGateway] = Depends(get_push_gateway),
) -> EventIntakeService:
    return EventIntakeService(db, config, gateway=gateway)


def get_queue_service(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    gateway: Optional[PushGateway] = Depends(get_push_gateway),
) -> OfflineQueueService:
    return OfflineQueueService(db, config, gateway)


def get_registry_service(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    publisher: GeofenceSpecsPublisher = Depends(get_specs_publisher),
) -> GeofenceRegistryService:
    return GeofenceRegistryService(db, config, publisher)


def get_lifecycle_service(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    publisher: GeofenceSpecsPublisher = Depends(get_specs_publisher),
) -> TaskLifecycleService:
    return TaskLifecycleService(db, config, publisher)


def get_scheduler(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    gateway: Optional[PushGateway] = Depends(get_push_gateway),
) -> NotificationScheduler:
    return NotificationScheduler(db, config, gateway)


def get_action_service(
    db: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    publisher: GeofenceSpecsPublisher = Depends(get_specs_publisher),
) -> NotificationActionService:
    return NotificationActionService(db, config, publisher)


def get_push_subscription_service(db: Session = Depends(get_db)) -> PushSubscriptionService:
    """Create PushSubscriptionService instance with database session."""
    return PushSubscriptionService(db=db)
