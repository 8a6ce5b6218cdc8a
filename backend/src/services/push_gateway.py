"""
Push transport adapter.

The scheduler hands each notification to a PushGateway, one device
subscription at a time. The default gateway speaks Web Push through
pywebpush; every call carries a bounded timeout and a timeout counts as a
delivery failure (retried by the scheduler, never left pending).
"""

import json
from typing import Any, Dict, Optional, Protocol

from pywebpush import webpush, WebPushException

from backend.src.config.settings import AppSettings, get_settings
from backend.src.models import PushSubscription
from backend.src.utils.logging_config import get_logger


logger = get_logger("scheduler")


class PushGoneError(Exception):
    """Raised when the push service returns 404/410 (subscription invalid)."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"Push subscription gone: {endpoint[:60]}")


class PushDeliveryError(Exception):
    """Raised when push delivery fails (including timeouts)."""
    pass


class PushGateway(Protocol):
    """Outbound port to the push-transport collaborator."""

    def send(self, subscription: PushSubscription, payload: Dict[str, Any], timeout: float) -> None:
        """
        Deliver one payload to one device.

        Raises:
            PushGoneError: The device subscription no longer exists
            PushDeliveryError: Delivery failed or timed out
        """
        ...


class WebPushGateway:
    """PushGateway backed by the Web Push protocol (pywebpush)."""

    def __init__(self, vapid_private_key: str, vapid_claims: Dict[str, str], ttl: int = 3600):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = vapid_claims
        self.ttl = ttl

    def send(self, subscription: PushSubscription, payload: Dict[str, Any], timeout: float) -> None:
        if not self.vapid_private_key:
            raise PushDeliveryError("VAPID keys are not configured")

        subscription_info = {
            "endpoint": subscription.endpoint,
            "keys": {
                "p256dh": subscription.p256dh_key,
                "auth": subscription.auth_key,
            },
        }

        try:
            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                # pywebpush mutates the claims dict (adds "aud"/"exp")
                vapid_claims=dict(self.vapid_claims),
                timeout=timeout,
                ttl=self.ttl,
                headers={"Urgency": "high"},
            )
        except WebPushException as e:
            if getattr(e, "response", None) is not None:
                # 410 Gone or 404 Not Found: subscription is expired/invalid
                if e.response.status_code in (410, 404):
                    raise PushGoneError(subscription.endpoint) from e
            raise PushDeliveryError(str(e)) from e
        except Exception as e:
            # Connection errors and request timeouts from the HTTP layer
            raise PushDeliveryError(f"{type(e).__name__}: {e}") from e


def create_push_gateway(settings: Optional[AppSettings] = None) -> Optional[PushGateway]:
    """
    Build the Web Push gateway from settings.

    Returns:
        WebPushGateway, or None when VAPID keys are not configured (every
        dispatch then records a failed attempt)
    """
    s = settings or get_settings()
    if not s.vapid_configured:
        logger.warning("VAPID keys not configured; push delivery disabled")
        return None
    return WebPushGateway(
        vapid_private_key=s.vapid_private_key,
        vapid_claims={"sub": s.vapid_subject},
    )
