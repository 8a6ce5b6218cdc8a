"""
Application settings configuration for the NearMe reminder backend.

Centralized settings loaded from environment variables.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        VAPID_PUBLIC_KEY: Web Push VAPID public key (Base64url-encoded)
        VAPID_PRIVATE_KEY: Web Push VAPID private key (Base64url-encoded)
        VAPID_SUBJECT: VAPID subject identifier (mailto: or https: URL)
        RATE_LIMIT_STORAGE_URI: Storage backend URI for rate limiting (default: "memory://")
        NEARME_MAX_ACTIVE_GEOFENCES: Platform cap on registered geofences per user (default: 20)
        NEARME_APPROACH_COOLDOWN_MINUTES: Cooldown for approach tiers (default: 15)
        NEARME_ARRIVAL_COOLDOWN_MINUTES: Cooldown for arrival tiers (default: 0)
        NEARME_DEDUP_WINDOW_MINUTES: Duplicate report window (default: 15)
        NEARME_MIN_CONFIDENCE: Reports below this confidence are noise (default: 0.5)
        NEARME_MAX_EVENT_AGE_MINUTES: Reports older than this are stale (default: 120)
        NEARME_MAX_CLOCK_SKEW_SECONDS: Reports timestamped further ahead of the
            server clock are rejected (default: 300)
        NEARME_DELIVERED_HOLD_MINUTES: Delivered notifications block re-notification
            for this long (default: 15)
        NEARME_BUNDLE_WINDOW_SECONDS: Bundling time window (default: 120)
        NEARME_BUNDLE_RADIUS_METERS: Bundling proximity threshold (default: 200)
        NEARME_POST_ARRIVAL_DELAY_SECONDS: Dwell before post-arrival fires (default: 300)
        NEARME_MAX_DELIVERY_ATTEMPTS: Push attempts before terminal failure (default: 3)
        NEARME_RETRY_BACKOFF_MINUTES: Comma-separated retry delays (default: "1,5,15")
        NEARME_PUSH_TIMEOUT_SECONDS: Bounded timeout for push calls (default: 5)
        NEARME_OFFLINE_QUEUE_MAX_ATTEMPTS: Failures before a queued event is dead (default: 5)
        NEARME_SWEEP_INTERVAL_SECONDS: Delivery/expiry/queue sweep period (default: 30)
        NEARME_REGISTRY_RECHECK_MINUTES: Periodic registry re-optimization (default: 60)
        NEARME_CLAIM_LEASE_SECONDS: Lease held by a sweep on claimed rows (default: 120)
        NEARME_REMINDER_TIMEZONE: Zone used to resolve "tomorrow 09:00" (default: UTC)
        NEARME_MORNING_HOUR: Hour of the next-day resume time (default: 9)
        NEARME_EVENT_RETENTION_DAYS: Geofence event retention (default: 30)
        NEARME_NOTIFICATION_RETENTION_DAYS: Closed notification retention (default: 30)
        NEARME_BACKGROUND_SWEEPS_ENABLED: Start periodic sweeps with the app (default: True)
    """

    # VAPID settings for Web Push notifications
    vapid_public_key: str = Field(
        default="",
        validation_alias="VAPID_PUBLIC_KEY",
        description="Base64url-encoded VAPID public key for Web Push subscriptions"
    )

    vapid_private_key: str = Field(
        default="",
        validation_alias="VAPID_PRIVATE_KEY",
        description="Base64url-encoded VAPID private key for signing push messages"
    )

    vapid_subject: str = Field(
        default="",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    # Rate limiting storage backend
    # Default: "memory://" (in-process, single-worker only)
    # For multi-worker deployments use "redis://localhost:6379"
    rate_limit_storage_uri: str = Field(
        default="memory://",
        validation_alias="RATE_LIMIT_STORAGE_URI",
        description="Storage backend URI for rate limiting counters"
    )

    # Geofence registry
    max_active_geofences: int = Field(
        default=20,
        validation_alias="NEARME_MAX_ACTIVE_GEOFENCES",
        ge=1,
        le=100,
    )

    # Event intake
    approach_cooldown_minutes: int = Field(
        default=15, validation_alias="NEARME_APPROACH_COOLDOWN_MINUTES", ge=0
    )
    arrival_cooldown_minutes: int = Field(
        default=0, validation_alias="NEARME_ARRIVAL_COOLDOWN_MINUTES", ge=0
    )
    dedup_window_minutes: int = Field(
        default=15, validation_alias="NEARME_DEDUP_WINDOW_MINUTES", ge=0
    )
    min_confidence: float = Field(
        default=0.5, validation_alias="NEARME_MIN_CONFIDENCE", ge=0.0, le=1.0
    )
    max_event_age_minutes: int = Field(
        default=120, validation_alias="NEARME_MAX_EVENT_AGE_MINUTES", ge=1
    )
    max_clock_skew_seconds: int = Field(
        default=300, validation_alias="NEARME_MAX_CLOCK_SKEW_SECONDS", ge=0
    )
    delivered_hold_minutes: int = Field(
        default=15, validation_alias="NEARME_DELIVERED_HOLD_MINUTES", ge=0
    )

    # Composer / bundler
    bundle_window_seconds: int = Field(
        default=120, validation_alias="NEARME_BUNDLE_WINDOW_SECONDS", ge=0
    )
    bundle_radius_meters: float = Field(
        default=200.0, validation_alias="NEARME_BUNDLE_RADIUS_METERS", ge=0
    )
    post_arrival_delay_seconds: int = Field(
        default=300, validation_alias="NEARME_POST_ARRIVAL_DELAY_SECONDS", ge=0
    )

    # Scheduler
    max_delivery_attempts: int = Field(
        default=3, validation_alias="NEARME_MAX_DELIVERY_ATTEMPTS", ge=1, le=10
    )
    retry_backoff_minutes: str = Field(
        default="1,5,15",
        validation_alias="NEARME_RETRY_BACKOFF_MINUTES",
        description="Comma-separated retry delays in minutes, strictly increasing"
    )
    push_timeout_seconds: float = Field(
        default=5.0, validation_alias="NEARME_PUSH_TIMEOUT_SECONDS", gt=0, le=30
    )

    # Offline queue
    offline_queue_max_attempts: int = Field(
        default=5, validation_alias="NEARME_OFFLINE_QUEUE_MAX_ATTEMPTS", ge=1
    )

    # Sweeps
    sweep_interval_seconds: int = Field(
        default=30, validation_alias="NEARME_SWEEP_INTERVAL_SECONDS", ge=1
    )
    registry_recheck_minutes: int = Field(
        default=60, validation_alias="NEARME_REGISTRY_RECHECK_MINUTES", ge=1
    )
    claim_lease_seconds: int = Field(
        default=120, validation_alias="NEARME_CLAIM_LEASE_SECONDS", ge=1
    )
    background_sweeps_enabled: bool = Field(
        default=True, validation_alias="NEARME_BACKGROUND_SWEEPS_ENABLED"
    )

    # Snooze / mute resolution
    reminder_timezone: str = Field(
        default="UTC", validation_alias="NEARME_REMINDER_TIMEZONE"
    )
    morning_hour: int = Field(
        default=9, validation_alias="NEARME_MORNING_HOUR", ge=0, le=23
    )

    # Retention
    event_retention_days: int = Field(
        default=30, validation_alias="NEARME_EVENT_RETENTION_DAYS", ge=1
    )
    notification_retention_days: int = Field(
        default=30, validation_alias="NEARME_NOTIFICATION_RETENTION_DAYS", ge=1
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("retry_backoff_minutes")
    @classmethod
    def validate_retry_backoff(cls, v: str) -> str:
        """Validate that retry delays parse and strictly increase."""
        try:
            delays = [int(d.strip()) for d in v.split(",") if d.strip()]
        except ValueError:
            raise ValueError("NEARME_RETRY_BACKOFF_MINUTES must be integers")
        if not delays:
            raise ValueError("NEARME_RETRY_BACKOFF_MINUTES must not be empty")
        if any(b <= a for a, b in zip(delays, delays[1:])) or delays[0] <= 0:
            raise ValueError("NEARME_RETRY_BACKOFF_MINUTES must be positive and strictly increasing")
        return v

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID keys are properly configured for Web Push."""
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    @property
    def retry_backoff_list(self) -> List[int]:
        """Get the retry delays as a list of minutes."""
        return [int(d.strip()) for d in self.retry_backoff_minutes.split(",") if d.strip()]


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
