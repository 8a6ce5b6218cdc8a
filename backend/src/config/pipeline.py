"""
Runtime configuration for the geofence-to-notification pipeline.

Services take a PipelineConfig instead of reading AppSettings directly so
windows and limits can be overridden per instance.
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Optional, Tuple

from backend.src.config.settings import AppSettings, get_settings


@dataclass(frozen=True)
class PipelineConfig:
    """Windows, thresholds and limits used across the pipeline."""

    max_active_geofences: int = 20
    approach_cooldown: timedelta = timedelta(minutes=15)
    arrival_cooldown: timedelta = timedelta(0)
    dedup_window: timedelta = timedelta(minutes=15)
    min_confidence: float = 0.5
    max_event_age: timedelta = timedelta(minutes=120)
    max_clock_skew: timedelta = timedelta(minutes=5)
    delivered_hold: timedelta = timedelta(minutes=15)
    bundle_window: timedelta = timedelta(seconds=120)
    bundle_radius_m: float = 200.0
    post_arrival_delay: timedelta = timedelta(minutes=5)
    max_delivery_attempts: int = 3
    retry_backoff: Tuple[timedelta, ...] = field(
        default=(timedelta(minutes=1), timedelta(minutes=5), timedelta(minutes=15))
    )
    push_timeout_seconds: float = 5.0
    offline_queue_max_attempts: int = 5
    claim_lease: timedelta = timedelta(seconds=120)
    reminder_timezone: str = "UTC"
    morning_hour: int = 9
    event_retention_days: int = 30
    notification_retention_days: int = 30

    @classmethod
    def from_settings(cls, settings: Optional[AppSettings] = None) -> "PipelineConfig":
        """Build a config from environment-backed settings."""
        s = settings or get_settings()
        return cls(
            max_active_geofences=s.max_active_geofences,
            approach_cooldown=timedelta(minutes=s.approach_cooldown_minutes),
            arrival_cooldown=timedelta(minutes=s.arrival_cooldown_minutes),
            dedup_window=timedelta(minutes=s.dedup_window_minutes),
            min_confidence=s.min_confidence,
            max_event_age=timedelta(minutes=s.max_event_age_minutes),
            max_clock_skew=timedelta(seconds=s.max_clock_skew_seconds),
            delivered_hold=timedelta(minutes=s.delivered_hold_minutes),
            bundle_window=timedelta(seconds=s.bundle_window_seconds),
            bundle_radius_m=s.bundle_radius_meters,
            post_arrival_delay=timedelta(seconds=s.post_arrival_delay_seconds),
            max_delivery_attempts=s.max_delivery_attempts,
            retry_backoff=tuple(timedelta(minutes=m) for m in s.retry_backoff_list),
            push_timeout_seconds=s.push_timeout_seconds,
            offline_queue_max_attempts=s.offline_queue_max_attempts,
            claim_lease=timedelta(seconds=s.claim_lease_seconds),
            reminder_timezone=s.reminder_timezone,
            morning_hour=s.morning_hour,
            event_retention_days=s.event_retention_days,
            notification_retention_days=s.notification_retention_days,
        )

    def with_overrides(self, **changes) -> "PipelineConfig":
        """Return a copy with some values replaced."""
        return replace(self, **changes)

    def retry_delay(self, attempts: int) -> timedelta:
        """
        Delay before the next delivery attempt.

        Args:
            attempts: Attempts made so far (1 after the first failure)

        Returns:
            Backoff delay; attempts beyond the schedule reuse its last value
        """
        index = min(max(attempts, 1), len(self.retry_backoff)) - 1
        return self.retry_backoff[index]


def get_pipeline_config() -> PipelineConfig:
    """FastAPI dependency returning the environment-backed pipeline config."""
    return PipelineConfig.from_settings()
