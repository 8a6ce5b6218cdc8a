"""
Geofence registry and prioritizer.

Mobile platforms cap the number of geofences an app may register at once
(20 per user here). The registry keeps every generated geofence stored and
decides which boundary geofences are active, ranking all candidates with an
explicit ordered-criteria key:

    1. smaller radius first (closer, more actionable tiers)
    2. relevance: arrival / post-arrival, then 1 mi, 3 mi, 5 mi approach
    3. newer task first
    4. geofence id (stable tiebreak)

Only active tasks are candidates. Geofences of muted and completed tasks
are deactivated outright, so a mute frees its slots for unmuted tasks at
once. The top N candidates are active; everything else is deactivated but
kept, and is promoted automatically when capacity frees up. Because the
active set is always the top N of one total order, a geofence is only ever
deactivated in favor of a strictly higher-priority one, and a new request
that does not rank into the top N is deferred instead of evicting anything.

Re-optimization runs under a per-user critical section: a process-local
lock plus, on PostgreSQL, a transaction-scoped advisory lock so that
concurrent edits for one user serialize across workers while different
users proceed in parallel.
"""

import hashlib
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.db.database import is_sqlite
from backend.src.models import (
    DeactivationReason,
    Geofence,
    GeofenceKind,
    GeofenceTier,
    Task,
    TaskStatus,
)
from backend.src.services.exceptions import CapacityError
from backend.src.services.geofence_sync import GeofenceSpecsPublisher
from backend.src.services.tier_generator import generate_for_task
from backend.src.utils.clock import ensure_utc
from backend.src.utils.logging_config import get_logger


logger = get_logger("registry")


# Lower rank = expected to become relevant sooner
RELEVANCE_RANK = {
    GeofenceTier.ARRIVAL: 0,
    GeofenceTier.POST_ARRIVAL: 0,
    GeofenceTier.APPROACH_1MI: 1,
    GeofenceTier.APPROACH_3MI: 2,
    GeofenceTier.APPROACH_5MI: 3,
}


class PriorityKey(NamedTuple):
    """Sort key for a candidate geofence; lower sorts first (higher priority)."""

    radius_m: float
    relevance: int
    task_recency: float
    geofence_id: int


def _inactive_reason(task: Task) -> DeactivationReason:
    if task.status == TaskStatus.MUTED:
        return DeactivationReason.TASK_MUTED
    return DeactivationReason.TASK_INACTIVE


def priority_key(geofence: Geofence, task: Task) -> PriorityKey:
    """Compute the ordered-criteria priority key for a geofence."""
    created = ensure_utc(task.created_at)
    return PriorityKey(
        radius_m=geofence.radius_m,
        relevance=RELEVANCE_RANK[geofence.tier],
        task_recency=-(created.timestamp() if created else 0.0),
        geofence_id=geofence.id,
    )


@dataclass
class RegistryResult:
    """Outcome of a re-optimization."""

    user_id: str
    capacity: int
    active_count: int = 0
    activated: List[str] = field(default_factory=list)
    deactivated: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    regenerated: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.deactivated or self.regenerated)

    @property
    def capacity_error(self) -> Optional[CapacityError]:
        """Soft failure describing deferred geofences, if any."""
        if not self.deferred:
            return None
        return CapacityError(self.user_id, self.deferred, self.capacity)


# ============================================================================
# Per-user critical section
# ============================================================================

# An entry lives only while some caller holds its lock
_user_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
_user_locks_guard = threading.Lock()


def _user_lock(user_id: str) -> threading.RLock:
    with _user_locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.RLock()
            _user_locks[user_id] = lock
        return lock


def _advisory_key(user_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.sha256(f"geofence-registry:{user_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


@contextmanager
def user_critical_section(db: Session, user_id: str) -> Iterator[None]:
    """
    Serialize registry work for one user.

    The advisory lock is released when the surrounding transaction ends,
    so callers commit inside the block.
    """
    with _user_lock(user_id):
        if not is_sqlite(db):
            db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": _advisory_key(user_id)},
            )
        yield


class GeofenceRegistryService:
    """
    Maintains each user's active geofence set.

    Usage:
        >>> registry = GeofenceRegistryService(db, config, publisher)
        >>> result = registry.sync_task_geofences(task)
        >>> result.deferred  # geofences that did not fit
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        publisher: Optional[GeofenceSpecsPublisher] = None,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.publisher = publisher

    # ========================================================================
    # Generation
    # ========================================================================

    def sync_task_geofences(self, task: Task, force: bool = False) -> RegistryResult:
        """
        Regenerate a task's geofences if its classification changed, then
        re-optimize the owner's active set.

        Geofences are replaced wholesale, never patched in place.

        Args:
            task: Persisted task
            force: Regenerate even when the classification is unchanged

        Returns:
            RegistryResult for the owner

        Raises:
            ValidationError: If the classification cannot produce geofences
        """
        with user_critical_section(self.db, task.user_id):
            fingerprint = task.classification_key()
            has_geofences = (
                self.db.query(Geofence.id).filter(Geofence.task_id == task.id).first()
                is not None
            )
            regenerated = False

            if force or not has_geofences or task.geofence_fingerprint != fingerprint:
                specs = generate_for_task(
                    task, int(self.config.post_arrival_delay.total_seconds())
                )
                for stale in self.db.query(Geofence).filter(Geofence.task_id == task.id).all():
                    self.db.delete(stale)
                self.db.flush()
                for spec in specs:
                    self.db.add(Geofence(
                        task_id=task.id,
                        latitude=spec.latitude,
                        longitude=spec.longitude,
                        radius_m=spec.radius_m,
                        tier=spec.tier,
                        kind=spec.kind,
                        dwell_seconds=spec.dwell_seconds,
                        is_active=False,
                        deactivated_reason=DeactivationReason.CAPACITY,
                    ))
                task.geofence_fingerprint = fingerprint
                self.db.flush()
                self.db.expire(task, ["geofences"])
                regenerated = True
                logger.info(
                    "Geofences regenerated",
                    extra={"task_guid": task.guid, "user_id": task.user_id, "count": len(specs)},
                )

            result = self._optimize_locked(task.user_id, requested_task_id=task.id)
            result.regenerated = regenerated
            self.db.commit()

        self._publish_if_changed(result)
        return result

    # ========================================================================
    # Optimization
    # ========================================================================

    def optimize_user(self, user_id: str) -> RegistryResult:
        """
        Re-rank a user's geofences and activate the top N.

        Triggered by task create/update/delete, status changes, mute and
        unmute, and the periodic recheck.
        """
        with user_critical_section(self.db, user_id):
            result = self._optimize_locked(user_id)
            self.db.commit()

        self._publish_if_changed(result)
        return result

    def recheck_all_users(self) -> int:
        """
        Re-optimize every user with tasks (periodic recheck).

        Returns:
            Number of users whose active set changed
        """
        user_ids = [row.user_id for row in self.db.query(Task.user_id).distinct().all()]
        changed = 0
        for user_id in user_ids:
            if self.optimize_user(user_id).changed:
                changed += 1
        if changed:
            logger.info(
                "Registry recheck changed active sets",
                extra={"users": len(user_ids), "changed": changed},
            )
        return changed

    def _optimize_locked(
        self, user_id: str, requested_task_id: Optional[int] = None
    ) -> RegistryResult:
        capacity = self.config.max_active_geofences
        result = RegistryResult(user_id=user_id, capacity=capacity)

        rows: List[Tuple[Geofence, Task]] = (
            self.db.query(Geofence, Task)
            .join(Task, Geofence.task_id == Task.id)
            .filter(Task.user_id == user_id)
            .all()
        )

        candidates = [
            (geofence, task) for geofence, task in rows
            if geofence.kind == GeofenceKind.BOUNDARY and task.status == TaskStatus.ACTIVE
        ]
        candidates.sort(key=lambda pair: priority_key(pair[0], pair[1]))
        selected = {geofence.id for geofence, _ in candidates[:capacity]}

        # Boundary geofences first so dwell timers can mirror their arrival sibling
        arrival_active: Dict[int, bool] = {}
        for geofence, task in rows:
            if geofence.kind != GeofenceKind.BOUNDARY:
                continue
            if task.status != TaskStatus.ACTIVE:
                self._set_state(geofence, False, _inactive_reason(task), result)
            elif geofence.id in selected:
                self._set_state(geofence, True, None, result)
            else:
                self._set_state(geofence, False, DeactivationReason.CAPACITY, result)
                if requested_task_id is not None and task.id == requested_task_id:
                    result.deferred.append(geofence.guid)
            if geofence.tier == GeofenceTier.ARRIVAL:
                arrival_active[task.id] = geofence.is_active

        for geofence, task in rows:
            if geofence.kind == GeofenceKind.DWELL_TIMER:
                active = arrival_active.get(task.id, False)
                geofence.is_active = active
                if active:
                    geofence.deactivated_reason = None
                elif task.status != TaskStatus.ACTIVE:
                    geofence.deactivated_reason = _inactive_reason(task)
                else:
                    geofence.deactivated_reason = DeactivationReason.CAPACITY

        self.db.flush()
        result.active_count = len(selected)

        if result.deferred:
            logger.warning(
                "Geofence registration deferred at capacity",
                extra={
                    "user_id": user_id,
                    "deferred": len(result.deferred),
                    "capacity": capacity,
                },
            )
        if result.activated or result.deactivated:
            logger.info(
                "Geofence active set changed",
                extra={
                    "user_id": user_id,
                    "activated": len(result.activated),
                    "deactivated": len(result.deactivated),
                    "active": result.active_count,
                },
            )
        return result

    @staticmethod
    def _set_state(
        geofence: Geofence,
        active: bool,
        reason: Optional[DeactivationReason],
        result: RegistryResult,
    ) -> None:
        if geofence.is_active != active:
            (result.activated if active else result.deactivated).append(geofence.guid)
        geofence.is_active = active
        geofence.deactivated_reason = reason

    def _publish_if_changed(self, result: RegistryResult) -> None:
        if self.publisher is None or not result.changed:
            return
        self.publisher.publish(result.user_id, self.list_active(result.user_id))

    # ========================================================================
    # Queries
    # ========================================================================

    def list_active(self, user_id: str) -> List[Geofence]:
        """Active boundary geofences for a user, highest priority first."""
        rows = (
            self.db.query(Geofence, Task)
            .join(Task, Geofence.task_id == Task.id)
            .filter(
                Task.user_id == user_id,
                Geofence.is_active.is_(True),
                Geofence.kind == GeofenceKind.BOUNDARY,
            )
            .all()
        )
        rows.sort(key=lambda pair: priority_key(pair[0], pair[1]))
        return [geofence for geofence, _ in rows]

    def list_for_task(self, task_id: int) -> List[Geofence]:
        """All stored geofences of a task, outermost tier first."""
        geofences = self.db.query(Geofence).filter(Geofence.task_id == task_id).all()
        return sorted(geofences, key=lambda g: (-g.radius_m, g.kind.value, g.id))

    def get_stats(self, user_id: str) -> dict:
        """
        Registry statistics for a user.

        Returns:
            Dict with total, active, deferred, per-tier counts, capacity and
            utilization percentage
        """
        rows = (
            self.db.query(Geofence)
            .join(Task, Geofence.task_id == Task.id)
            .filter(Task.user_id == user_id, Geofence.kind == GeofenceKind.BOUNDARY)
            .all()
        )
        capacity = self.config.max_active_geofences
        active = sum(1 for g in rows if g.is_active)
        by_tier: Dict[str, int] = {}
        for geofence in rows:
            by_tier[geofence.tier.value] = by_tier.get(geofence.tier.value, 0) + 1

        return {
            "total": len(rows),
            "active": active,
            "deferred": sum(
                1 for g in rows
                if not g.is_active and g.deactivated_reason == DeactivationReason.CAPACITY
            ),
            "by_tier": by_tier,
            "capacity": capacity,
            "utilization_percent": round(active / capacity * 100, 1) if capacity else 0.0,
        }
