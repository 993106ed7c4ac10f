"""Sync state as seen by observers.

The supervisor owns one :class:`SyncSnapshot` and replaces it wholesale at
the end of every cycle. Observers (an HTTP health endpoint, a metrics
exporter) read whatever snapshot is current; it is frozen, so no locking is
needed.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config_schema import HealthConfig


class HealthStatus(str, Enum):
    NEVER_SYNCED = "never_synced"
    HEALTHY = "healthy"
    STALE = "stale"


HTTP_OK = 200
HTTP_UNAVAILABLE = 503


def _iso_from_epoch(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SyncSnapshot:
    """Immutable record of the sync loop's progress.

    ``last_sync_time`` is the wall-clock time of the last successful cycle
    (a no-op publish counts); ``last_publish_time`` only moves when the link
    changes.
    """

    last_synced_identifier: Optional[str] = None
    last_synced_commit: Optional[str] = None
    last_sync_time: Optional[float] = None
    last_publish_time: Optional[float] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_error_detail: Optional[str] = None
    consecutive_failures: int = 0
    cycles_total: int = 0
    failures_total: int = 0
    publishes_total: int = 0
    hook_failures_total: int = 0
    failures_by_kind: Tuple[Tuple[str, int], ...] = ()
    last_cycle_seconds: Optional[float] = None

    def record_success(
        self,
        *,
        identifier: str,
        commit: str,
        published: bool,
        now: float,
        duration: float,
    ) -> "SyncSnapshot":
        return dataclasses.replace(
            self,
            last_synced_identifier=identifier,
            last_synced_commit=commit,
            last_sync_time=now,
            last_publish_time=now if published else self.last_publish_time,
            last_error=None,
            last_error_kind=None,
            last_error_detail=None,
            consecutive_failures=0,
            cycles_total=self.cycles_total + 1,
            publishes_total=self.publishes_total + (1 if published else 0),
            last_cycle_seconds=duration,
        )

    def record_failure(
        self,
        *,
        kind: str,
        message: str,
        detail: Optional[str] = None,
        duration: float,
    ) -> "SyncSnapshot":
        counts = dict(self.failures_by_kind)
        counts[kind] = counts.get(kind, 0) + 1
        return dataclasses.replace(
            self,
            last_error=message,
            last_error_kind=kind,
            last_error_detail=detail,
            consecutive_failures=self.consecutive_failures + 1,
            cycles_total=self.cycles_total + 1,
            failures_total=self.failures_total + 1,
            failures_by_kind=tuple(sorted(counts.items())),
            last_cycle_seconds=duration,
        )

    def record_hook_failure(self) -> "SyncSnapshot":
        return dataclasses.replace(self, hook_failures_total=self.hook_failures_total + 1)


def evaluate(snapshot: SyncSnapshot, policy: HealthConfig, now: Optional[float] = None) -> HealthStatus:
    """Derive the health status of a snapshot."""
    if snapshot.last_sync_time is None:
        return HealthStatus.NEVER_SYNCED
    now = time.time() if now is None else now
    if now - snapshot.last_sync_time > policy.stale_after:
        return HealthStatus.STALE
    if snapshot.consecutive_failures > policy.max_failures:
        return HealthStatus.STALE
    return HealthStatus.HEALTHY


def health_report(
    snapshot: SyncSnapshot,
    policy: HealthConfig,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Payload for a health endpoint: 200 while healthy, 503 otherwise."""
    now = time.time() if now is None else now
    status = evaluate(snapshot, policy, now)
    ok = status is HealthStatus.HEALTHY
    age = None if snapshot.last_sync_time is None else round(now - snapshot.last_sync_time, 3)
    return {
        "status": status.value,
        "ok": ok,
        "code": HTTP_OK if ok else HTTP_UNAVAILABLE,
        "identifier": snapshot.last_synced_identifier,
        "commit": snapshot.last_synced_commit,
        "last_sync": _iso_from_epoch(snapshot.last_sync_time),
        "age_seconds": age,
        "consecutive_failures": snapshot.consecutive_failures,
        "last_error": snapshot.last_error,
        "last_error_kind": snapshot.last_error_kind,
        "last_error_detail": snapshot.last_error_detail,
    }


def metrics(snapshot: SyncSnapshot) -> Dict[str, Any]:
    """Counters and gauges for a metrics exporter."""
    return {
        "cycles_total": snapshot.cycles_total,
        "failures_total": snapshot.failures_total,
        "publishes_total": snapshot.publishes_total,
        "hook_failures_total": snapshot.hook_failures_total,
        "failures_by_kind": dict(snapshot.failures_by_kind),
        "consecutive_failures": snapshot.consecutive_failures,
        "last_sync_timestamp": snapshot.last_sync_time,
        "last_publish_timestamp": snapshot.last_publish_time,
        "last_cycle_seconds": snapshot.last_cycle_seconds,
    }
