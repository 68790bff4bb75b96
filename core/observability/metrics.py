"""
Metrics Collection for the Sync Engine

Collects and exposes metrics for:
- Sync cycles (started, completed, partial failure, aborted, cancelled, coalesced)
- Entity outcomes (inserted, updated, skipped, failed) by entity kind
- Remote calls (timeouts, errors, background replication failures)
- Processing times per phase (average, p95)

Metrics are kept in memory for the lifetime of the process.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

def _cycle_counts() -> Dict[str, int]:
    return {"started": 0, "completed": 0, "partial": 0, "aborted": 0, "cancelled": 0, "coalesced": 0}


@dataclass
class CycleMetrics:
    """Metrics for sync cycle execution."""
    started: int = 0
    completed: int = 0
    partial: int = 0
    aborted: int = 0
    cancelled: int = 0
    coalesced: int = 0
    in_progress: int = 0

    # By direction (pull / push)
    by_direction: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_cycle_counts))


@dataclass
class EntityMetrics:
    """Per-entity outcome counts."""
    total: int = 0
    failed: int = 0

    # kind -> status -> count
    by_kind: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: defaultdict(int)))


@dataclass
class RemoteMetrics:
    """Remote call health."""
    timeouts: int = 0
    errors: int = 0
    replication_failures: int = 0
    last_online: Optional[datetime] = None
    last_offline: Optional[datetime] = None


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    # By stage
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for sync cycles.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_cycle_started("pull")
        metrics.record_entity_outcome("box", "INSERTED")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.cycles = CycleMetrics()
        self.entities = EntityMetrics()
        self.remote = RemoteMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self) -> None:
        """Clear all counters (for testing)."""
        with self._lock:
            self.cycles = CycleMetrics()
            self.entities = EntityMetrics()
            self.remote = RemoteMetrics()
            self.timings = TimingMetrics()

    # =========================================================================
    # Cycle Metrics
    # =========================================================================

    def record_cycle_started(self, direction: str):
        """Record a cycle start."""
        with self._lock:
            self.cycles.started += 1
            self.cycles.in_progress += 1
            self.cycles.by_direction[direction]["started"] += 1

    def record_cycle_finished(self, direction: str, result: str, duration_ms: float = None):
        """Record how a cycle ended.

        ``result`` is a CycleResult value. COALESCED cycles never started, so
        they do not touch ``in_progress``.
        """
        bucket = {
            "SUCCESS": "completed",
            "PARTIAL_FAILURE": "partial",
            "ABORTED": "aborted",
            "CANCELLED": "cancelled",
            "COALESCED": "coalesced",
        }.get(result, "aborted")

        with self._lock:
            setattr(self.cycles, bucket, getattr(self.cycles, bucket) + 1)
            self.cycles.by_direction[direction][bucket] += 1
            if bucket != "coalesced":
                self.cycles.in_progress = max(0, self.cycles.in_progress - 1)

            if duration_ms:
                self.timings.add_sample(duration_ms, f"cycle.{direction}")

    # =========================================================================
    # Entity Metrics
    # =========================================================================

    def record_entity_outcome(self, kind: str, status: str):
        """Record one per-entity outcome."""
        with self._lock:
            self.entities.total += 1
            if status == "FAILED":
                self.entities.failed += 1
            self.entities.by_kind[kind][status] += 1

    def get_entity_counts(self, kind: str) -> Dict[str, int]:
        with self._lock:
            return dict(self.entities.by_kind.get(kind, {}))

    # =========================================================================
    # Remote Metrics
    # =========================================================================

    def record_remote_timeout(self):
        with self._lock:
            self.remote.timeouts += 1

    def record_remote_error(self):
        with self._lock:
            self.remote.errors += 1

    def record_replication_failure(self):
        """A background single-entity remote write failed."""
        with self._lock:
            self.remote.replication_failures += 1

    def record_connectivity(self, online: bool):
        with self._lock:
            if online:
                self.remote.last_online = datetime.utcnow()
            else:
                self.remote.last_offline = datetime.utcnow()

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "cycles": {
                    "started": self.cycles.started,
                    "completed": self.cycles.completed,
                    "partial": self.cycles.partial,
                    "aborted": self.cycles.aborted,
                    "cancelled": self.cycles.cancelled,
                    "coalesced": self.cycles.coalesced,
                    "in_progress": self.cycles.in_progress,
                    "by_direction": {k: dict(v) for k, v in self.cycles.by_direction.items()},
                },
                "entities": {
                    "total": self.entities.total,
                    "failed": self.entities.failed,
                    "by_kind": {k: dict(v) for k, v in self.entities.by_kind.items()},
                },
                "remote": {
                    "timeouts": self.remote.timeouts,
                    "errors": self.remote.errors,
                    "replication_failures": self.remote.replication_failures,
                    "last_online": self.remote.last_online.isoformat() if self.remote.last_online else None,
                    "last_offline": self.remote.last_offline.isoformat() if self.remote.last_offline else None,
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_cycle_started(direction: str):
    """Record a cycle start."""
    get_metrics().record_cycle_started(direction)


def record_cycle_finished(direction: str, result: str, duration_ms: float = None):
    """Record a cycle end."""
    get_metrics().record_cycle_finished(direction, result, duration_ms)


def record_entity_outcome(kind: str, status: str):
    """Record a per-entity outcome."""
    get_metrics().record_entity_outcome(kind, status)


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
