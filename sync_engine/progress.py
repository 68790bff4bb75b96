"""Cycle progress tracking.

Each phase of a cycle owns a band of the 0-100 range. Work inside a phase
advances through its band item by item. Reported percentages never go
backwards, even when a phase finishes with fewer items than announced.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from core.observability.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float, str], None]


class ProgressTracker:
    """Monotonic progress for one sync cycle."""

    def __init__(self, operation_name: str = "Sync", cycle_id: str = "unknown"):
        self.operation_name = operation_name
        self.cycle_id = cycle_id
        self.percent = 0.0
        self.message = ""
        self.start_time = time.time()
        self.stats = {"changed": 0, "skipped": 0, "errors": 0}

        self._band_start = 0.0
        self._band_end = 0.0
        self._band_total = 0
        self._band_done = 0
        self._listeners: List[ProgressCallback] = []

    def add_listener(self, callback: Optional[ProgressCallback]) -> None:
        if callback is not None:
            self._listeners.append(callback)

    def report(self, percent: float, message: str) -> float:
        """Publish progress. Lower values than already reported are raised to it."""
        self.percent = max(self.percent, min(100.0, float(percent)))
        self.message = message
        for callback in list(self._listeners):
            callback(self.percent, message)
        return self.percent

    def begin_band(self, start: float, end: float, total: int, message: str) -> None:
        """Enter a phase occupying ``start..end`` with ``total`` items of work."""
        self._band_start = max(start, self.percent)
        self._band_end = max(end, self._band_start)
        self._band_total = max(total, 0)
        self._band_done = 0
        self.report(self._band_start, message)

    def advance(self, message: str, changed: int = 0, skipped: int = 0, errors: int = 0) -> float:
        """Mark one item of the current band done."""
        self._band_done += 1
        self.stats["changed"] += changed
        self.stats["skipped"] += skipped
        self.stats["errors"] += errors

        if self._band_total:
            fraction = min(1.0, self._band_done / self._band_total)
        else:
            fraction = 1.0
        return self.report(self._band_start + (self._band_end - self._band_start) * fraction, message)

    def end_band(self, message: str) -> float:
        return self.report(self._band_end, message)

    def get_progress_info(self) -> Dict[str, Any]:
        elapsed = time.time() - self.start_time
        return {
            "percentage": self.percent,
            "message": self.message,
            "elapsed_str": self._format_duration(elapsed),
            **self.stats,
        }

    def log_progress(self, prefix: str = ""):
        info = self.get_progress_info()
        logger.info(
            f"{prefix}{self.operation_name} [{self.cycle_id}]: {info['percentage']:.1f}% | "
            f"{info['elapsed_str']} elapsed | {self.stats['changed']} changed, "
            f"{self.stats['skipped']} skipped, {self.stats['errors']} errors"
        )

    @staticmethod
    def _format_duration(seconds: float) -> str:
        """Format a duration as HH:MM:SS."""
        if seconds < 0:
            return "00:00:00"
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
