"""
Observability Module for the Sync Engine

Provides:
- Structured logging with correlation IDs (owner, cycle, phase)
- Metrics collection (cycles, entity outcomes, remote health, timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_cycle_started,
    record_cycle_finished,
    record_entity_outcome,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_cycle_started",
    "record_cycle_finished",
    "record_entity_outcome",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
