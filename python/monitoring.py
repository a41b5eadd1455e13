"""
Screening Performance Monitoring

This module provides:
- Prometheus metrics for source adapter calls, list refreshes and watcher streams
- In-process per-source call statistics for the health endpoint
- Slow source logging

Usage:
    from monitoring import record_source_call, get_source_metrics

    record_source_call("pep", duration_ms=412.0, error=None)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, Info

logger = logging.getLogger(__name__)

SLOW_SOURCE_THRESHOLD_MS = 10000.0


# ============================================
# PROMETHEUS METRICS
# ============================================

source_call_duration = Histogram(
    'screening_source_call_duration_seconds',
    'Source adapter call duration in seconds',
    ['source', 'status'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 45.0)
)

source_call_total = Counter(
    'screening_source_call_total',
    'Total number of source adapter calls',
    ['source', 'status']
)

screening_duration = Histogram(
    'screening_duration_seconds',
    'End-to-end screening duration in seconds',
    ['kind'],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 45.0, 60.0)
)

screening_level_total = Counter(
    'screening_result_total',
    'Screening results by risk level',
    ['kind', 'level']
)

list_refresh_total = Counter(
    'reference_list_refresh_total',
    'Reference list refresh attempts',
    ['list', 'status']
)

list_records = Gauge(
    'reference_list_records',
    'Number of records currently served by a reference list cache',
    ['list']
)

watcher_stream_connected = Gauge(
    'watcher_stream_connected',
    'Whether a change stream is currently connected (1) or not (0)',
    ['stream']
)

watcher_alerts_total = Counter(
    'watcher_alerts_total',
    'Alerts raised by the change-stream watcher',
    ['severity']
)

build_info = Info(
    'screening_engine',
    'Entity risk screening engine information'
)
build_info.info({'version': '1.0.0'})


# ============================================
# SOURCE STATS TRACKING
# ============================================

@dataclass
class SourceStats:
    """Call statistics for a single source adapter."""
    source: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    last_error: Optional[str] = None
    last_called: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: Optional[str] = None) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_called = datetime.now()
        if error:
            self.errors += 1
            self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'last_error': self.last_error,
            'last_called': self.last_called.isoformat() if self.last_called else None
        }


# Everything runs on one event loop, so no lock is needed.
_source_stats: Dict[str, SourceStats] = {}


def record_source_call(source: str, duration_ms: float, error: Optional[str] = None) -> None:
    """Record one adapter call in both Prometheus and the in-process stats"""
    status = 'error' if error else 'success'
    source_call_duration.labels(source=source, status=status).observe(duration_ms / 1000)
    source_call_total.labels(source=source, status=status).inc()

    stats = _source_stats.setdefault(source, SourceStats(source=source))
    stats.record(duration_ms, error)

    if duration_ms > SLOW_SOURCE_THRESHOLD_MS:
        logger.warning(f"SLOW SOURCE: {source} took {duration_ms:.0f}ms")


def record_screening(kind: str, level: str, duration_seconds: float) -> None:
    screening_duration.labels(kind=kind).observe(duration_seconds)
    screening_level_total.labels(kind=kind, level=level).inc()


def record_list_refresh(list_name: str, success: bool, record_count: Optional[int] = None) -> None:
    list_refresh_total.labels(list=list_name, status='success' if success else 'error').inc()
    if record_count is not None:
        list_records.labels(list=list_name).set(record_count)


def set_stream_connected(stream: str, connected: bool) -> None:
    watcher_stream_connected.labels(stream=stream).set(1 if connected else 0)


def record_alert(severity: str) -> None:
    watcher_alerts_total.labels(severity=severity).inc()


def get_source_metrics() -> Dict[str, Any]:
    """Per-source call statistics since startup (or the last reset)"""
    return {source: stats.to_dict() for source, stats in _source_stats.items()}


def reset_metrics() -> None:
    """Reset in-process statistics (Prometheus counters are cumulative)"""
    _source_stats.clear()
