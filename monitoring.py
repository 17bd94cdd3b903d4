"""
Operation Monitoring for the PII protection core

This module provides:
- Prometheus counters for encryption, decryption, cache hits and errors
- Timing decorator for key-provider and storage calls with slow-call logging
- In-process call statistics for health reporting

Usage:
    from monitoring import async_timed_operation, record_event

    @async_timed_operation("kms_decrypt")
    async def decrypt(...):
        ...

    record_event("cache_hits")
"""

import logging
import threading
import time
from collections import Counter as EventTally
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Optional, Dict, Any, List, Callable

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Slow-call threshold and which outputs are active."""
    slow_call_threshold_ms: float = 1000.0
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_call_threshold_ms: float = 1000.0,
    enable_prometheus: bool = True,
    enable_logging: bool = True
) -> None:
    """
    Replace the monitoring settings.

    Args:
        slow_call_threshold_ms: Calls slower than this are counted and logged as slow
        enable_prometheus: Export counters and histograms to prometheus_client
        enable_logging: Emit a warning for each slow call
    """
    global _config
    _config = MonitoringConfig(
        slow_call_threshold_ms=slow_call_threshold_ms,
        enable_prometheus=enable_prometheus,
        enable_logging=enable_logging
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

operation_events_total = Counter(
    'pii_guard_events_total',
    'Encryption, decryption, cache and duplicate-check events',
    ['event']
)

operation_duration = Histogram(
    'pii_guard_operation_duration_seconds',
    'Duration of key-provider and storage calls in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

ENCRYPTION_OPERATIONS = "encryption_operations"
DECRYPTION_OPERATIONS = "decryption_operations"
CACHE_HITS = "cache_hits"
ENCRYPTION_ERRORS = "encryption_errors"
DECRYPTION_ERRORS = "decryption_errors"
DUPLICATE_CHECKS = "duplicate_checks"
DUPLICATE_CHECK_FAILURES = "duplicate_check_failures"


# ============================================
# IN-PROCESS CALL STATISTICS
# ============================================

@dataclass
class CallStats:
    """Running totals for one timed operation"""
    operation: str
    count: int = 0
    errors: int = 0
    slow_calls: int = 0
    total_ms: float = 0.0
    fastest_ms: Optional[float] = None
    slowest_ms: float = 0.0
    last_call_at: Optional[datetime] = None

    def add(self, duration_ms: float, error: bool, slow: bool) -> None:
        self.count += 1
        self.errors += int(error)
        self.slow_calls += int(slow)
        self.total_ms += duration_ms
        self.fastest_ms = duration_ms if self.fastest_ms is None else min(self.fastest_ms, duration_ms)
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        self.last_call_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'errors': self.errors,
            'slow_calls': self.slow_calls,
            'avg_time_ms': round(self.total_ms / self.count, 2) if self.count else 0.0,
            'min_time_ms': round(self.fastest_ms or 0.0, 2),
            'max_time_ms': round(self.slowest_ms, 2),
            'last_call_at': self.last_call_at.isoformat() if self.last_call_at else None
        }


class MetricsRegistry:
    """Thread-safe call statistics and event tallies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: Dict[str, CallStats] = {}
        self._events: EventTally = EventTally()
        self._since = time.monotonic()

    def record_call(self, operation: str, duration_ms: float, error: bool, slow: bool) -> None:
        with self._lock:
            stats = self._calls.setdefault(operation, CallStats(operation))
            stats.add(duration_ms, error, slow)

    def increment(self, event: str) -> None:
        with self._lock:
            self._events[event] += 1

    def event_count(self, event: str) -> int:
        with self._lock:
            return self._events[event]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': round(time.monotonic() - self._since, 3),
                'events': dict(self._events),
                'operations': {name: stats.to_dict() for name, stats in self._calls.items()}
            }

    def slow_operations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [stats.to_dict() for stats in self._calls.values() if stats.slow_calls]

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
            self._events.clear()
            self._since = time.monotonic()


_registry = MetricsRegistry()


def get_metrics() -> Dict[str, Any]:
    """Event counts and per-operation call timings since start (or the last reset)."""
    return _registry.snapshot()


def get_event_count(event: str) -> int:
    return _registry.event_count(event)


def get_slow_operation_report() -> List[Dict[str, Any]]:
    """Operations that had at least one call over the slow-call threshold."""
    return _registry.slow_operations()


def reset_metrics() -> None:
    _registry.reset()


def record_event(event: str) -> None:
    """
    Count an event in-process and in Prometheus.

    Args:
        event: Event name (e.g. 'cache_hits')
    """
    _registry.increment(event)
    if _config.enable_prometheus:
        operation_events_total.labels(event=event).inc()


# ============================================
# TIMING
# ============================================

def _observe(operation: str, started: float, failed: bool) -> None:
    elapsed = time.perf_counter() - started
    elapsed_ms = elapsed * 1000
    slow = elapsed_ms > _config.slow_call_threshold_ms

    _registry.record_call(operation, elapsed_ms, failed, slow)

    if _config.enable_prometheus:
        operation_duration.labels(operation=operation, status="error" if failed else "success").observe(elapsed)

    if slow and _config.enable_logging:
        logger.warning(
            f"SLOW CALL: {operation} took {elapsed_ms:.2f}ms "
            f"(threshold: {_config.slow_call_threshold_ms}ms)"
        )


def async_timed_operation(operation: str):
    """
    Decorator that times a coroutine function.

    Cancellation and exceptions count as errors and are re-raised.

    Usage:
        @async_timed_operation("query_by_identifier_hash")
        async def query_by_identifier_hash(self, identifier_hash):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            failed = True
            try:
                result = await func(*args, **kwargs)
                failed = False
                return result
            finally:
                _observe(operation, started, failed)
        return wrapper
    return decorator
