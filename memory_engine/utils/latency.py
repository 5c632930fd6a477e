"""
Latency tracking for memory engine operations.

Every tracked operation feeds two sinks: an in-process sample window
used for the /metrics percentiles, and a Prometheus histogram.
"""

import functools
import inspect
import time
from collections import deque
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from statistics import mean, quantiles
from typing import Any, Callable, TypeVar

import structlog
from prometheus_client import Histogram

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

MAX_SAMPLES = 1000

LATENCY_HISTOGRAM = Histogram(
    "memory_engine_operation_latency_seconds",
    "Memory engine operation latency in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


@dataclass
class LatencyMetrics:
    """Sliding window of latency samples for one operation."""

    operation: str
    samples: deque[float] = field(default_factory=lambda: deque(maxlen=MAX_SAMPLES))

    @property
    def count(self) -> int:
        return len(self.samples)

    def _percentile(self, n: int, index: int) -> float:
        """Cut point `index` of `n` quantiles, in ms."""
        if len(self.samples) < 2:
            return (self.samples[0] if self.samples else 0.0) * 1000
        return quantiles(self.samples, n=n)[index] * 1000

    @property
    def p50(self) -> float:
        return self._percentile(2, 0)

    @property
    def p95(self) -> float:
        return self._percentile(20, 18)

    @property
    def p99(self) -> float:
        return self._percentile(100, 98)

    @property
    def avg(self) -> float:
        return mean(self.samples) * 1000 if self.samples else 0.0

    def add_sample(self, duration_seconds: float) -> None:
        self.samples.append(duration_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "p50_ms": round(self.p50, 2),
            "p95_ms": round(self.p95, 2),
            "p99_ms": round(self.p99, 2),
            "avg_ms": round(self.avg, 2),
            "count": self.count,
        }


class LatencyTracker:
    """
    Process-wide registry of LatencyMetrics, keyed by operation name.

    A singleton so that decorators applied at import time and the
    metrics route see the same samples.
    """

    _instance: "LatencyTracker | None" = None
    _metrics: dict[str, LatencyMetrics]

    def __new__(cls) -> "LatencyTracker":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._metrics = {}
        return cls._instance

    def record(self, operation: str, duration_seconds: float) -> None:
        metrics = self._metrics.get(operation)
        if metrics is None:
            metrics = self._metrics[operation] = LatencyMetrics(operation=operation)
        metrics.add_sample(duration_seconds)
        LATENCY_HISTOGRAM.labels(operation=operation).observe(duration_seconds)

    def get_metrics(self, operation: str) -> LatencyMetrics | None:
        return self._metrics.get(operation)

    def get_all_metrics(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._metrics.values()]

    def reset(self) -> None:
        self._metrics.clear()


_tracker = LatencyTracker()


def _finish(operation: str, start: float, result: dict[str, float]) -> None:
    duration = time.perf_counter() - start
    result["duration_ms"] = duration * 1000
    _tracker.record(operation, duration)
    logger.debug(
        "operation_completed",
        operation=operation,
        duration_ms=round(duration * 1000, 2),
    )


@contextmanager
def track_latency_sync(operation: str):
    """Time a synchronous block. Yields a dict that receives 'duration_ms'."""
    result: dict[str, float] = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        _finish(operation, start, result)


@asynccontextmanager
async def track_latency(operation: str):
    """
    Time an async block.

    Example:
        async with track_latency("maintenance_prune") as timing:
            await store.prune()
        logger.info("pruned", ms=timing["duration_ms"])
    """
    result: dict[str, float] = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        _finish(operation, start, result)


def latency_tracked(operation: str | None = None) -> Callable[[F], F]:
    """
    Decorator recording the latency of a sync or async callable.

    Args:
        operation: Operation name (defaults to the function name)
    """

    def decorator(func: F) -> F:
        op_name = operation or func.__name__

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                async with track_latency(op_name):
                    return await func(*args, **kwargs)

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with track_latency_sync(op_name):
                return func(*args, **kwargs)

        return sync_wrapper  # type: ignore

    return decorator


def get_tracker() -> LatencyTracker:
    return _tracker
