"""
Prometheus metrics for varscan runs.

Usage:
    from varscan.metrics import track_latency, TRAVERSAL_LATENCY

    @track_latency(TRAVERSAL_LATENCY)
    def traverse(...):
        ...
"""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Callable, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRAVERSAL_LATENCY = Histogram(
    "varscan_traversal_latency_seconds",
    "Time to walk one unit and extract its records",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

FRONTEND_LATENCY = Histogram(
    "varscan_frontend_latency_seconds",
    "Time to build the typed tree of one unit",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

RECORDS_TOTAL = Counter(
    "varscan_records_total",
    "Records produced by the extraction rules",
    ["kind"],
)

SKIPPED_NODES_TOTAL = Counter(
    "varscan_skipped_nodes_total",
    "Nodes that matched a rule but could not be extracted",
)

DROPPED_RECORDS_TOTAL = Counter(
    "varscan_dropped_records_total",
    "Records that failed to serialize",
)

NODES_VISITED = Gauge(
    "varscan_nodes_visited",
    "Nodes visited by the last traversal",
)


def track_latency(metric: Histogram) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator to track function latency."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: object, **kwargs: object) -> T:
            start = time.time()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{func.__name__} failed: {e}")
                raise
            finally:
                metric.observe(time.time() - start)

        return wrapper  # type: ignore[return-value]

    return decorator


def start_metrics_server(port: int = 8000) -> None:
    """Start Prometheus metrics HTTP server."""
    start_http_server(port)
    logger.info(f"Metrics server started on port {port}")
