"""Prometheus metrics for the memory engine.

All metric objects are module-level singletons registered on the default
``prometheus_client`` registry.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, generate_latest

ITEMS_ADDED_TOTAL = Counter(
    "dictum_memory_items_added_total", "Items added to working memory", ["source"]
)
TIER_TRANSITIONS_TOTAL = Counter(
    "dictum_memory_tier_transitions_total",
    "Items moved between tiers or dropped by reconciliation",
    ["transition"],
)
EVICTIONS_TOTAL = Counter(
    "dictum_memory_evictions_total", "Items dropped for exceeding tier capacity", ["tier"]
)
RECONCILE_PASSES_TOTAL = Counter(
    "dictum_memory_reconcile_passes_total", "Reconciliation pass invocations", ["outcome"]
)
RECONCILE_DURATION_SECONDS = Histogram(
    "dictum_memory_reconcile_duration_seconds", "Reconciliation pass duration in seconds"
)
SCORING_FAILURES_TOTAL = Counter(
    "dictum_memory_scoring_failures_total",
    "Scoring calls that errored or timed out",
    ["operation"],
)
CONTEXT_REQUESTS_TOTAL = Counter(
    "dictum_memory_context_requests_total", "Context lookups for commands", ["mode"]
)
TIER_ITEMS = Gauge("dictum_memory_tier_items", "Items resident per tier", ["tier"])
metrics_generate_latest = generate_latest


@contextmanager
def observe_reconcile_duration() -> Iterator[None]:
    """Observe the wall time of one reconciliation pass, even if it fails."""
    start = time.monotonic()
    try:
        yield
    finally:
        RECONCILE_DURATION_SECONDS.observe(time.monotonic() - start)


__all__ = [
    "CONTEXT_REQUESTS_TOTAL",
    "EVICTIONS_TOTAL",
    "ITEMS_ADDED_TOTAL",
    "RECONCILE_DURATION_SECONDS",
    "RECONCILE_PASSES_TOTAL",
    "SCORING_FAILURES_TOTAL",
    "TIER_ITEMS",
    "TIER_TRANSITIONS_TOTAL",
    "metrics_generate_latest",
    "observe_reconcile_duration",
]
