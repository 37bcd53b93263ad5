"""Operation counters and tier summaries for the admin surface."""

from __future__ import annotations

from dictum.memory.store import Clock
from dictum.models.memory import (
    TIER_ORDER,
    MemorySnapshot,
    MemoryStatsSnapshot,
    MemoryTier,
    OperationCounts,
    TierChanges,
    utc_now,
)


class MemoryStats:
    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._operations = OperationCounts()
        self._last_updated = clock()

    @property
    def operations(self) -> OperationCounts:
        return self._operations.model_copy()

    def record_add(self, evicted: int = 0) -> None:
        self._operations.adds += 1
        self._operations.evictions += evicted
        self._touch()

    def record_access(self, count: int = 1) -> None:
        self._operations.accesses += count
        self._touch()

    def record_deletion(self, count: int = 1) -> None:
        self._operations.deletions += count
        self._touch()

    def record_context_request(self) -> None:
        self._operations.context_requests += 1
        self._touch()

    def record_pass(self, changes: TierChanges) -> None:
        self._operations.promotions += changes.promoted
        self._operations.demotions += changes.demoted
        self._operations.expirations += changes.expired
        self._operations.evictions += sum(changes.evicted.values())
        self._touch()

    def snapshot(self, memory: MemorySnapshot) -> MemoryStatsSnapshot:
        by_tier = {tier: len(memory.for_tier(tier)) for tier in TIER_ORDER}
        averages = {tier: _average_score(memory, tier) for tier in TIER_ORDER}
        return MemoryStatsSnapshot(
            total_items=memory.total,
            items_by_tier=by_tier,
            average_scores=averages,
            operations=self.operations,
            last_updated=self._last_updated,
        )

    def _touch(self) -> None:
        self._last_updated = self._clock()


def _average_score(memory: MemorySnapshot, tier: MemoryTier) -> float:
    items = memory.for_tier(tier)
    if not items:
        return 0.0
    return sum(item.relevance_score for item in items) / len(items)


__all__ = ["MemoryStats"]
