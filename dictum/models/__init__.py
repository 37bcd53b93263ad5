from __future__ import annotations

from dictum.models.memory import (
    TIER_ORDER,
    ContextResult,
    MemoryItem,
    MemorySnapshot,
    MemoryStatsSnapshot,
    MemoryTier,
    OperationCounts,
    ScoredItem,
    TierChanges,
    new_item_id,
    utc_now,
)

__all__ = [
    "TIER_ORDER",
    "ContextResult",
    "MemoryItem",
    "MemorySnapshot",
    "MemoryStatsSnapshot",
    "MemoryTier",
    "OperationCounts",
    "ScoredItem",
    "TierChanges",
    "new_item_id",
    "utc_now",
]
