"""In-memory owner of the three retention tiers.

Each tier is an insertion-ordered ``id -> MemoryItem`` arena. A side index
maps every resident id to its tier, so an id lives in exactly one place.
The store is synchronous and never awaits; callers serialise access with the
engine's writer lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from dictum.config import MemoryConfig
from dictum.core.metrics import EVICTIONS_TOTAL
from dictum.memory.errors import (
    AccessError,
    InvalidArgumentError,
    InvalidItemError,
    InvalidTierError,
)
from dictum.models.memory import TIER_ORDER, MemoryItem, MemorySnapshot, MemoryTier, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_TIER_ALIASES: dict[str, MemoryTier] = {
    "working": MemoryTier.working,
    "short-term": MemoryTier.short_term,
    "short_term": MemoryTier.short_term,
    "shortterm": MemoryTier.short_term,
    "long-term": MemoryTier.long_term,
    "long_term": MemoryTier.long_term,
    "longterm": MemoryTier.long_term,
}


def parse_tier(value: MemoryTier | str) -> MemoryTier:
    if isinstance(value, MemoryTier):
        return value
    tier = _TIER_ALIASES.get(str(value).strip().lower())
    if tier is None:
        raise InvalidTierError(f"unknown memory tier: {value!r}", tier=value)
    return tier


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class ItemStore:
    def __init__(self, config: MemoryConfig | None = None, *, clock: Clock = utc_now) -> None:
        self._config = config or MemoryConfig()
        self._clock = clock
        self._tiers: dict[MemoryTier, dict[str, MemoryItem]] = {tier: {} for tier in TIER_ORDER}
        self._index: dict[str, MemoryTier] = {}
        # Monotonic insertion order; breaks relevance ties during eviction.
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0

    @property
    def config(self) -> MemoryConfig:
        return self._config

    # ── reads ───────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._index

    def get(self, item_id: str) -> MemoryItem | None:
        tier = self._index.get(item_id)
        if tier is None:
            return None
        return self._tiers[tier][item_id].model_copy(deep=True)

    def tier_of(self, item_id: str) -> MemoryTier | None:
        return self._index.get(item_id)

    def items(self, tier: MemoryTier | str) -> list[MemoryItem]:
        resolved = parse_tier(tier)
        return [item.model_copy(deep=True) for item in self._tiers[resolved].values()]

    def all_items(self) -> list[MemoryItem]:
        return [item for tier in TIER_ORDER for item in self.items(tier)]

    def counts(self) -> dict[MemoryTier, int]:
        return {tier: len(self._tiers[tier]) for tier in TIER_ORDER}

    def sequence_of(self, item_id: str) -> int:
        return self._sequence.get(item_id, -1)

    def snapshot(self) -> MemorySnapshot:
        return MemorySnapshot(
            working=self.items(MemoryTier.working),
            short_term=self.items(MemoryTier.short_term),
            long_term=self.items(MemoryTier.long_term),
        )

    # ── mutations ───────────────────────────────────────────────────

    def add_item(self, item: MemoryItem) -> MemoryItem:
        """Insert ``item`` into Working and enforce Working capacity.

        The caller supplies the initial relevance score on the item. Returns a
        copy of the stored item; it may already have been evicted if it scored
        lowest in a full tier.
        """
        if not item.content or not item.content.strip():
            raise InvalidItemError("memory item requires non-empty content")
        if item.id in self._index:
            raise InvalidItemError(f"memory item {item.id} already exists", item_id=item.id)

        stored = item.model_copy(
            update={
                "tier": MemoryTier.working,
                "expires_at": self._clock() + self._ttl(MemoryTier.working),
                "relevance_score": clamp_score(item.relevance_score),
                "demoted_at": None,
            },
            deep=True,
        )
        self._insert(stored)
        logger.info("memory_item_added id=%s source=%s", stored.id, stored.source)
        self.enforce_capacity(MemoryTier.working)
        return stored.model_copy(deep=True)

    def record_usage(self, item_id: str, usefulness: int) -> MemoryItem | None:
        """Bump usage stats on an item in any tier; ``None`` if it is not resident."""
        if not item_id:
            raise AccessError("item id is required")
        if not 0 <= usefulness <= 10:
            raise InvalidArgumentError(
                "usefulness must be between 0 and 10", usefulness=usefulness
            )

        tier = self._index.get(item_id)
        if tier is None:
            return None

        item = self._tiers[tier][item_id]
        item.last_accessed = self._clock()
        item.access_count += 1
        item.usefulness = max(item.usefulness, usefulness)
        return item.model_copy(deep=True)

    def update_score(self, item_id: str, score: float) -> bool:
        tier = self._index.get(item_id)
        if tier is None:
            return False
        self._tiers[tier][item_id].relevance_score = clamp_score(score)
        return True

    def delete_item(self, item_id: str) -> bool:
        if not item_id:
            raise AccessError("item id is required")
        tier = self._index.pop(item_id, None)
        if tier is None:
            return False
        del self._tiers[tier][item_id]
        self._sequence.pop(item_id, None)
        logger.info("memory_item_deleted id=%s tier=%s", item_id, tier.value)
        return True

    def clear_tier(self, tier: MemoryTier | str | None = None) -> int:
        """Empty one tier, or every tier when ``tier`` is None. Returns items removed."""
        targets = TIER_ORDER if tier is None else (parse_tier(tier),)
        removed = 0
        for target in targets:
            for item_id in self._tiers[target]:
                self._index.pop(item_id, None)
                self._sequence.pop(item_id, None)
            removed += len(self._tiers[target])
            self._tiers[target] = {}
        logger.info(
            "memory_cleared tier=%s removed=%d",
            "all" if tier is None else targets[0].value,
            removed,
        )
        return removed

    def seed_long_term(self, items: Iterable[MemoryItem]) -> int:
        """Place pre-validated items straight into LongTerm; duplicates are skipped."""
        seeded = 0
        for item in items:
            if item.id in self._index:
                logger.warning("memory_seed_duplicate id=%s", item.id)
                continue
            stored = item.model_copy(
                update={
                    "tier": MemoryTier.long_term,
                    "expires_at": None,
                    "relevance_score": clamp_score(item.relevance_score),
                },
                deep=True,
            )
            self._insert(stored)
            seeded += 1
        self.enforce_capacity(MemoryTier.long_term)
        return seeded

    def apply_pass(self, tiers: dict[MemoryTier, list[MemoryItem]]) -> dict[MemoryTier, int]:
        """Replace tier membership with the recombined result of a pass.

        Every resident id must appear exactly once across ``tiers`` or be
        absent (dropped). Items not currently resident are ignored, so an item
        deleted while the pass was scoring stays deleted. Returns eviction
        counts per tier after capacity enforcement.
        """
        seen: set[str] = set()
        rebuilt: dict[MemoryTier, dict[str, MemoryItem]] = {tier: {} for tier in TIER_ORDER}
        for tier in TIER_ORDER:
            for item in tiers.get(tier, []):
                if item.id not in self._index or item.id in seen:
                    continue
                seen.add(item.id)
                rebuilt[tier][item.id] = item.model_copy(update={"tier": tier}, deep=True)

        for item_id in list(self._index):
            if item_id not in seen:
                self._sequence.pop(item_id, None)

        self._tiers = rebuilt
        self._index = {item_id: tier for tier in TIER_ORDER for item_id in rebuilt[tier]}

        evicted: dict[MemoryTier, int] = {}
        for tier in TIER_ORDER:
            dropped = self.enforce_capacity(tier)
            if dropped:
                evicted[tier] = len(dropped)
        return evicted

    def enforce_capacity(self, tier: MemoryTier) -> list[MemoryItem]:
        """Drop the lowest-relevance items beyond the tier maximum.

        Ties on relevance evict the earliest-inserted item first.
        """
        arena = self._tiers[tier]
        limit = self._config.tier(tier).max_items
        if len(arena) <= limit:
            return []

        ranked = sorted(
            arena.values(),
            key=lambda item: (item.relevance_score, self._sequence.get(item.id, -1)),
            reverse=True,
        )
        keep = {item.id for item in ranked[:limit]}
        dropped = ranked[limit:]
        # Rebuild preserving insertion order for the survivors.
        self._tiers[tier] = {item_id: item for item_id, item in arena.items() if item_id in keep}
        for item in dropped:
            self._index.pop(item.id, None)
            self._sequence.pop(item.id, None)
        EVICTIONS_TOTAL.labels(tier=tier.value).inc(len(dropped))
        logger.info(
            "memory_tier_evicted tier=%s dropped=%d limit=%d", tier.value, len(dropped), limit
        )
        return dropped

    # ── internals ───────────────────────────────────────────────────

    def _insert(self, item: MemoryItem) -> None:
        self._tiers[item.tier][item.id] = item
        self._index[item.id] = item.tier
        self._sequence[item.id] = self._next_sequence
        self._next_sequence += 1

    def _ttl(self, tier: MemoryTier) -> timedelta:
        seconds = self._config.tier(tier).ttl_seconds
        if seconds is None:
            raise ValueError(f"tier {tier.value} has no ttl")
        return timedelta(seconds=seconds)

    def expiry_for(self, tier: MemoryTier, now: datetime) -> datetime | None:
        if self._config.tier(tier).ttl_seconds is None:
            return None
        return now + self._ttl(tier)


__all__ = ["Clock", "ItemStore", "clamp_score", "parse_tier"]
