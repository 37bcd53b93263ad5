"""Reconciliation pass: TTL expiry plus promotion and demotion between tiers.

A pass is a single sweep. It snapshots the store under the writer lock,
refreshes scores outside the lock through the scoring pool, then takes the
lock again, re-reads the store, and applies every decision in one step.
Items are judged one at a time; a failure on one item leaves it where it
was and the sweep moves on.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from dictum.config import MemoryConfig, PromotionRule
from dictum.core.logging import correlation_scope
from dictum.core.metrics import (
    RECONCILE_PASSES_TOTAL,
    TIER_ITEMS,
    TIER_TRANSITIONS_TOTAL,
    observe_reconcile_duration,
)
from dictum.memory.scoring import ScoringPool
from dictum.memory.store import Clock, ItemStore
from dictum.models.memory import TIER_ORDER, MemoryItem, MemoryTier, TierChanges, utc_now

logger = logging.getLogger(__name__)


@dataclass
class _Sweep:
    """Working buckets for one pass, recombined at the end."""

    working: list[MemoryItem] = field(default_factory=list)
    short_term: list[MemoryItem] = field(default_factory=list)
    long_term: list[MemoryItem] = field(default_factory=list)
    promoted_to_short_term: list[MemoryItem] = field(default_factory=list)
    promoted_to_long_term: list[MemoryItem] = field(default_factory=list)
    demoted_to_working: list[MemoryItem] = field(default_factory=list)
    demoted_to_short_term: list[MemoryItem] = field(default_factory=list)
    expired: int = 0
    item_failures: int = 0

    def recombine(self) -> dict[MemoryTier, list[MemoryItem]]:
        return {
            MemoryTier.working: [*self.working, *self.demoted_to_working],
            MemoryTier.short_term: [
                *self.short_term,
                *self.promoted_to_short_term,
                *self.demoted_to_short_term,
            ],
            MemoryTier.long_term: [*self.long_term, *self.promoted_to_long_term],
        }


class TierReconciler:
    def __init__(
        self,
        store: ItemStore,
        pool: ScoringPool,
        lock: asyncio.Lock,
        *,
        config: MemoryConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._pool = pool
        self._lock = lock
        self._config = config or store.config
        self._clock = clock
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> TierChanges | None:
        """Run one pass. Returns ``None`` when a pass is already in flight."""
        if self._running:
            RECONCILE_PASSES_TOTAL.labels(outcome="coalesced").inc()
            logger.info("reconcile_coalesced reason=pass_in_flight")
            return None

        self._running = True
        pass_id = uuid.uuid4().hex[:12]
        try:
            with correlation_scope(pass_id=pass_id), observe_reconcile_duration():
                changes = await self._run_pass()
        except asyncio.CancelledError:
            RECONCILE_PASSES_TOTAL.labels(outcome="cancelled").inc()
            logger.info("reconcile_cancelled pass_id=%s", pass_id)
            raise
        finally:
            self._running = False

        RECONCILE_PASSES_TOTAL.labels(outcome="completed").inc()
        return changes

    async def _run_pass(self) -> TierChanges:
        async with self._lock:
            now = self._clock()
            snapshot = self._store.snapshot()

        # Expired Working/ShortTerm items are decided on TTL alone.
        to_score = [
            *(item for item in snapshot.working if not item.is_expired(now)),
            *(item for item in snapshot.short_term if not item.is_expired(now)),
            *snapshot.long_term,
        ]
        scores = await self._pool.refresh_many(to_score) if to_score else {}
        scoring_failures = sum(1 for score in scores.values() if score is None)

        async with self._lock:
            now = self._clock()
            current = self._store.snapshot()
            long_term_before = {item.id for item in current.long_term}

            sweep = _Sweep()
            self._sweep_working(current.working, scores, now, sweep)
            self._sweep_short_term(current.short_term, scores, now, sweep)
            self._sweep_long_term(current.long_term, scores, now, sweep)

            evicted = self._store.apply_pass(sweep.recombine())
            counts = self._store.counts()
            long_term_after = {item.id for item in self._store.items(MemoryTier.long_term)}

        changes = TierChanges(
            expired=sweep.expired,
            promoted_to_short_term=len(sweep.promoted_to_short_term),
            promoted_to_long_term=len(sweep.promoted_to_long_term),
            demoted_to_working=len(sweep.demoted_to_working),
            demoted_to_short_term=len(sweep.demoted_to_short_term),
            evicted=evicted,
            scoring_failures=scoring_failures,
            item_failures=sweep.item_failures,
            long_term_changed=long_term_before != long_term_after,
        )
        self._publish_metrics(changes, counts)
        logger.info(
            "reconcile_completed expired=%d promoted=%d demoted=%d evicted=%d "
            "scoring_failures=%d item_failures=%d long_term_changed=%s",
            changes.expired,
            changes.promoted,
            changes.demoted,
            sum(evicted.values()),
            changes.scoring_failures,
            changes.item_failures,
            changes.long_term_changed,
        )
        return changes

    # ── per-tier sweeps ─────────────────────────────────────────────

    def _sweep_working(
        self,
        items: list[MemoryItem],
        scores: dict[str, float | None],
        now: datetime,
        sweep: _Sweep,
    ) -> None:
        rule = self._config.promote_to_short_term
        for item in items:
            try:
                if item.is_expired(now):
                    sweep.expired += 1
                    continue
                candidate, scored = _apply_score(item, scores)
                if self._qualifies(candidate, rule, scored):
                    sweep.promoted_to_short_term.append(
                        self._move(candidate, MemoryTier.short_term, now, demoted=False)
                    )
                else:
                    sweep.working.append(candidate)
            except Exception:
                logger.exception("reconcile_item_failed id=%s tier=working", item.id)
                sweep.item_failures += 1
                sweep.working.append(item)

    def _sweep_short_term(
        self,
        items: list[MemoryItem],
        scores: dict[str, float | None],
        now: datetime,
        sweep: _Sweep,
    ) -> None:
        rule = self._config.promote_to_long_term
        for item in items:
            try:
                if item.is_expired(now):
                    if item.relevance_score >= self._config.short_term_keep_relevance:
                        sweep.demoted_to_working.append(
                            self._move(item, MemoryTier.working, now, demoted=True)
                        )
                    else:
                        sweep.expired += 1
                    continue
                candidate, scored = _apply_score(item, scores)
                if self._qualifies(candidate, rule, scored):
                    sweep.promoted_to_long_term.append(
                        self._move(candidate, MemoryTier.long_term, now, demoted=False)
                    )
                else:
                    sweep.short_term.append(candidate)
            except Exception:
                logger.exception("reconcile_item_failed id=%s tier=short-term", item.id)
                sweep.item_failures += 1
                sweep.short_term.append(item)

    def _sweep_long_term(
        self,
        items: list[MemoryItem],
        scores: dict[str, float | None],
        now: datetime,
        sweep: _Sweep,
    ) -> None:
        stale_after = timedelta(days=self._config.long_term_stale_after_days)
        for item in items:
            try:
                candidate, scored = _apply_score(item, scores)
                if (
                    scored
                    and candidate.relevance_score < self._config.long_term_demote_below
                    and now - candidate.last_accessed > stale_after
                ):
                    sweep.demoted_to_short_term.append(
                        self._move(candidate, MemoryTier.short_term, now, demoted=True)
                    )
                else:
                    sweep.long_term.append(candidate)
            except Exception:
                logger.exception("reconcile_item_failed id=%s tier=long-term", item.id)
                sweep.item_failures += 1
                sweep.long_term.append(item)

    # ── helpers ─────────────────────────────────────────────────────

    def _qualifies(self, item: MemoryItem, rule: PromotionRule, scored: bool) -> bool:
        """Any single criterion promotes; the score only counts when it was refreshed."""
        if (
            self._config.sticky_demotion
            and item.demoted_at is not None
            and item.last_accessed <= item.demoted_at
        ):
            return False
        return (
            item.access_count >= rule.min_access_count
            or item.usefulness >= rule.min_usefulness
            or (scored and item.relevance_score >= rule.min_relevance)
        )

    def _move(
        self,
        item: MemoryItem,
        tier: MemoryTier,
        now: datetime,
        *,
        demoted: bool,
    ) -> MemoryItem:
        return item.model_copy(
            update={
                "tier": tier,
                "expires_at": self._store.expiry_for(tier, now),
                "demoted_at": now if demoted else None,
            }
        )

    def _publish_metrics(self, changes: TierChanges, counts: dict[MemoryTier, int]) -> None:
        transitions = {
            "expired": changes.expired,
            "working_to_short_term": changes.promoted_to_short_term,
            "short_term_to_long_term": changes.promoted_to_long_term,
            "short_term_to_working": changes.demoted_to_working,
            "long_term_to_short_term": changes.demoted_to_short_term,
        }
        for transition, count in transitions.items():
            if count:
                TIER_TRANSITIONS_TOTAL.labels(transition=transition).inc(count)
        for tier in TIER_ORDER:
            TIER_ITEMS.labels(tier=tier.value).set(counts[tier])


def _apply_score(
    item: MemoryItem,
    scores: dict[str, float | None],
) -> tuple[MemoryItem, bool]:
    """Return the item carrying its refreshed score, and whether one was available."""
    score = scores.get(item.id)
    if score is None:
        return item, False
    return item.model_copy(update={"relevance_score": score}), True


__all__ = ["TierReconciler"]
