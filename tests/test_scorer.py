"""Tests for the local ScoringPort implementations."""

from __future__ import annotations

from datetime import timedelta

import pytest
from dictum.memory.scorer import HeuristicScorer, HeuristicWeights, NullScorer
from dictum.models.memory import MemoryItem
from dictum.protocols.memory import ScoringPort

from tests.helpers import ManualClock


def _item(clock: ManualClock, **fields: object) -> MemoryItem:
    fields.setdefault("content", "quarterly invoice for Acme")
    fields.setdefault("created_at", clock.now)
    fields.setdefault("last_accessed", clock.now)
    return MemoryItem(**fields)


class TestNullScorer:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(NullScorer(), ScoringPort)

    @pytest.mark.asyncio
    async def test_scores_never_move(self) -> None:
        scorer = NullScorer()
        item = MemoryItem(content="anything", relevance_score=0.42)

        assert await scorer.initial_score(item) == 0.0
        assert await scorer.refresh_score(item) == pytest.approx(0.42)
        assert await scorer.relevance_to_command(item, "anything") == 0.0


class TestHeuristicInitialScore:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(HeuristicScorer(), ScoringPort)

    @pytest.mark.asyncio
    async def test_fresh_item_without_usefulness(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        score = await scorer.initial_score(_item(clock))
        assert score == pytest.approx(0.3 / 0.7)

    @pytest.mark.asyncio
    async def test_usefulness_raises_initial_score(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        score = await scorer.initial_score(_item(clock, usefulness=10))
        assert score == pytest.approx(1.0)


class TestHeuristicRefresh:
    @pytest.mark.asyncio
    async def test_brand_new_item(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        # recency 1.0 and full age factor; no access or usefulness yet.
        assert await scorer.refresh_score(_item(clock)) == pytest.approx(0.3 + 0.1)

    @pytest.mark.asyncio
    async def test_recency_decays_with_time_since_access(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(
            weights=HeuristicWeights(recency=1.0, access_count=0, usefulness=0, age_decay=0),
            clock=clock,
        )
        item = _item(clock, last_accessed=clock.now - timedelta(days=7))
        assert await scorer.refresh_score(item) == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_age_decay_halves_each_week(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(
            weights=HeuristicWeights(recency=0, access_count=0, usefulness=0, age_decay=1.0),
            clock=clock,
        )
        item = _item(clock, created_at=clock.now - timedelta(days=7))
        assert await scorer.refresh_score(item) == pytest.approx(0.1 + 0.9 * 0.5)

    @pytest.mark.asyncio
    async def test_access_count_saturates(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(
            weights=HeuristicWeights(recency=0, access_count=1.0, usefulness=0, age_decay=0),
            clock=clock,
        )
        assert await scorer.refresh_score(_item(clock, access_count=5)) == pytest.approx(0.5)
        assert await scorer.refresh_score(_item(clock, access_count=40)) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_score_is_bounded(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        item = _item(clock, access_count=50, usefulness=10)
        assert 0.0 <= await scorer.refresh_score(item) <= 1.0


class TestHeuristicCommandRelevance:
    @pytest.mark.asyncio
    async def test_matching_words_drive_relevance(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        item = _item(clock, relevance_score=0.5)

        # "summarize" misses, "invoice" hits, "the" is too short: 1 of 3 words.
        score = await scorer.relevance_to_command(item, "summarize the invoice")

        assert score == pytest.approx(0.3 * 0.5 + 0.7 * (1 / 3))

    @pytest.mark.asyncio
    async def test_match_is_case_insensitive_and_capped(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        item = _item(clock, content="ACME QUARTERLY INVOICE", relevance_score=1.0)

        score = await scorer.relevance_to_command(item, "acme quarterly invoice")

        assert score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_long_commands_normalise_by_five_words(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        item = _item(clock, content="deploy staging cluster tonight", relevance_score=0.0)

        score = await scorer.relevance_to_command(
            item, "please deploy staging cluster after lunch maybe tonight"
        )

        # 4 matching words over min(5, 8) words.
        assert score == pytest.approx(0.7 * 4 / 5)

    @pytest.mark.asyncio
    async def test_no_overlap_uses_base_score_only(self, clock: ManualClock) -> None:
        scorer = HeuristicScorer(clock=clock)
        item = _item(clock, relevance_score=0.6)
        assert await scorer.relevance_to_command(item, "weather forecast") == pytest.approx(0.18)
