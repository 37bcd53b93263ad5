"""Tests for command-time context selection through the engine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from dictum.core.logging import get_correlation_context
from dictum.memory.engine import MemoryEngine
from dictum.memory.errors import InvalidArgumentError
from dictum.memory.scorer import NullScorer
from dictum.models.memory import MemoryItem, MemoryTier

from tests.fakes import ScriptedScorer
from tests.helpers import ManualClock, wait_until

EngineFactory = Callable[..., MemoryEngine]


class _CorrelationRecordingScorer(NullScorer):
    def __init__(self) -> None:
        self.command_ids: list[str | None] = []

    async def relevance_to_command(self, item: MemoryItem, command: str) -> float:
        self.command_ids.append(get_correlation_context().command_id)
        return 0.5


class TestSelection:
    @pytest.mark.asyncio
    async def test_invoice_command_example(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.command = {"invoice #4471 due friday": 0.9, "invoice template": 0.4}
        engine = make_engine()
        await engine.init()
        best = await engine.add_item("invoice #4471 due friday", "clipboard")
        await engine.add_item("invoice template", "highlight")

        result = await engine.get_context_for_command(
            "summarize the invoice", max_items=1, min_relevance=0.3
        )

        assert [scored.item.id for scored in result.items] == [best.id]
        assert result.items[0].command_relevance == pytest.approx(0.9)
        assert result.total_relevant_items == 2
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_added_item_round_trips_with_usage(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.default_command = 0.6
        engine = make_engine()
        await engine.init()
        item = await engine.add_item("draft reply to Sam", "ai-exchange")

        result = await engine.get_context_for_command("reply to Sam")

        assert [scored.item.id for scored in result.items] == [item.id]
        assert result.items[0].item.access_count == 1
        snapshot = await engine.get_all_memory_items()
        stored = snapshot.working[0]
        assert stored.access_count == 1
        assert stored.usefulness == 5

    @pytest.mark.asyncio
    async def test_usage_refreshes_relevance_score(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.default_command = 0.8
        scorer.refresh = {"weekly report": 0.65}
        engine = make_engine()
        await engine.init()
        await engine.add_item("weekly report", "clipboard")

        result = await engine.get_context_for_command("send the weekly report")

        assert result.items[0].item.relevance_score == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_below_floor_is_excluded(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.command = {"relevant": 0.5, "noise": 0.29}
        engine = make_engine()
        await engine.init()
        await engine.add_item("relevant", "clipboard")
        noise = await engine.add_item("noise", "clipboard")

        result = await engine.get_context_for_command("anything", min_relevance=0.3)

        assert result.total_relevant_items == 1
        snapshot = await engine.get_all_memory_items()
        untouched = next(item for item in snapshot.all_items() if item.id == noise.id)
        assert untouched.access_count == 0

    @pytest.mark.asyncio
    async def test_ties_break_on_relevance_then_recency_then_id(
        self, make_engine: EngineFactory, scorer: ScriptedScorer, clock: ManualClock
    ) -> None:
        scorer.default_command = 0.5
        scorer.initial = {"strong": 0.8, "older": 0.2, "newer": 0.2}
        engine = make_engine()
        await engine.init()
        older = await engine.add_item("older", "clipboard")
        clock.advance(seconds=10)
        newer = await engine.add_item("newer", "clipboard")
        strong = await engine.add_item("strong", "clipboard")

        result = await engine.get_context_for_command("pick one", max_items=3)

        assert [scored.item.id for scored in result.items] == [strong.id, newer.id, older.id]

    @pytest.mark.asyncio
    async def test_zero_max_items_returns_nothing_but_counts(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.default_command = 0.9
        engine = make_engine()
        await engine.init()
        await engine.add_item("something", "clipboard")

        result = await engine.get_context_for_command("something", max_items=0)

        assert result.items == []
        assert result.total_relevant_items == 1
        snapshot = await engine.get_all_memory_items()
        assert snapshot.working[0].access_count == 0

    @pytest.mark.asyncio
    async def test_null_scorer_returns_empty_without_degrading(
        self, make_engine: EngineFactory
    ) -> None:
        engine = make_engine(scorer=NullScorer())
        await engine.init()
        await engine.add_item("anything at all", "clipboard")

        result = await engine.get_context_for_command("anything at all")

        assert result.items == []
        assert result.total_relevant_items == 0
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_command_id_is_propagated_to_scoring(self, make_engine: EngineFactory) -> None:
        scorer = _CorrelationRecordingScorer()
        engine = make_engine(scorer=scorer)
        await engine.init()
        await engine.add_item("one", "clipboard")
        await engine.add_item("two", "clipboard")

        await engine.get_context_for_command("first")
        await engine.get_context_for_command("second")

        assert len(scorer.command_ids) == 4
        assert all(command_id is not None for command_id in scorer.command_ids)
        assert scorer.command_ids[0] == scorer.command_ids[1]
        assert scorer.command_ids[0] != scorer.command_ids[2]


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("command", "kwargs"),
        [
            ("", {}),
            ("   ", {}),
            ("valid", {"max_items": -1}),
            ("valid", {"min_relevance": 1.5}),
            ("valid", {"min_relevance": -0.1}),
        ],
    )
    async def test_invalid_arguments(
        self, make_engine: EngineFactory, command: str, kwargs: dict[str, object]
    ) -> None:
        engine = make_engine()
        await engine.init()
        with pytest.raises(InvalidArgumentError):
            await engine.get_context_for_command(command, **kwargs)


class TestDegradedMode:
    @pytest.mark.asyncio
    async def test_scorer_down_falls_back_to_recency(
        self, make_engine: EngineFactory, clock: ManualClock
    ) -> None:
        scorer = ScriptedScorer(fail_all=True)
        engine = make_engine(scorer=scorer)
        await engine.init(long_term=[{"content": "archived fact"}])
        first = await engine.add_item("first", "clipboard")
        clock.advance(seconds=5)
        second = await engine.add_item("second", "clipboard")

        result = await engine.get_context_for_command("anything", max_items=2)

        assert result.degraded is True
        assert result.total_relevant_items == 0
        assert [scored.item.id for scored in result.items] == [second.id, first.id]
        snapshot = await engine.get_all_memory_items()
        assert all(item.access_count == 0 for item in snapshot.all_items())

    @pytest.mark.asyncio
    async def test_long_term_follows_working_in_fallback(self, make_engine: EngineFactory) -> None:
        engine = make_engine(scorer=ScriptedScorer(fail_all=True))
        await engine.init(long_term=[{"content": "archived fact"}])
        await engine.add_item("fresh", "clipboard")

        result = await engine.get_context_for_command("anything")

        assert [scored.item.tier for scored in result.items] == [
            MemoryTier.working,
            MemoryTier.long_term,
        ]

    @pytest.mark.asyncio
    async def test_partial_failure_is_not_degraded(
        self, make_engine: EngineFactory, scorer: ScriptedScorer
    ) -> None:
        scorer.failing = {"broken"}
        scorer.default_command = 0.7
        engine = make_engine()
        await engine.init()
        await engine.add_item("broken", "clipboard")
        healthy = await engine.add_item("healthy", "clipboard")

        result = await engine.get_context_for_command("anything")

        assert result.degraded is False
        assert [scored.item.id for scored in result.items] == [healthy.id]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_lookup_records_no_usage(self, make_engine: EngineFactory) -> None:
        scorer = ScriptedScorer(default_command=0.9)
        engine = make_engine(scorer=scorer, timeout_s=5.0)
        await engine.init()
        await engine.add_item("slow to score", "clipboard")
        scorer.delay = 1.0

        task = asyncio.create_task(engine.get_context_for_command("slow to score"))
        await wait_until(lambda: scorer.in_flight > 0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        snapshot = await engine.get_all_memory_items()
        assert snapshot.working[0].access_count == 0


class TestConcurrentDelete:
    @pytest.mark.asyncio
    async def test_item_deleted_while_scoring_is_not_returned(
        self, make_engine: EngineFactory
    ) -> None:
        scorer = ScriptedScorer(command={"secret": 0.9, "keep": 0.7})
        engine = make_engine(scorer=scorer, timeout_s=5.0)
        await engine.init()
        secret = await engine.add_item("secret", "clipboard")
        kept = await engine.add_item("keep", "clipboard")
        scorer.delay = 0.1

        task = asyncio.create_task(engine.get_context_for_command("what was the secret"))
        await wait_until(lambda: scorer.in_flight > 0)
        assert await engine.delete_item(secret.id)

        result = await task

        assert [scored.item.id for scored in result.items] == [kept.id]
        assert result.total_relevant_items == 1
        assert result.items[0].item.access_count == 1
