"""Local ScoringPort implementations.

``NullScorer`` is the default when nothing smarter is wired in.
``HeuristicScorer`` blends recency, access frequency, usefulness and an age
decay. No model calls; it is cheap enough to run on every pass.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from dictum.memory.store import Clock
from dictum.models.memory import MemoryItem, utc_now

_SECONDS_PER_DAY = 24 * 60 * 60
_WHITESPACE_RE = re.compile(r"\s+")


class NullScorer:
    """Scores nothing: new items start at 0 and scores never move."""

    async def initial_score(self, item: MemoryItem) -> float:
        return 0.0

    async def refresh_score(self, item: MemoryItem) -> float:
        return item.relevance_score

    async def relevance_to_command(self, item: MemoryItem, command: str) -> float:
        return 0.0


@dataclass(frozen=True)
class HeuristicWeights:
    """Relative weight of each factor in a refreshed score."""

    recency: float = 0.3
    access_count: float = 0.2
    usefulness: float = 0.4
    age_decay: float = 0.1


@dataclass
class HeuristicScorer:
    weights: HeuristicWeights = field(default_factory=HeuristicWeights)
    half_life_days: float = 7.0
    min_decay: float = 0.1
    # Command relevance mix: base score vs. word overlap with the command.
    base_weight: float = 0.3
    text_weight: float = 0.7
    clock: Clock = utc_now

    async def initial_score(self, item: MemoryItem) -> float:
        # New items get full recency on top of whatever usefulness they carry.
        w = self.weights
        total = w.usefulness + w.recency
        if total == 0.0:
            return 0.0
        return _clamp((w.usefulness * item.usefulness / 10 + w.recency * 1.0) / total)

    async def refresh_score(self, item: MemoryItem) -> float:
        now = self.clock()
        w = self.weights
        days_since_access = max(0.0, (now - item.last_accessed).total_seconds() / _SECONDS_PER_DAY)
        age_days = max(0.0, (now - item.created_at).total_seconds() / _SECONDS_PER_DAY)

        recency = 1 / (1 + days_since_access / self.half_life_days)
        access = min(1.0, item.access_count / 10)
        usefulness = item.usefulness / 10
        decay = self.min_decay + (1 - self.min_decay) * 0.5 ** (age_days / self.half_life_days)

        return _clamp(
            w.recency * recency
            + w.access_count * access
            + w.usefulness * usefulness
            + w.age_decay * decay
        )

    async def relevance_to_command(self, item: MemoryItem, command: str) -> float:
        return _clamp(
            self.base_weight * item.relevance_score
            + self.text_weight * self._text_match(item.content, command)
        )

    @staticmethod
    def _text_match(content: str, command: str) -> float:
        """Share of the command's longer words that appear in the content."""
        words = [word for word in _WHITESPACE_RE.split(command.lower()) if word]
        if not words:
            return 0.0
        haystack = content.lower()
        matching = sum(1 for word in words if len(word) > 3 and word in haystack)
        return min(1.0, matching / min(5, len(words)))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


__all__ = ["HeuristicScorer", "HeuristicWeights", "NullScorer"]
