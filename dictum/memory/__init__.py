from dictum.memory.engine import MemoryEngine
from dictum.memory.errors import (
    AccessError,
    InvalidArgumentError,
    InvalidItemError,
    InvalidTierError,
    MemoryEngineError,
    NotInitializedError,
    PersistenceError,
    ScoringUnavailableError,
)
from dictum.memory.persistence import JsonFilePersistence, NullPersistence
from dictum.memory.scorer import HeuristicScorer, NullScorer

__all__ = [
    "AccessError",
    "HeuristicScorer",
    "InvalidArgumentError",
    "InvalidItemError",
    "InvalidTierError",
    "JsonFilePersistence",
    "MemoryEngine",
    "MemoryEngineError",
    "NotInitializedError",
    "NullPersistence",
    "NullScorer",
    "PersistenceError",
    "ScoringUnavailableError",
]
