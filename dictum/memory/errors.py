"""Error types raised by the memory engine.

Validation errors surface to callers. Scoring and persistence errors are
logged and degrade behaviour instead; they exist so the failure carries a
name and context in the logs.
"""

from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class; ``context`` holds structured detail for logs and export."""

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, object] = dict(context)

    def to_dict(self) -> dict[str, object]:
        cause = self.__cause__
        payload: dict[str, object] = {
            "name": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }
        if cause is not None:
            if isinstance(cause, MemoryEngineError):
                payload["cause"] = cause.to_dict()
            else:
                payload["cause"] = repr(cause)
        return payload


class NotInitializedError(MemoryEngineError):
    pass


class InvalidItemError(MemoryEngineError):
    pass


class InvalidArgumentError(MemoryEngineError):
    pass


class InvalidTierError(MemoryEngineError):
    pass


class AccessError(MemoryEngineError):
    pass


class ScoringUnavailableError(MemoryEngineError):
    pass


class PersistenceError(MemoryEngineError):
    pass


__all__ = [
    "AccessError",
    "InvalidArgumentError",
    "InvalidItemError",
    "InvalidTierError",
    "MemoryEngineError",
    "NotInitializedError",
    "PersistenceError",
    "ScoringUnavailableError",
]
