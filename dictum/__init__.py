"""dictum: tiered context memory for a desktop dictation assistant."""

__version__ = "0.1.0"
