from dictum.core.logging import correlation_scope, get_correlation_context, setup_logging

__all__ = [
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
]
