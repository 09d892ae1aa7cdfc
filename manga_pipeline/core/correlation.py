"""
Correlation id context for one logical request.

Uses contextvars so every coroutine (and every thread started through
asyncio.to_thread) spawned while handling a request sees the same id.
Log records and metric dimensions read it from here.

Usage:
    with CorrelationScope(request_id) as correlation_id:
        ...  # all logs and metrics carry correlation_id
"""

import uuid
from contextvars import ContextVar, Token
from types import TracebackType
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def resolve_correlation_id(*candidates: Optional[str]) -> str:
    """Return the first non-empty candidate, or a fresh id."""
    for candidate in candidates:
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return new_correlation_id()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context. Generates one if not given."""
    value = correlation_id or new_correlation_id()
    _correlation_id.set(value)
    return value


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationScope:
    """Context manager that sets a correlation id and restores the previous one on exit."""

    def __init__(self, correlation_id: Optional[str] = None) -> None:
        self.correlation_id = correlation_id or new_correlation_id()
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> bool:
        if self._token is not None:
            _correlation_id.reset(self._token)
            self._token = None
        return False
