from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import ErrorCategory, SourceOutcome, SourceStatus


class SourceError(RuntimeError):
    """A single provider failed. Recorded and excluded, never fatal on its own."""

    def __init__(self, category: ErrorCategory, source_id: str, message: str = "") -> None:
        super().__init__(f"[{source_id}] {category.value}: {message}" if message else f"[{source_id}] {category.value}")
        self.category = category
        self.source_id = source_id
        self.message = message


class QuorumError(RuntimeError):
    pass


@runtime_checkable
class SourceAdapter(Protocol):
    source_id: str

    def fetch(self, symbol: str, timeout: float) -> Any:
        ...


def categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, SourceError):
        return exc.category
    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def guarded_fetch(adapter: SourceAdapter, symbol: str, timeout: float) -> Any:
    """Call an adapter and make sure anything it raises comes out as a SourceError."""
    try:
        return adapter.fetch(symbol, timeout)
    except SourceError:
        raise
    except ValueError as exc:
        # malformed payloads, non-positive prices
        raise SourceError(ErrorCategory.API_ERROR, adapter.source_id, str(exc)) from exc
    except Exception as exc:
        raise SourceError(categorize(exc), adapter.source_id, str(exc)) from exc


def success(name: str) -> SourceOutcome:
    return SourceOutcome(name=name, status=SourceStatus.SUCCESS)


def failure(name: str, exc: BaseException) -> SourceOutcome:
    message = exc.message if isinstance(exc, SourceError) else str(exc)
    return SourceOutcome(
        name=name,
        status=SourceStatus.FAILURE,
        error_category=categorize(exc),
        message=message,
    )
