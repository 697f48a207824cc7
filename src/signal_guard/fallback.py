"""Priority-ordered provider fallback.

Providers are tried strictly in list order.  Each failure is retried with
exponential backoff before moving on; unsupported-symbol failures are not
retried since a second call cannot succeed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from loguru import logger

from .models import ErrorCategory
from .settings import settings
from .sources import QuorumError, SourceAdapter, SourceError, guarded_fetch


NO_RETRY = {ErrorCategory.UNSUPPORTED_SYMBOL}


class AllSourcesExhausted(QuorumError):
    def __init__(
        self,
        symbol: str,
        attempts: tuple[str, ...],
        last_error: BaseException | None,
        errors: dict[str, BaseException] | None = None,
    ) -> None:
        super().__init__(f"{symbol}: all providers failed ({', '.join(attempts) or 'none configured'}): {last_error}")
        self.symbol = symbol
        self.attempts = attempts
        self.last_error = last_error
        self.errors = errors or {}


@dataclass(frozen=True)
class FallbackResult:
    data: Any
    source_used: str
    fallback_used: bool
    attempts: tuple[str, ...]      # providers tried, in order
    calls: int = 1                 # total calls including retries


def backoff_delay(retry: int, base: float, cap: float) -> float:
    """Delay before retry number ``retry`` (1-based)."""
    return min(cap, base * (2 ** (retry - 1)))


class FallbackFetcher:
    def __init__(
        self,
        providers: Sequence[SourceAdapter],
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.providers = list(providers)
        self.timeout = timeout if timeout is not None else settings.source_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.fallback_max_retries
        self.backoff_base = backoff_base if backoff_base is not None else settings.fallback_backoff_base_seconds
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.fallback_backoff_cap_seconds
        self._sleep = sleep

    def fetch(self, symbol: str) -> FallbackResult:
        attempts: list[str] = []
        last_error: BaseException | None = None
        errors: dict[str, BaseException] = {}
        calls = 0
        primary = self.providers[0].source_id if self.providers else None

        for provider in self.providers:
            attempts.append(provider.source_id)
            for attempt in range(self.max_retries + 1):
                if attempt:
                    delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                    if delay > 0:
                        self._sleep(delay)
                calls += 1
                try:
                    data = guarded_fetch(provider, symbol, self.timeout)
                except SourceError as exc:
                    last_error = exc
                    errors[provider.source_id] = exc
                    logger.warning(
                        "Provider {} failed [{}] attempt {}/{}: {}",
                        provider.source_id,
                        exc.category.value,
                        attempt + 1,
                        self.max_retries + 1,
                        exc.message,
                    )
                    if exc.category in NO_RETRY:
                        break
                    continue

                fallback_used = provider.source_id != primary
                if fallback_used:
                    logger.info("Fell back to {} for {} after {}", provider.source_id, symbol, attempts[:-1])
                return FallbackResult(
                    data=data,
                    source_used=provider.source_id,
                    fallback_used=fallback_used,
                    attempts=tuple(attempts),
                    calls=calls,
                )

        logger.error("All {} providers exhausted for {}", len(self.providers), symbol)
        raise AllSourcesExhausted(symbol, tuple(attempts), last_error, errors)
