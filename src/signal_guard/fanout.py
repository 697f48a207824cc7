"""Deadline-bounded parallel calls.

Each call runs on its own worker. After the deadline the pool is shut down
without waiting, so a hung provider can never hold the caller back.
Results come back in input order whatever order the calls finished in.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .models import ErrorCategory
from .sources import SourceError


@dataclass(frozen=True)
class Settled:
    key: str
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def settle_all(
    calls: Mapping[str, Callable[[], Any]],
    deadline: float,
    max_workers: int | None = None,
) -> list[Settled]:
    if not calls:
        return []

    executor = ThreadPoolExecutor(
        max_workers=max_workers or len(calls),
        thread_name_prefix="fanout",
    )
    futures = {key: executor.submit(fn) for key, fn in calls.items()}
    try:
        done, _ = wait(list(futures.values()), timeout=deadline)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    settled: list[Settled] = []
    for key, future in futures.items():
        if future not in done:
            future.cancel()
            settled.append(
                Settled(
                    key=key,
                    error=SourceError(ErrorCategory.TIMEOUT, key, f"no response within {deadline:.1f}s"),
                )
            )
            continue
        exc = future.exception()
        if exc is not None:
            settled.append(Settled(key=key, error=exc))
        else:
            settled.append(Settled(key=key, value=future.result()))
    return settled
