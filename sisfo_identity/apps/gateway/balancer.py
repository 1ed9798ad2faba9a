"""Round-robin upstream selection with a per-upstream circuit breaker.

The breaker has two states only. It opens once ``failure_threshold``
failures accumulate and closes again after ``open_seconds`` have
elapsed; there is no half-open trial. Breaker fields are mutated without a
lock; a stale read only lets one extra request through to a failing upstream.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    open_seconds: float = 30.0


class UpstreamBreaker:
    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self.config = config or BreakerConfig()
        self._time = time_source or time.monotonic
        self.failures = 0
        self.opened_until = 0.0

    def allow(self) -> bool:
        return self._time() >= self.opened_until

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.config.failure_threshold:
            self.opened_until = self._time() + self.config.open_seconds
            self.failures = 0
            logger.warning(
                "circuit_breaker_opened upstream=%s open_seconds=%s",
                self.name,
                self.config.open_seconds,
            )


class UpstreamGroup:
    def __init__(
        self,
        name: str,
        urls: list[str],
        config: BreakerConfig | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        if not urls:
            raise ValueError(f"upstream group {name} has no urls")
        self.name = name
        self.urls = list(urls)
        self.breakers = [UpstreamBreaker(url, config, time_source=time_source) for url in self.urls]
        # itertools.count.__next__ is atomic under the GIL.
        self._counter = itertools.count()

    def pick(self) -> int:
        """Return the index of the upstream to use for the next request."""
        size = len(self.urls)
        start = next(self._counter) % size
        for offset in range(size):
            index = (start + offset) % size
            if self.breakers[index].allow():
                return index
        # Every breaker is open; fall back to the plain round-robin choice.
        return start

    def record_result(self, index: int, *, status_code: int | None) -> None:
        # Transport errors arrive as None.
        if status_code is None or status_code >= 500:
            self.breakers[index].record_failure()


def build_groups(
    upstreams: dict[str, list[str]],
    config: BreakerConfig | None = None,
    *,
    time_source: Callable[[], float] | None = None,
) -> dict[str, UpstreamGroup]:
    return {
        name: UpstreamGroup(name, urls, config, time_source=time_source)
        for name, urls in upstreams.items()
        if urls
    }
