from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

log = logging.getLogger("vaultp2p.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with capped exponential backoff and full jitter."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.5

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        raw = self.base_delay_s * (self.multiplier ** max(0, attempt - 1))
        raw = min(self.max_delay_s, raw)
        if self.jitter <= 0 or raw <= 0:
            return raw
        r = (rng or random).random()
        spread = raw * min(1.0, self.jitter)
        return max(0.0, raw - spread + 2 * spread * r)

    def delays(self) -> Iterator[float]:
        """Yield the waits between attempts (``max_attempts - 1`` values)."""
        for attempt in range(1, max(1, self.max_attempts)):
            yield self.delay_for(attempt)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        what: str = "operation",
    ) -> T:
        """Await ``fn()`` until it succeeds or the attempts are spent.

        The last exception is re-raised once every attempt has failed.
        """
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except retry_on as e:
                if attempt >= attempts:
                    raise
                delay = self.delay_for(attempt)
                log.debug(
                    "Retrying %s attempt=%s/%s delay=%.2fs err=%s",
                    what,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")
