"""Direct → watchdog → forced relay → timeout fallback for outbound dials."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .errors import SessionClosedError, TransportTimeoutError
from .transport import Link, Transport
from .util import fmt_identity

SWITCHING_LABEL = "switching"


class DialState(str, Enum):
    IDLE = "idle"
    DIALING_DIRECT = "dialing-direct"
    DIALING_RELAY_FORCED = "dialing-relay-forced"
    OPEN = "open"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class DialOutcome:
    link: Link
    state: DialState
    attempts: int
    relayed: bool


class TransportNegotiator:
    """
    Runs one outbound dial at a time.

    The direct attempt gets ``direct_timeout_s``. If it has not opened by
    then (or fails earlier) its handlers are detached, it is closed, the
    ``on_switching`` hook fires, and one relay-only attempt runs until
    ``total_timeout_s`` after the dial started. Missing that deadline raises a
    single ``TransportTimeoutError``; nothing is retried automatically.

    ``on_open`` runs synchronously inside the link's open callback so that the
    caller can attach its own handlers before any data is delivered.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        direct_timeout_s: float,
        total_timeout_s: float,
        on_switching: Callable[[str], None] | None = None,
    ) -> None:
        self.transport = transport
        self.direct_timeout_s = float(direct_timeout_s)
        self.total_timeout_s = max(float(total_timeout_s), float(direct_timeout_s))
        self.on_switching = on_switching
        self.state = DialState.IDLE
        self.log = logging.getLogger("vaultp2p.negotiator")
        self._pending: Link | None = None
        self._waiter: asyncio.Future[bool] | None = None
        self._cancelled = False

    async def dial(
        self, identity: str, *, on_open: Callable[[Link], None] | None = None
    ) -> DialOutcome:
        self._check_cancelled(identity)
        loop = asyncio.get_running_loop()
        started = loop.time()

        self.state = DialState.DIALING_DIRECT
        self.log.info("Dialing identity=%s mode=direct", fmt_identity(identity))
        link = self.transport.dial(identity, force_relay=False)
        if await self._await_open(link, self.direct_timeout_s, on_open):
            self.state = DialState.OPEN
            self.log.info("Link open identity=%s mode=direct", fmt_identity(identity))
            return DialOutcome(link=link, state=self.state, attempts=1, relayed=False)
        self._check_cancelled(identity)

        # Watchdog fired (or the attempt failed early): silence and drop it.
        self._abandon(link)
        self.state = DialState.DIALING_RELAY_FORCED
        self.log.warning(
            "Direct attempt stalled identity=%s after=%.1fs; forcing relay",
            fmt_identity(identity),
            loop.time() - started,
        )
        if self.on_switching is not None:
            self.on_switching(SWITCHING_LABEL)

        remaining = self.total_timeout_s - (loop.time() - started)
        link = self.transport.dial(identity, force_relay=True)
        if remaining > 0 and await self._await_open(link, remaining, on_open):
            self.state = DialState.OPEN
            self.log.info("Link open identity=%s mode=relay", fmt_identity(identity))
            return DialOutcome(link=link, state=self.state, attempts=2, relayed=True)
        self._check_cancelled(identity)

        self._abandon(link)
        self.state = DialState.TIMEOUT
        self.log.error(
            "Dial timed out identity=%s after=%.1fs",
            fmt_identity(identity),
            loop.time() - started,
        )
        raise TransportTimeoutError(
            f"no transport to {identity} within {self.total_timeout_s:.0f}s"
        )

    async def _await_open(
        self,
        link: Link,
        timeout: float,
        on_open: Callable[[Link], None] | None,
    ) -> bool:
        self._pending = link
        fut: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiter = fut

        def _opened(opened_link: Link) -> None:
            if on_open is not None:
                on_open(opened_link)
            if not fut.done():
                fut.set_result(True)

        def _finished(_link: Link) -> None:
            if not fut.done():
                fut.set_result(False)

        link.set_open_callback(_opened)
        link.set_closed_callback(_finished)

        if link.is_open:
            _opened(link)
        elif link.is_finished:
            _finished(link)

        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            return False
        except asyncio.CancelledError:
            self._abandon(link)
            raise
        finally:
            self._pending = None
            self._waiter = None

    def _abandon(self, link: Link) -> None:
        link.detach()
        link.close()

    def _check_cancelled(self, identity: str) -> None:
        if self._cancelled:
            self.state = DialState.IDLE
            self.log.info("Dial abandoned identity=%s", fmt_identity(identity))
            raise SessionClosedError("dial cancelled")

    def cancel(self) -> None:
        """Drop whatever attempt is in flight and refuse further dials.

        A ``dial()`` waiting on the dropped attempt wakes up immediately and
        raises ``SessionClosedError`` instead of redialing.
        """
        self._cancelled = True
        link = self._pending
        self._pending = None
        if link is not None:
            self._abandon(link)
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(False)
