from __future__ import annotations

import asyncio
from collections.abc import Callable

from vaultp2p.config import VaultConfig
from vaultp2p.events import EventKind
from vaultp2p.loopback import LoopbackNetwork
from vaultp2p.session import VaultSession


def fast_config(**overrides) -> VaultConfig:
    values = dict(
        keepalive_interval_s=0.0,
        reject_grace_s=0.0,
        reconnect_delay_s=0.01,
        reconnect_max_delay_s=0.05,
        reconnect_attempts=3,
        direct_timeout_s=0.2,
        total_timeout_s=0.6,
        lookup_attempts=2,
        lookup_backoff_s=0.01,
        register_attempts=3,
        reregister_backoff_s=0.01,
    )
    values.update(overrides)
    return VaultConfig(**values)


async def wait_until(pred: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class Recorder:
    def __init__(self, session: VaultSession) -> None:
        self.events: list = []
        session.subscribe_all(self.events.append)

    def of(self, kind: EventKind) -> list:
        return [e for e in self.events if e.kind == kind]


class Harness:
    """Builds loopback sessions and destroys them on exit, inside the loop."""

    def __init__(self, network: LoopbackNetwork | None = None) -> None:
        self.network = network or LoopbackNetwork()
        self.sessions: list[VaultSession] = []

    def make(self, **overrides) -> VaultSession:
        ep = self.network.endpoint()
        session = VaultSession(fast_config(**overrides), signaling=ep, transport=ep)
        self.sessions.append(session)
        return session

    async def host(self, capacity: int | None = None, **overrides) -> VaultSession:
        session = self.make(**overrides)
        await session.start_as_initiator(capacity)
        return session

    async def joiner(self, host: VaultSession, **overrides) -> VaultSession:
        session = self.make(**overrides)
        await session.join_room(host.identity, host.cipher.key_material)
        return session

    async def __aenter__(self) -> Harness:
        return self

    async def __aexit__(self, *exc) -> None:
        for session in self.sessions:
            session.destroy()
        await asyncio.sleep(0)
