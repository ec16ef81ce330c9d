"""In-process signaling and transport.

A ``LoopbackNetwork`` connects any number of ``LoopbackEndpoint`` objects that
live on the same event loop. Switches on the network reproduce the failure
modes the engine has to survive: direct paths that never open, relay paths
that never open, identities that cannot be resolved, and signaling loss.
"""

from __future__ import annotations

import asyncio
import logging

from .errors import IdentityTakenError
from .transport import Link, Signaling, Transport, TransportClass
from .util import random_identity


class LoopbackLink(Link):
    def __init__(self, network: LoopbackNetwork, remote: str | None) -> None:
        super().__init__(remote)
        self.network = network
        self.peer: LoopbackLink | None = None
        self.sent: list[bytes] = []

    async def send(self, data: bytes) -> None:
        if not self.is_open or self.peer is None:
            raise ConnectionError(f"link {self.link_id} is not open")
        payload = bytes(data)
        self.sent.append(payload)
        self.network.frames_sent += 1
        asyncio.get_running_loop().call_soon(self.peer._deliver, payload)
        await asyncio.sleep(0)

    def close(self) -> None:
        if self.is_finished:
            return
        peer = self.peer
        self._mark_closed()
        if peer is not None and not peer.is_finished:
            try:
                asyncio.get_running_loop().call_soon(peer._mark_closed)
            except RuntimeError:
                peer._mark_closed()

    def fail(self, err: str = "transport failure") -> None:
        """Simulate an abrupt transport error on both ends."""
        peer = self.peer
        self._mark_error(err)
        if peer is not None:
            peer._mark_error(err)

    async def get_stats(self) -> TransportClass:
        if self.force_relay:
            return TransportClass.RELAYED
        return self.network.direct_class


class LoopbackEndpoint(Signaling, Transport):
    def __init__(self, network: LoopbackNetwork) -> None:
        Signaling.__init__(self)
        Transport.__init__(self)
        self.network = network
        self.links: list[LoopbackLink] = []
        self.closed = False

    async def register(self, preferred: str | None = None) -> str:
        await asyncio.sleep(0)
        identity = preferred or random_identity()
        self.network._register(self, identity)
        self.identity = identity
        return identity

    async def lookup(self, identity: str) -> bool:
        await asyncio.sleep(0)
        self.network.lookups.append(identity)
        if identity in self.network.unreachable:
            return False
        ep = self.network.endpoints.get(identity)
        return ep is not None and not ep.closed

    def dial(self, identity: str, *, force_relay: bool = False) -> LoopbackLink:
        link = LoopbackLink(self.network, remote=identity)
        link.force_relay = force_relay
        self.links.append(link)
        self.network.dials.append((self.identity, identity, force_relay))
        loop = asyncio.get_running_loop()
        if self.network.latency_s > 0:
            loop.call_later(self.network.latency_s, self._connect, link, identity)
        else:
            loop.call_soon(self._connect, link, identity)
        return link

    def _connect(self, link: LoopbackLink, identity: str) -> None:
        if link.is_finished or self.closed:
            return
        target = self.network.endpoints.get(identity)
        if target is None or target.closed:
            link._mark_error("peer-unavailable")
            return
        blocked = self.network.block_relay if link.force_relay else self.network.block_direct
        if blocked:
            # Candidate gathering never converges; the link stays DIALING.
            return

        remote = LoopbackLink(self.network, remote=self.identity)
        remote.force_relay = link.force_relay
        link.peer = remote
        remote.peer = link
        target.links.append(remote)
        if target._incoming_cb is not None:
            target._incoming_cb(remote)
        remote._mark_open()
        link._mark_open()

    def drop_signaling(self) -> None:
        """Simulate losing the rendezvous registration."""
        self.network._unregister(self)
        if self._disconnected_cb is not None:
            self._disconnected_cb()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for link in list(self.links):
            link.close()
        self.network._unregister(self)


class LoopbackNetwork:
    def __init__(self, *, latency_s: float = 0.0) -> None:
        self.log = logging.getLogger("vaultp2p.loopback")
        self.latency_s = latency_s
        self.endpoints: dict[str, LoopbackEndpoint] = {}
        self.block_direct = False
        self.block_relay = False
        self.unreachable: set[str] = set()
        self.direct_class = TransportClass.DIRECT_LOCAL
        self.dials: list[tuple[str | None, str, bool]] = []
        self.lookups: list[str] = []
        self.frames_sent = 0

    def endpoint(self) -> LoopbackEndpoint:
        return LoopbackEndpoint(self)

    def _register(self, ep: LoopbackEndpoint, identity: str) -> None:
        current = self.endpoints.get(identity)
        if current is not None and current is not ep:
            raise IdentityTakenError(f"identity {identity} is taken")
        self.endpoints[identity] = ep
        self.log.debug("Registered identity=%s", identity)

    def _unregister(self, ep: LoopbackEndpoint) -> None:
        for identity, current in list(self.endpoints.items()):
            if current is ep:
                self.endpoints.pop(identity, None)
