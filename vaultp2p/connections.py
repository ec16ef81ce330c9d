from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .constants import REJECT_ROOM_FULL
from .frames import hello_frame, ping_frame, reject_frame
from .transport import Link, LinkState
from .util import fmt_identity

if TYPE_CHECKING:
    from .session import VaultSession


@dataclass(eq=False)
class PeerConnection:
    """One link plus the state the engine keeps about it."""

    link: Link
    inbound: bool
    peer: str | None = None
    device: str | None = None
    opened_at: float | None = None
    last_rx: float = 0.0
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    reader: asyncio.Task | None = field(default=None, repr=False)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def state(self) -> LinkState:
        return self.link.state

    @property
    def is_open(self) -> bool:
        return self.link.is_open

    async def send(self, data: bytes) -> bool:
        """Send one frame; sends on the same link never interleave."""
        async with self.send_lock:
            if not self.link.is_open:
                return False
            try:
                await self.link.send(data)
            except (ConnectionError, OSError) as e:
                logging.getLogger("vaultp2p.connections").warning(
                    "Send failed link_id=%s bytes=%s err=%s",
                    self.link.link_id,
                    len(data),
                    e,
                )
                return False
            return True


class ConnectionManager:
    """
    Owns every peer connection of a session.

    Responsible for:
    - Accepting inbound links (initiator) and enforcing the capacity limit
    - Adopting the outbound link once the negotiator has opened it (joiner)
    - The HELLO handshake on open
    - Feeding inbound frames to the router strictly in arrival order
    - Periodic keep-alive and optional silence timeout
    - Teardown
    """

    def __init__(self, session: VaultSession) -> None:
        self.session = session
        self.log = logging.getLogger("vaultp2p.connections")
        self.connections: list[PeerConnection] = []
        self._rejecting: set[Link] = set()
        self._keepalive_task: asyncio.Task | None = None

    def open_connections(self) -> list[PeerConnection]:
        return [c for c in self.connections if c.link.is_open]

    def accept(self, link: Link) -> None:
        """Incoming link callback of the transport primitive."""
        session = self.session
        if session.destroyed or not session.is_initiator:
            self.log.debug("Refusing inbound link link_id=%s", link.link_id)
            link.detach()
            link.close()
            return

        capacity = session.capacity
        if capacity is not None and len(self.connections) >= capacity:
            self.log.warning(
                "Room full capacity=%s; rejecting remote=%s link_id=%s",
                capacity,
                fmt_identity(link.remote),
                link.link_id,
            )
            self._rejecting.add(link)
            link.set_open_callback(lambda opened: session._spawn(self._reject(opened)))
            link.set_closed_callback(lambda closed: self._rejecting.discard(closed))
            if link.is_open:
                session._spawn(self._reject(link))
            return

        conn = PeerConnection(link=link, inbound=True)
        self.connections.append(conn)
        self._attach(conn)
        self.log.info(
            "Inbound link remote=%s link_id=%s", fmt_identity(link.remote), link.link_id
        )
        if link.is_open:
            self._on_open(conn)

    def adopt(self, link: Link) -> None:
        """Register the outbound link the negotiator just opened."""
        if self.session.destroyed:
            link.detach()
            link.close()
            return
        conn = PeerConnection(link=link, inbound=False)
        self.connections.append(conn)
        self._attach(conn)
        self._on_open(conn)

    async def _reject(self, link: Link) -> None:
        frame = reject_frame(REJECT_ROOM_FULL, "Room is full.")
        try:
            await link.send(frame)
            self.session.stats_manager.inc("rejects_sent")
            self.session.stats_manager.inc("bytes_out", len(frame))
        except (ConnectionError, OSError) as e:
            self.log.debug("Reject send failed link_id=%s err=%s", link.link_id, e)
        grace = float(self.session.config.reject_grace_s)
        if grace > 0:
            await asyncio.sleep(grace)
        self._rejecting.discard(link)
        link.detach()
        link.close()

    def _attach(self, conn: PeerConnection) -> None:
        link = conn.link
        link.set_open_callback(lambda _link: self._on_open(conn))
        link.set_data_callback(lambda _link, data: self._on_data(conn, data))
        link.set_closed_callback(lambda _link: self._on_closed(conn))
        link.set_error_callback(
            lambda _link, err: self.log.warning(
                "Link error peer=%s link_id=%s err=%s",
                fmt_identity(conn.peer or link.remote),
                link.link_id,
                err,
            )
        )

    def _on_open(self, conn: PeerConnection) -> None:
        session = self.session
        if session.destroyed:
            conn.link.detach()
            conn.link.close()
            return
        if conn.opened_at is not None:
            return

        now = asyncio.get_running_loop().time()
        conn.opened_at = now
        conn.last_rx = now
        conn.reader = session._spawn(self._read_loop(conn))

        # The HELLO task is created first, so it takes the send lock first.
        session._spawn(
            self._send_counted(conn, hello_frame(session.identity, session.device_class))
        )

        self.log.info(
            "Connection open remote=%s link_id=%s inbound=%s open=%s",
            fmt_identity(conn.link.remote),
            conn.link.link_id,
            conn.inbound,
            len(self.open_connections()),
        )
        session._on_connection_open(conn)

    def _on_data(self, conn: PeerConnection, data: bytes) -> None:
        conn.last_rx = asyncio.get_running_loop().time()
        conn.inbox.put_nowait(bytes(data))

    async def _read_loop(self, conn: PeerConnection) -> None:
        while True:
            data = await conn.inbox.get()
            if data is None:
                return
            if self.session.destroyed:
                return
            try:
                await self.session.router.route(conn, data)
            except Exception:
                self.log.exception(
                    "Frame handling failed peer=%s link_id=%s",
                    fmt_identity(conn.peer),
                    conn.link.link_id,
                )

    def _on_closed(self, conn: PeerConnection) -> None:
        if conn not in self.connections:
            return
        self.connections.remove(conn)
        conn.inbox.put_nowait(None)
        was_open = conn.opened_at is not None

        self.log.info(
            "Connection closed peer=%s link_id=%s state=%s remaining=%s",
            fmt_identity(conn.peer),
            conn.link.link_id,
            conn.link.state.value,
            len(self.connections),
        )
        self.session._on_connection_closed(conn, was_open=was_open)

    def drop(self, conn: PeerConnection) -> None:
        """Close a connection without the usual close bookkeeping."""
        if conn in self.connections:
            self.connections.remove(conn)
        conn.inbox.put_nowait(None)
        conn.link.detach()
        conn.link.close()

    async def _send_counted(self, conn: PeerConnection, frame: bytes) -> bool:
        ok = await conn.send(frame)
        if ok:
            self.session.stats_manager.inc("frames_out")
            self.session.stats_manager.inc("bytes_out", len(frame))
        return ok

    def send_soon(self, conn: PeerConnection, frame: bytes) -> None:
        self.session._spawn(self._send_counted(conn, frame))

    def start_keepalive(self) -> None:
        if self._keepalive_task is not None:
            return
        if float(self.session.config.keepalive_interval_s) <= 0:
            return
        self._keepalive_task = self.session._spawn(self._keepalive_loop())

    async def _keepalive_loop(self) -> None:
        interval = float(self.session.config.keepalive_interval_s)
        timeout = float(self.session.config.keepalive_timeout_s)
        frame = ping_frame()
        loop = asyncio.get_running_loop()

        while not self.session.destroyed:
            await asyncio.sleep(interval)
            now = loop.time()

            for conn in list(self.connections):
                if not conn.link.is_open:
                    continue
                if timeout > 0 and (now - conn.last_rx) > timeout:
                    self.log.warning(
                        "Peer silent for %.1fs peer=%s link_id=%s; closing",
                        now - conn.last_rx,
                        fmt_identity(conn.peer),
                        conn.link.link_id,
                    )
                    conn.link.close()
                    continue
                if await conn.send(frame):
                    self.session.stats_manager.inc("keepalives_out")

    def close_all(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

        for link in list(self._rejecting):
            link.detach()
            link.close()
        self._rejecting.clear()

        conns = list(self.connections)
        self.connections.clear()
        for conn in conns:
            conn.inbox.put_nowait(None)
            if conn.reader is not None:
                conn.reader.cancel()
            conn.link.detach()
            conn.link.close()
