"""Room roster and star-topology relay.

The initiator owns the canonical roster and pushes the full list to every
joiner after each change. Joiners only ever replace their local view with
what the initiator sent. The initiator also relays every DATA frame it gets
from one joiner to all the others, untouched, so joiners that have no link to
each other still receive each other's ciphertext.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import B_PEER_DEVICE, B_PEER_ID
from .events import PeerRecord, RosterChanged
from .frames import roster_frame
from .util import fmt_identity, normalize_device

if TYPE_CHECKING:
    from .connections import PeerConnection
    from .session import VaultSession


class RosterCoordinator:
    def __init__(self, session: VaultSession) -> None:
        self.session = session
        self.log = logging.getLogger("vaultp2p.roster")
        self._peers: dict[str, PeerRecord] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, identity: object) -> bool:
        return identity in self._peers

    def snapshot(self) -> tuple[PeerRecord, ...]:
        return tuple(self._peers.values())

    def clear(self) -> None:
        self._peers.clear()

    def reset(self, own: PeerRecord) -> None:
        self._peers = {own.identity: own}

    def add(self, record: PeerRecord) -> bool:
        """Insert or update a record. Returns True when the roster changed."""
        current = self._peers.get(record.identity)
        if current == record:
            return False
        self._peers[record.identity] = record
        return True

    def remove(self, identity: str) -> bool:
        if identity == self.session.identity and self.session.is_initiator:
            # The initiator's own record is always present.
            return False
        return self._peers.pop(identity, None) is not None

    def replace(self, body: Any) -> bool:
        """Joiner side: adopt the initiator's roster. Returns False on junk."""
        if not isinstance(body, list):
            return False

        peers: dict[str, PeerRecord] = {}
        for entry in body:
            if not isinstance(entry, dict):
                continue
            ident = entry.get(B_PEER_ID)
            if not isinstance(ident, str) or not ident:
                continue
            peers[ident] = PeerRecord(
                identity=ident, device=normalize_device(entry.get(B_PEER_DEVICE))
            )

        self._peers = peers
        self.log.debug("Roster replaced peers=%s", len(peers))
        self.notify()
        return True

    def notify(self) -> None:
        self.session.bus.emit(RosterChanged(roster=self.snapshot()))

    def publish(self) -> None:
        """Initiator side: push the current roster to everyone, then notify.

        Callers mutate first and publish afterwards, so no stale list is sent.
        """
        entries = [(p.identity, p.device) for p in self._peers.values()]
        frame = roster_frame(entries)
        targets = self.session.connections.open_connections()
        for conn in targets:
            self.session.connections.send_soon(conn, frame)
        self.log.info(
            "Roster broadcast peers=%s targets=%s", len(entries), len(targets)
        )
        self.notify()

    async def relay(self, source: PeerConnection, data: bytes) -> int:
        """Forward ``data`` byte-for-byte to every open connection but ``source``."""
        forwarded = 0
        for conn in self.session.connections.open_connections():
            if conn is source:
                continue
            if await conn.send(data):
                forwarded += 1
                self.session.stats_manager.inc("frames_relayed")
                self.session.stats_manager.inc("bytes_out", len(data))
        if forwarded and self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Relayed frame from=%s bytes=%s targets=%s",
                fmt_identity(source.peer),
                len(data),
                forwarded,
            )
        return forwarded
