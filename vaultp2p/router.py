from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import (
    B_HELLO_DEVICE,
    B_HELLO_ID,
    B_REJECT_MESSAGE,
    B_REJECT_REASON,
    K_BODY,
    K_SRC,
    K_T,
    T_DATA,
    T_HELLO,
    T_PING,
    T_REJECT,
    T_ROSTER,
)
from .errors import DecryptionError
from .events import PeerRecord
from .frames import decode_frame
from .util import fmt_identity, normalize_device

if TYPE_CHECKING:
    from .connections import PeerConnection
    from .session import VaultSession


class FrameRouter:
    """
    Dispatches inbound frames for one session.

    - PING: counted and dropped; never reaches the cipher
    - HELLO: handshake, roster insert (initiator rebroadcasts)
    - REJECT: the initiator refused us for capacity
    - ROSTER: joiner replaces its view
    - DATA: relayed first (initiator), then decrypted and handed to transfers
    """

    def __init__(self, session: VaultSession) -> None:
        self.session = session
        self.log = logging.getLogger("vaultp2p.router")

    async def route(self, conn: PeerConnection, data: bytes) -> None:
        stats = self.session.stats_manager
        stats.inc("frames_in")
        stats.inc("bytes_in", len(data))

        try:
            frame = decode_frame(data)
        except (TypeError, ValueError) as e:
            stats.inc("frames_bad")
            self.log.debug(
                "Bad frame peer=%s link_id=%s bytes=%s err=%s",
                fmt_identity(conn.peer),
                conn.link.link_id,
                len(data),
                e,
            )
            return

        t = frame.get(K_T)

        if t == T_PING:
            stats.inc("keepalives_in")
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX peer=%s link_id=%s t=%s bytes=%s",
                fmt_identity(conn.peer),
                conn.link.link_id,
                t,
                len(data),
            )

        if t == T_HELLO:
            self._handle_hello(conn, frame.get(K_BODY))
        elif t == T_REJECT:
            self._handle_reject(conn, frame.get(K_BODY))
        elif t == T_ROSTER:
            self._handle_roster(conn, frame.get(K_BODY))
        elif t == T_DATA:
            await self._handle_data(conn, frame, data)
        else:
            self.log.debug("Ignoring unknown frame type t=%s", t)

    def _handle_hello(self, conn: PeerConnection, body: Any) -> None:
        session = self.session
        identity = body.get(B_HELLO_ID)
        device = normalize_device(body.get(B_HELLO_DEVICE))

        if identity == session.identity:
            self.log.warning("Peer claims our own identity link_id=%s", conn.link.link_id)
            conn.link.close()
            return

        if conn.peer is not None and conn.peer != identity:
            self.log.warning(
                "Peer changed identity old=%s new=%s; ignoring",
                fmt_identity(conn.peer),
                fmt_identity(identity),
            )
            return

        conn.peer = identity
        conn.device = device
        self.log.info(
            "Handshake peer=%s device=%s link_id=%s",
            fmt_identity(identity),
            device,
            conn.link.link_id,
        )

        if session.is_initiator:
            stale = [
                c
                for c in session.connections.connections
                if c is not conn and c.peer == identity
            ]
            for c in stale:
                self.log.info(
                    "Replacing stale connection peer=%s link_id=%s",
                    fmt_identity(identity),
                    c.link.link_id,
                )
                session.connections.drop(c)
            session.coordinator.add(PeerRecord(identity=identity, device=device))
            session.coordinator.publish()
        else:
            roster = session.coordinator
            changed = roster.add(PeerRecord(identity=identity, device=device))
            changed = (
                roster.add(PeerRecord(identity=session.identity, device=session.device_class))
                or changed
            )
            if changed:
                roster.notify()

    def _handle_reject(self, conn: PeerConnection, body: Any) -> None:
        if self.session.is_initiator:
            return
        reason = body.get(B_REJECT_REASON) if isinstance(body, dict) else None
        message = body.get(B_REJECT_MESSAGE) if isinstance(body, dict) else None
        self.log.warning(
            "Rejected by initiator reason=%s message=%r", reason, message
        )
        self.session._on_rejected(str(message or reason or "rejected"))

    def _handle_roster(self, conn: PeerConnection, body: Any) -> None:
        session = self.session
        if session.is_initiator:
            self.log.debug("Ignoring roster from joiner link_id=%s", conn.link.link_id)
            return
        before = {p.identity for p in session.coordinator.snapshot()}
        if not session.coordinator.replace(body):
            session.stats_manager.inc("frames_bad")
            return
        after = {p.identity for p in session.coordinator.snapshot()}
        for gone in before - after:
            session.transfer.abort_from(gone, "sender left the room")

    async def _handle_data(self, conn: PeerConnection, frame: dict, raw: bytes) -> None:
        session = self.session
        src = frame[K_SRC]

        if session.is_initiator:
            if conn.peer is None or src != conn.peer:
                session.stats_manager.inc("frames_bad")
                self.log.debug(
                    "Dropping data with unexpected sender src=%s peer=%s",
                    fmt_identity(src),
                    fmt_identity(conn.peer),
                )
                return
            await session.coordinator.relay(conn, raw)

        if src == session.identity:
            return

        try:
            plaintext = session.cipher.decrypt(frame[K_BODY], aad=src.encode("utf-8"))
        except DecryptionError as e:
            session.stats_manager.inc("decrypt_failures")
            self.log.warning(
                "Dropping undecryptable payload src=%s bytes=%s err=%s",
                fmt_identity(src),
                len(frame[K_BODY]),
                e,
            )
            return

        session.transfer.handle_payload(src, plaintext)
