"""Reticulum-backed signaling and transport.

Identities are RNS destination hashes (hex). Registering means creating an IN
destination for a locally stored ``RNS.Identity`` and announcing it; looking
up means waiting for a path; dialing means opening an ``RNS.Link``. Frames
that fit the link MDU go out as single packets, larger ones as
``RNS.Resource`` transfers.

Every RNS callback runs on a Reticulum thread and is handed to the event loop
with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any

import RNS

from .config import VaultConfig
from .logging_config import parse_level
from .paths import default_rns_identity_dir, ensure_private_dir
from .transport import Link, LinkState, Signaling, Transport, TransportClass
from .util import expand_path

_reticulum_lock = threading.Lock()
_reticulum: Any = None


def rns_loglevel(level: int) -> int:
    """Map a Python logging level onto Reticulum's own scale."""
    if level >= logging.CRITICAL:
        return RNS.LOG_CRITICAL
    if level >= logging.ERROR:
        return RNS.LOG_ERROR
    if level >= logging.WARNING:
        return RNS.LOG_WARNING
    if level >= logging.INFO:
        return RNS.LOG_INFO
    return RNS.LOG_DEBUG


def ensure_reticulum(configdir: str | None, loglevel: int | None = None) -> Any:
    """Start Reticulum once per process."""
    global _reticulum
    with _reticulum_lock:
        if _reticulum is None:
            logging.getLogger("vaultp2p.rns").info(
                "Starting Reticulum configdir=%s", configdir or "-"
            )
            _reticulum = RNS.Reticulum(
                configdir=expand_path(configdir) if configdir else None,
                loglevel=loglevel,
                require_shared_instance=False,
            )
        return _reticulum


def _split_dest_name(dest_name: str) -> tuple[str, list[str]]:
    parts = [p for p in str(dest_name).split(".") if p]
    if not parts:
        raise ValueError("rns_dest_name must not be empty")
    return parts[0], parts[1:]


def _parse_hash(identity: str) -> bytes:
    s = str(identity).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    try:
        h = bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"not a destination hash: {identity!r}") from e
    if len(h) != RNS.Reticulum.TRUNCATED_HASHLENGTH // 8:
        raise ValueError(f"destination hash has the wrong length: {identity!r}")
    return h


class RnsLink(Link):
    def __init__(
        self,
        endpoint: RnsEndpoint,
        remote: str | None,
        rns_link: RNS.Link | None = None,
    ) -> None:
        super().__init__(remote)
        self.endpoint = endpoint
        self.rns_link = rns_link
        self.last_hops: int | None = None
        if rns_link is not None:
            self._bind(rns_link)

    def _bind(self, rns_link: RNS.Link) -> None:
        self.rns_link = rns_link
        lid = getattr(rns_link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            self.link_id = bytes(lid).hex()

        rns_link.set_packet_callback(self._rns_packet)
        rns_link.set_link_closed_callback(self._rns_closed)
        rns_link.set_resource_strategy(RNS.Link.ACCEPT_ALL)
        rns_link.set_resource_concluded_callback(self._rns_resource_concluded)

    # Reticulum threads

    def _rns_established(self, rns_link: RNS.Link) -> None:
        self.endpoint._threadsafe(self._mark_open)

    def _rns_closed(self, rns_link: RNS.Link) -> None:
        self.endpoint._threadsafe(self._closed_remotely)

    def _rns_packet(self, message: bytes, packet: RNS.Packet) -> None:
        self.last_hops = getattr(packet, "hops", self.last_hops)
        self.endpoint._threadsafe(self._deliver, bytes(message))

    def _rns_resource_concluded(self, resource: RNS.Resource) -> None:
        if resource.status != RNS.Resource.COMPLETE:
            self._log.warning(
                "Inbound resource failed link_id=%s status=%s",
                self.link_id,
                resource.status,
            )
            return
        data = resource.data.read() if hasattr(resource.data, "read") else resource.data
        self.endpoint._threadsafe(self._deliver, bytes(data))

    # Event loop

    def _closed_remotely(self) -> None:
        self.endpoint.links.discard(self)
        if self.state == LinkState.DIALING:
            self._mark_error("link could not be established")
        else:
            self._mark_closed()

    def _fits_packet(self, data: bytes) -> bool:
        mdu = getattr(self.rns_link, "mdu", None) or getattr(self.rns_link, "MDU", None)
        return mdu is not None and len(data) <= int(mdu)

    async def send(self, data: bytes) -> None:
        if not self.is_open or self.rns_link is None:
            raise ConnectionError(f"link {self.link_id} is not open")

        if self._fits_packet(data):
            if RNS.Packet(self.rns_link, data).send() is False:
                raise ConnectionError(f"packet send failed on link {self.link_id}")
            return

        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()

        def _concluded(resource: RNS.Resource) -> None:
            loop.call_soon_threadsafe(_settle, resource.status)

        def _settle(status: Any) -> None:
            if not done.done():
                done.set_result(status)

        RNS.Resource(
            data, self.rns_link, advertise=True, auto_compress=False, callback=_concluded
        )
        status = await done
        if status != RNS.Resource.COMPLETE:
            raise ConnectionError(
                f"resource transfer failed on link {self.link_id} status={status}"
            )

    def close(self) -> None:
        if self.is_finished:
            return
        rns_link = self.rns_link
        self._mark_closed()
        if rns_link is not None:
            try:
                rns_link.teardown()
            except Exception:
                self._log.debug("Teardown failed link_id=%s", self.link_id, exc_info=True)

    async def get_stats(self) -> TransportClass:
        if self.force_relay:
            return TransportClass.RELAYED
        hops = self.last_hops
        if hops is None and self.remote is not None:
            try:
                hops = RNS.Transport.hops_to(_parse_hash(self.remote))
            except ValueError:
                hops = None
        if hops is None or hops >= RNS.Transport.PATHFINDER_M:
            return TransportClass.UNKNOWN
        if hops <= 1:
            return TransportClass.DIRECT_LOCAL
        return TransportClass.RELAYED


class RnsEndpoint(Signaling, Transport):
    """One Reticulum destination acting as both primitives for a session.

    RNS identities are derived from keys, so a ``preferred`` identity can only
    be honoured when its key is stored in ``rns_identity_dir``; otherwise a new
    identity is created. Hash collisions do not happen, so ``register`` never
    raises ``IdentityTakenError``.
    """

    def __init__(self, config: VaultConfig, *, persist_identity: bool = True) -> None:
        Signaling.__init__(self)
        Transport.__init__(self)
        self.config = config
        self.persist_identity = persist_identity
        self.log = logging.getLogger("vaultp2p.rns")
        self.rns_identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self.links: set[RnsLink] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._announce_task: asyncio.Task | None = None
        self._closed = False

    def _threadsafe(self, fn: Any, *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(fn, *args)

    def _identity_dir(self) -> str:
        if self.config.rns_identity_dir:
            return expand_path(self.config.rns_identity_dir)
        return str(default_rns_identity_dir())

    def _identity_path(self, identity: str) -> str:
        return os.path.join(self._identity_dir(), identity)

    def _load_or_create(self, preferred: str | None) -> RNS.Identity:
        if preferred:
            path = self._identity_path(preferred)
            if os.path.exists(path):
                ident = RNS.Identity.from_file(path)
                if ident is None:
                    raise RuntimeError(f"Failed to load identity from {path}")
                return ident
            self.log.warning(
                "No stored key for identity=%s; creating a new identity", preferred
            )
        return RNS.Identity()

    async def register(self, preferred: str | None = None) -> str:
        self._loop = asyncio.get_running_loop()
        ensure_reticulum(
            self.config.rns_configdir,
            rns_loglevel(parse_level(self.config.log_rns_level, logging.WARNING)),
        )

        ident = self._load_or_create(preferred)
        app_name, aspects = _split_dest_name(self.config.rns_dest_name)

        if self.destination is not None:
            self.destination.set_link_established_callback(None)

        destination = RNS.Destination(
            ident, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )
        destination.set_link_established_callback(self._rns_inbound)
        identity = destination.hash.hex()

        if self.persist_identity:
            ensure_private_dir(Path(self._identity_dir()))
            path = self._identity_path(identity)
            if not os.path.exists(path):
                ident.to_file(path)

        self.rns_identity = ident
        self.destination = destination
        self.identity = identity
        self._announce_once()

        period = float(self.config.rns_announce_period_s)
        if period > 0 and self._announce_task is None:
            self._announce_task = self._loop.create_task(self._announce_loop(period))

        self.log.info("Destination registered dest_hash=%s", identity)
        return identity

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce()
        except Exception:
            self.log.exception("Announce failed")

    async def _announce_loop(self, period: float) -> None:
        while not self._closed:
            await asyncio.sleep(period)
            self._announce_once()

    async def lookup(self, identity: str) -> bool:
        try:
            dest_hash = _parse_hash(identity)
        except ValueError as e:
            self.log.warning("Lookup of invalid identity: %s", e)
            return False

        if RNS.Transport.has_path(dest_hash):
            return True

        RNS.Transport.request_path(dest_hash)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(self.config.rns_path_timeout_s)
        while loop.time() < deadline:
            await asyncio.sleep(0.1)
            if self._closed:
                return False
            if RNS.Transport.has_path(dest_hash):
                return True
        return False

    def dial(self, identity: str, *, force_relay: bool = False) -> Link:
        self._loop = asyncio.get_running_loop()
        link = RnsLink(self, identity)
        link.force_relay = force_relay
        self.links.add(link)
        self._loop.call_soon(self._open_outbound, link)
        return link

    def _open_outbound(self, link: RnsLink) -> None:
        if self._closed or link.is_finished:
            return
        try:
            dest_hash = _parse_hash(link.remote)
        except ValueError as e:
            link._mark_error(str(e))
            return

        if link.force_relay:
            # Ask transport nodes for a fresh path before linking.
            self.log.info("Relay dial remote=%s; requesting a fresh path", link.remote)
            RNS.Transport.request_path(dest_hash)

        remote = RNS.Identity.recall(dest_hash)
        if remote is None:
            link._mark_error("peer-unavailable")
            return

        app_name, aspects = _split_dest_name(self.config.rns_dest_name)
        destination = RNS.Destination(
            remote, RNS.Destination.OUT, RNS.Destination.SINGLE, app_name, *aspects
        )
        rns_link = RNS.Link(destination)
        link._bind(rns_link)
        rns_link.set_link_established_callback(link._rns_established)

    def _rns_inbound(self, rns_link: RNS.Link) -> None:
        self._threadsafe(self._accept, rns_link)

    def _accept(self, rns_link: RNS.Link) -> None:
        if self._closed:
            rns_link.teardown()
            return
        link = RnsLink(self, None, rns_link)
        self.links.add(link)
        cb = self._incoming_cb
        if cb is None:
            link.close()
            return
        cb(link)
        link._mark_open()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._announce_task is not None:
            self._announce_task.cancel()
            self._announce_task = None
        if self.destination is not None:
            self.destination.set_link_established_callback(None)
        for link in list(self.links):
            link.close()
        self.links.clear()
