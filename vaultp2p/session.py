from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from enum import Enum
from typing import Any

from .cipher import RoomCipher
from .config import VaultConfig
from .connections import ConnectionManager, PeerConnection
from .errors import (
    ErrorKind,
    PeerUnavailableError,
    SessionClosedError,
    TransportTimeoutError,
    VaultError,
)
from .events import (
    Connected,
    Disconnected,
    ErrorEvent,
    EventBus,
    EventKind,
    FileComplete,
    Handler,
    PeerRecord,
    TransferMetadata,
    TransportClassDetected,
)
from .identity_cache import IdentityCache
from .invite import Invitation, build_invite
from .negotiator import TransportNegotiator
from .rendezvous import RendezvousClient
from .roster import RosterCoordinator
from .router import FrameRouter
from .stats import StatsManager
from .transfer import TransferEngine
from .transport import Signaling, Transport
from .util import fmt_identity, normalize_device


class Role(str, Enum):
    INITIATOR = "initiator"
    JOINER = "joiner"


class VaultSession:
    """One room membership, as initiator or joiner.

    All state of a membership lives here and is shared with the components by
    reference. Everything runs on the event loop that called
    ``start_as_initiator`` or ``join_room``.
    """

    def __init__(
        self,
        config: VaultConfig,
        *,
        signaling: Signaling,
        transport: Transport,
        identity_cache: IdentityCache | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("vaultp2p.session")

        self.bus = EventBus()
        self.stats_manager = StatsManager()

        self.rendezvous = RendezvousClient(signaling, config)
        self.transport = transport
        self.negotiator = TransportNegotiator(
            transport,
            direct_timeout_s=config.direct_timeout_s,
            total_timeout_s=config.total_timeout_s,
            on_switching=self._on_switching,
        )
        self.connections = ConnectionManager(self)
        self.coordinator = RosterCoordinator(self)
        self.router = FrameRouter(self)
        self.transfer = TransferEngine(self)

        if identity_cache is None and config.identity_cache_path:
            identity_cache = IdentityCache(config.identity_cache_path)
        self.identity_cache = identity_cache

        self.role: Role | None = None
        self.identity: str | None = None
        self.room_identity: str | None = None
        self.cipher: RoomCipher | None = None
        self.capacity: int | None = config.capacity
        self.device_class = normalize_device(config.device_class)

        self.destroyed = False
        self.rejected = False
        self.failure: ErrorKind | None = None

        self._tasks: set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._received: list[FileComplete] = []

        transport.set_incoming_callback(self.connections.accept)

    # Event surface

    def subscribe(self, kind: EventKind, handler: Handler):
        return self.bus.subscribe(kind, handler)

    def subscribe_all(self, handler: Handler):
        return self.bus.subscribe_all(handler)

    def events(self) -> asyncio.Queue:
        return self.bus.queue()

    # Introspection

    @property
    def is_initiator(self) -> bool:
        return self.role == Role.INITIATOR

    def roster(self) -> tuple[PeerRecord, ...]:
        return self.coordinator.snapshot()

    def peer_count(self) -> int:
        return len(self.connections.open_connections())

    def received_files(self) -> list[FileComplete]:
        return list(self._received)

    def stats(self) -> dict[str, int]:
        return self.stats_manager.snapshot()

    def invite_link(self, base_url: str | None = None) -> str:
        if self.room_identity is None or self.cipher is None:
            raise SessionClosedError("session has no room yet")
        return build_invite(
            base_url or self.config.invite_base_url,
            self.room_identity,
            self.cipher.key_material,
        )

    # Lifecycle

    async def start_as_initiator(
        self,
        capacity: int | None = None,
        device_class: str | None = None,
        preferred_identity: str | None = None,
        *,
        resume: bool = False,
    ) -> Invitation:
        self._claim_role(Role.INITIATOR)

        if capacity is None:
            capacity = self.config.capacity
        if capacity is not None and int(capacity) < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity) if capacity is not None else None
        if device_class is not None:
            self.device_class = normalize_device(device_class)

        cache = self.identity_cache
        cached = cache.load() if (cache is not None and resume) else None
        if cached is not None:
            self.cipher = RoomCipher.from_key_material(cached.key_material)
            preferred_identity = preferred_identity or cached.identity
            self.log.info("Resuming cached room identity=%s", cached.identity)
        else:
            if cache is not None:
                cache.clear()
            self.cipher = RoomCipher.generate()

        identity = await self.rendezvous.obtain_identity(preferred_identity)
        self._check_alive()

        self.identity = identity
        self.room_identity = identity
        self.coordinator.reset(PeerRecord(identity=identity, device=self.device_class))
        if cache is not None:
            cache.store(identity, self.cipher.key_material)

        self.stats_manager.set_start_time()
        self.connections.start_keepalive()
        self.coordinator.notify()

        self.log.info(
            "Room open identity=%s capacity=%s device=%s",
            identity,
            self.capacity if self.capacity is not None else "unlimited",
            self.device_class,
        )
        return Invitation(room_identity=identity, key_material=self.cipher.key_material)

    async def join_room(
        self,
        target_identity: str,
        key_material: str,
        device_class: str | None = None,
    ) -> None:
        """Join a room; returns once the link to the initiator is open."""
        if not isinstance(target_identity, str) or not target_identity.strip():
            raise ValueError("target identity must not be empty")
        cipher = RoomCipher.from_key_material(key_material)

        self._claim_role(Role.JOINER)
        self.cipher = cipher
        self.room_identity = target_identity.strip()
        if device_class is not None:
            self.device_class = normalize_device(device_class)

        self.identity = await self.rendezvous.obtain_identity(None)
        self._check_alive()

        self.stats_manager.set_start_time()
        self.connections.start_keepalive()

        try:
            await self._dial_room()
        except (PeerUnavailableError, TransportTimeoutError) as e:
            self._fail(e)
            raise

    async def send_file(self, source: Any, name: str | None = None) -> TransferMetadata:
        """Send bytes, a path, or a seekable binary file to every peer.

        Zero-byte sources raise ``EmptySourceError`` before anything is sent.
        Without an open connection the send waits in a queue and completes
        once a connection opens.
        """
        if self.role is None:
            raise SessionClosedError("session has not started")
        return await self.transfer.send_file(source, name)

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True

        self.negotiator.cancel()
        self.connections.close_all()
        self.transfer.close()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._reconnect_task = None

        self.transport.set_incoming_callback(None)
        self.rendezvous.close()
        self.transport.close()

        self.coordinator.clear()
        self.bus.clear()

        self.log.info(
            "Session destroyed identity=%s role=%s",
            fmt_identity(self.identity),
            self.role.value if self.role else "-",
        )

    # Internals

    def _claim_role(self, role: Role) -> None:
        self._check_alive()
        if self.role is not None:
            raise RuntimeError(f"session already started as {self.role.value}")
        self.role = role

    def _check_alive(self) -> None:
        if self.destroyed:
            raise SessionClosedError("session destroyed")

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, SessionClosedError):
            self.log.error("Background task failed: %r", exc, exc_info=exc)

    async def _dial_room(self) -> None:
        target = self.room_identity
        await self.rendezvous.resolve(target)
        self._check_alive()
        outcome = await self.negotiator.dial(target, on_open=self.connections.adopt)
        self._check_alive()
        self.log.info(
            "Joined room=%s attempts=%s relayed=%s",
            fmt_identity(target),
            outcome.attempts,
            outcome.relayed,
        )

    def _fail(self, err: VaultError) -> None:
        if self.destroyed:
            return
        self.failure = err.kind
        self.log.error("Session failed kind=%s err=%s", err.kind.value, err)
        self.bus.emit(ErrorEvent(error=err.kind, message=str(err), fatal=True))
        self.destroy()

    def _on_switching(self, label: str) -> None:
        self.bus.emit(TransportClassDetected(label=label, peer=self.room_identity))

    def _on_connection_open(self, conn: PeerConnection) -> None:
        self.bus.emit(Connected(peer_count=self.peer_count()))
        self._spawn(self._detect_transport_class(conn))
        self.transfer.on_connection_open()

    def _on_connection_closed(self, conn: PeerConnection, *, was_open: bool) -> None:
        if self.destroyed:
            return

        if conn.peer is not None:
            if self.is_initiator:
                self.transfer.abort_from(conn.peer, "sender disconnected")
                if self.coordinator.remove(conn.peer):
                    self.coordinator.publish()
            elif not self.connections.connections:
                # Without the initiator no other member is reachable.
                self.transfer.abort_all("lost the initiator")
                self.coordinator.reset(
                    PeerRecord(identity=self.identity, device=self.device_class)
                )
                self.coordinator.notify()

        if was_open:
            self.bus.emit(Disconnected(peer_count=self.peer_count()))

        if not self.is_initiator and not self.connections.connections:
            self._schedule_reconnect()

    def _on_rejected(self, message: str) -> None:
        self.rejected = True
        self.bus.emit(
            ErrorEvent(error=ErrorKind.CAPACITY_EXCEEDED, message=message, fatal=False)
        )
        for conn in list(self.connections.connections):
            conn.link.close()

    async def _detect_transport_class(self, conn: PeerConnection) -> None:
        label = await conn.link.get_stats()
        if self.destroyed or not conn.link.is_open:
            return
        self.log.info(
            "Transport class peer=%s class=%s",
            fmt_identity(conn.peer or conn.link.remote),
            label.value,
        )
        self.bus.emit(
            TransportClassDetected(label=label.value, peer=conn.peer or conn.link.remote)
        )

    def _record_received(self, done: FileComplete) -> None:
        self._received.append(done)

    def _schedule_reconnect(self) -> None:
        if self.destroyed or self.rejected or self.role != Role.JOINER:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        policy = self.config.reconnect_policy()
        attempts = max(1, int(policy.max_attempts))
        last: VaultError | None = None

        for attempt in range(1, attempts + 1):
            delay = policy.delay_for(attempt)
            self.log.info(
                "Reconnecting to %s attempt=%s/%s in %.1fs",
                fmt_identity(self.room_identity),
                attempt,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
            if self.destroyed or self.rejected or self.connections.connections:
                return
            try:
                await self._dial_room()
            except (PeerUnavailableError, TransportTimeoutError) as e:
                last = e
                self.log.warning("Reconnect attempt %s failed: %s", attempt, e)
                continue
            return

        if last is not None:
            self._fail(last)
