"""Typed session events and their dispatcher.

Every event a session can emit is one of the dataclasses below; the set of
kinds is closed (``EventKind``). Handlers are plain callables invoked on the
event loop thread. A failing handler is logged and never disturbs the engine.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from .errors import ErrorKind


class EventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    INCOMING_METADATA = "incoming-metadata"
    PROGRESS = "progress"
    FILE_COMPLETE = "file-complete"
    ROSTER_CHANGED = "roster-changed"
    TRANSPORT_CLASS_DETECTED = "transport-class-detected"
    ERROR = "error"


@dataclass(frozen=True)
class PeerRecord:
    identity: str
    device: str


@dataclass(frozen=True)
class TransferMetadata:
    transfer_id: bytes
    name: str
    size: int
    sha256: bytes


@dataclass(frozen=True)
class Connected:
    kind: ClassVar[EventKind] = EventKind.CONNECTED
    peer_count: int


@dataclass(frozen=True)
class Disconnected:
    kind: ClassVar[EventKind] = EventKind.DISCONNECTED
    peer_count: int


@dataclass(frozen=True)
class IncomingMetadata:
    kind: ClassVar[EventKind] = EventKind.INCOMING_METADATA
    sender: str
    info: TransferMetadata


@dataclass(frozen=True)
class Progress:
    kind: ClassVar[EventKind] = EventKind.PROGRESS
    current: int
    total: int
    name: str = ""
    direction: str = "receive"
    peer: str | None = None


@dataclass(frozen=True)
class FileComplete:
    kind: ClassVar[EventKind] = EventKind.FILE_COMPLETE
    data: bytes = field(repr=False)
    name: str
    sender: str
    sha256: bytes = field(default=b"", repr=False)


@dataclass(frozen=True)
class RosterChanged:
    kind: ClassVar[EventKind] = EventKind.ROSTER_CHANGED
    roster: tuple[PeerRecord, ...]


@dataclass(frozen=True)
class TransportClassDetected:
    kind: ClassVar[EventKind] = EventKind.TRANSPORT_CLASS_DETECTED
    label: str
    peer: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[EventKind] = EventKind.ERROR
    error: ErrorKind
    message: str = ""
    fatal: bool = False


Event = (
    Connected
    | Disconnected
    | IncomingMetadata
    | Progress
    | FileComplete
    | RosterChanged
    | TransportClassDetected
    | ErrorEvent
)

Handler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self.log = logging.getLogger("vaultp2p.events")
        self._handlers: dict[EventKind, list[Handler]] = {k: [] for k in EventKind}
        self._any: list[Handler] = []
        self._queues: list[asyncio.Queue] = []

    def subscribe(self, kind: EventKind, handler: Handler) -> Callable[[], None]:
        """Register a handler for one kind. Returns an unsubscribe callable."""
        kind = EventKind(kind)
        self._handlers[kind].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[kind].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        self._any.append(handler)

        def _unsubscribe() -> None:
            try:
                self._any.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def queue(self) -> asyncio.Queue:
        """Channel-style subscription: every later event is put on the queue."""
        q: asyncio.Queue = asyncio.Queue()
        self._queues.append(q)
        return q

    def release_queue(self, q: asyncio.Queue) -> None:
        try:
            self._queues.remove(q)
        except ValueError:
            pass

    def emit(self, event: Event) -> None:
        for handler in list(self._handlers[event.kind]) + list(self._any):
            try:
                handler(event)
            except Exception:
                self.log.exception("Event handler failed kind=%s", event.kind.value)
        for q in list(self._queues):
            q.put_nowait(event)

    def clear(self) -> None:
        for handlers in self._handlers.values():
            handlers.clear()
        self._any.clear()
        self._queues.clear()
