"""Contracts for the externally supplied signaling and transport primitives.

The engine never traverses NATs itself. It talks to a ``Signaling`` primitive
to obtain and resolve identities and to a ``Transport`` primitive that dials
identities and hands back ``Link`` objects. ``loopback`` and ``rns_transport``
ship implementations of both.
"""

from __future__ import annotations

import abc
import logging
import os
from collections.abc import Callable
from enum import Enum
from typing import Any


class TransportClass(str, Enum):
    DIRECT_LOCAL = "direct-local"
    DIRECT_EXTERNAL = "direct-external"
    RELAYED = "relayed"
    UNKNOWN = "unknown"


class LinkState(str, Enum):
    DIALING = "dialing"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class Link(abc.ABC):
    """One peer-to-peer channel.

    Implementations call ``_mark_open``, ``_deliver``, ``_mark_closed`` and
    ``_mark_error`` from the event loop thread; the base class takes care of
    state transitions and callback dispatch. ``detach`` drops every callback so
    an abandoned attempt can be closed without notifying anyone.
    """

    def __init__(self, remote: str | None, *, link_id: str | None = None) -> None:
        self.remote = remote
        self.link_id = link_id or os.urandom(6).hex()
        self.state = LinkState.DIALING
        self.force_relay = False
        self._log = logging.getLogger("vaultp2p.transport")
        self._open_cb: Callable[[Link], None] | None = None
        self._data_cb: Callable[[Link, bytes], None] | None = None
        self._closed_cb: Callable[[Link], None] | None = None
        self._error_cb: Callable[[Link, Any], None] | None = None

    def set_open_callback(self, cb: Callable[[Link], None] | None) -> None:
        self._open_cb = cb

    def set_data_callback(self, cb: Callable[[Link, bytes], None] | None) -> None:
        self._data_cb = cb

    def set_closed_callback(self, cb: Callable[[Link], None] | None) -> None:
        self._closed_cb = cb

    def set_error_callback(self, cb: Callable[[Link, Any], None] | None) -> None:
        self._error_cb = cb

    def detach(self) -> None:
        self._open_cb = None
        self._data_cb = None
        self._closed_cb = None
        self._error_cb = None

    @property
    def is_open(self) -> bool:
        return self.state == LinkState.OPEN

    @property
    def is_finished(self) -> bool:
        return self.state in (LinkState.CLOSED, LinkState.ERRORED)

    def _mark_open(self) -> None:
        if self.state != LinkState.DIALING:
            return
        self.state = LinkState.OPEN
        if self._open_cb is not None:
            self._open_cb(self)

    def _deliver(self, data: bytes) -> None:
        if self.state != LinkState.OPEN:
            return
        if self._data_cb is not None:
            self._data_cb(self, data)

    def _mark_closed(self) -> None:
        if self.is_finished:
            return
        self.state = LinkState.CLOSED
        if self._closed_cb is not None:
            self._closed_cb(self)

    def _mark_error(self, err: Any) -> None:
        if self.is_finished:
            return
        self.state = LinkState.ERRORED
        if self._error_cb is not None:
            self._error_cb(self, err)
        if self._closed_cb is not None:
            self._closed_cb(self)

    @abc.abstractmethod
    async def send(self, data: bytes) -> None:
        """Hand one frame to the transport; returns once it has been accepted."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    async def get_stats(self) -> TransportClass:
        """Classify the achieved path."""
        return TransportClass.UNKNOWN

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.link_id} remote={self.remote} {self.state.value}>"


class Transport(abc.ABC):
    def __init__(self) -> None:
        self._incoming_cb: Callable[[Link], None] | None = None

    def set_incoming_callback(self, cb: Callable[[Link], None] | None) -> None:
        self._incoming_cb = cb

    @abc.abstractmethod
    def dial(self, identity: str, *, force_relay: bool = False) -> Link:
        """Start dialing ``identity``; the returned link is still DIALING.

        ``force_relay`` restricts candidate gathering to relay-routed paths.
        """

    @abc.abstractmethod
    def close(self) -> None:
        """Stop accepting and tear down every link of this primitive."""


class Signaling(abc.ABC):
    def __init__(self) -> None:
        self.identity: str | None = None
        self._disconnected_cb: Callable[[], None] | None = None

    def set_disconnected_callback(self, cb: Callable[[], None] | None) -> None:
        self._disconnected_cb = cb

    @abc.abstractmethod
    async def register(self, preferred: str | None = None) -> str:
        """Obtain an identity, honouring ``preferred`` when given.

        Raises ``IdentityTakenError`` when ``preferred`` is already in use.
        """

    @abc.abstractmethod
    async def lookup(self, identity: str) -> bool:
        """True when ``identity`` is currently reachable through signaling."""

    @abc.abstractmethod
    def close(self) -> None:
        """Drop the registration."""
