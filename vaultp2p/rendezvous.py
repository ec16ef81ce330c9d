from __future__ import annotations

import asyncio
import logging

from .config import VaultConfig
from .errors import IdentityTakenError, PeerUnavailableError, SessionClosedError
from .transport import Signaling
from .util import fmt_identity, random_identity


class RendezvousClient:
    """
    Wraps the signaling primitive.

    Handles:
    - Identity registration, falling back to random identities on collision
    - Resolving a remote identity with bounded, backed-off retries
    - Re-registering the same identity after the signaling link is lost
    """

    def __init__(self, signaling: Signaling, config: VaultConfig) -> None:
        self.signaling = signaling
        self.config = config
        self.log = logging.getLogger("vaultp2p.rendezvous")
        self.identity: str | None = None
        self._closed = False
        self._reregister_task: asyncio.Task | None = None
        signaling.set_disconnected_callback(self._on_disconnected)

    async def obtain_identity(self, preferred: str | None = None) -> str:
        candidate = preferred
        attempts = max(1, int(self.config.register_attempts))
        for attempt in range(1, attempts + 1):
            try:
                identity = await self.signaling.register(candidate)
            except IdentityTakenError:
                self.log.warning(
                    "Identity collision identity=%s attempt=%s/%s; using a random identity",
                    fmt_identity(candidate),
                    attempt,
                    attempts,
                )
                candidate = random_identity()
                continue

            self.identity = identity
            self.log.info("Registered identity=%s", identity)
            return identity

        raise IdentityTakenError(f"no free identity after {attempts} attempts")

    async def resolve(self, identity: str) -> None:
        """Make sure ``identity`` is reachable; raises ``PeerUnavailableError``."""

        async def _attempt() -> None:
            if self._closed:
                raise SessionClosedError("rendezvous client is closed")
            if not await self.signaling.lookup(identity):
                raise PeerUnavailableError(f"peer {identity} is unavailable")

        await self.config.lookup_policy().run(
            _attempt,
            retry_on=(PeerUnavailableError,),
            what=f"lookup {fmt_identity(identity)}",
        )

    def _on_disconnected(self) -> None:
        if self._closed or self.identity is None:
            return
        if self._reregister_task is not None and not self._reregister_task.done():
            return
        self.log.warning("Signaling lost identity=%s; re-registering", self.identity)
        self._reregister_task = asyncio.get_running_loop().create_task(self._reregister())

    async def _reregister(self) -> None:
        identity = self.identity

        async def _attempt() -> str:
            return await self.signaling.register(identity)

        try:
            await self.config.reregister_policy().run(
                _attempt, retry_on=(OSError, ConnectionError), what="re-register"
            )
        except IdentityTakenError:
            self.log.error("Identity %s was taken while signaling was down", identity)
        except (OSError, ConnectionError) as e:
            self.log.error("Re-registration failed identity=%s err=%s", identity, e)
        else:
            self.log.info("Re-registered identity=%s", identity)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reregister_task is not None:
            self._reregister_task.cancel()
        self.signaling.set_disconnected_callback(None)
        self.signaling.close()
