"""Chunked, encrypted file transfer for vaultp2p sessions."""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any

from .codec import decode, encode
from .constants import (
    B_META_ID,
    B_META_NAME,
    B_META_SHA256,
    B_META_SIZE,
    P_CHUNK,
    P_META,
    TRANSFER_ID_LEN,
)
from .errors import (
    EmptySourceError,
    ErrorKind,
    MalformedMetadataError,
    SessionClosedError,
)
from .events import ErrorEvent, FileComplete, IncomingMetadata, Progress, TransferMetadata
from .frames import data_frame
from .util import fmt_identity, normalize_file_name

if TYPE_CHECKING:
    from .session import VaultSession

_READ_BLOCK = 256 * 1024


@dataclass
class DecodeContext:
    """Receive-side accumulator for one sender's active transfer."""

    metadata: TransferMetadata
    chunks: list[bytes] = field(default_factory=list)
    received: int = 0


class TransferSource:
    """A readable, sized, hashed send source.

    File I/O runs in the default executor so a large source never stalls the
    event loop. ``prepare()`` must complete before ``size``/``sha256`` are used.
    """

    def __init__(self, fh: IO[bytes], name: str, *, owned: bool) -> None:
        self.fh = fh
        self.name = name
        self.size = 0
        self.sha256 = b""
        self._owned = owned

    def _digest(self) -> tuple[int, bytes]:
        start = self.fh.tell()
        h = hashlib.sha256()
        size = 0
        while True:
            block = self.fh.read(_READ_BLOCK)
            if not block:
                break
            h.update(block)
            size += len(block)
        self.fh.seek(start)
        return size, h.digest()

    async def prepare(self) -> None:
        loop = asyncio.get_running_loop()
        self.size, self.sha256 = await loop.run_in_executor(None, self._digest)

    async def read(self, n: int) -> bytes:
        return await asyncio.get_running_loop().run_in_executor(None, self.fh.read, n)

    def close(self) -> None:
        if self._owned:
            self.fh.close()


async def open_source(source: Any, name: str | None = None) -> TransferSource:
    """Wrap bytes, a path, or a seekable binary file.

    Raises ``EmptySourceError`` for zero-byte sources. The source is closed
    again on every error path.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        src = TransferSource(io.BytesIO(bytes(source)), name or "payload.bin", owned=True)
    elif isinstance(source, (str, os.PathLike)):
        path = os.fspath(source)
        fh = await asyncio.get_running_loop().run_in_executor(None, open, path, "rb")
        src = TransferSource(fh, name or os.path.basename(path), owned=True)
    elif hasattr(source, "read") and hasattr(source, "seek"):
        if not source.seekable():
            raise ValueError("file sources must be seekable")
        default = os.path.basename(str(getattr(source, "name", "") or "")) or "payload.bin"
        src = TransferSource(source, name or default, owned=False)
    else:
        raise TypeError(f"unsupported source type {type(source).__name__}")

    try:
        clean = normalize_file_name(src.name)
        if clean is None:
            raise ValueError(f"invalid file name {src.name!r}")
        src.name = clean

        await src.prepare()
        if src.size == 0:
            raise EmptySourceError("refusing to send an empty file")
    except BaseException:
        src.close()
        raise
    return src


def encode_metadata(meta: TransferMetadata) -> bytes:
    body = {
        B_META_ID: meta.transfer_id,
        B_META_NAME: meta.name,
        B_META_SIZE: meta.size,
        B_META_SHA256: meta.sha256,
    }
    return bytes([P_META]) + encode(body)


def decode_metadata(payload: bytes) -> TransferMetadata:
    try:
        body = decode(payload)
    except Exception as e:
        raise MalformedMetadataError(f"undecodable metadata: {e}") from e

    if not isinstance(body, dict):
        raise MalformedMetadataError("metadata must be a map")

    tid = body.get(B_META_ID)
    if not isinstance(tid, bytes) or len(tid) != TRANSFER_ID_LEN:
        raise MalformedMetadataError("bad transfer id")

    name = normalize_file_name(body.get(B_META_NAME))
    if name is None:
        raise MalformedMetadataError("bad file name")

    size = body.get(B_META_SIZE)
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise MalformedMetadataError("bad file size")

    digest = body.get(B_META_SHA256)
    if not isinstance(digest, bytes) or len(digest) != hashlib.sha256().digest_size:
        raise MalformedMetadataError("bad sha256")

    return TransferMetadata(transfer_id=tid, name=name, size=size, sha256=digest)


def encode_chunk(transfer_id: bytes, piece: bytes) -> bytes:
    return bytes([P_CHUNK]) + transfer_id + piece


class TransferEngine:
    """
    Send pipeline and receive-side reassembly.

    Sends are serialized per session, so each sender has at most one
    TransferMetadata in flight. Within a transfer every slice is encrypted
    once and handed to each open connection in turn; the next slice is read
    only after the previous sends returned.
    """

    def __init__(self, session: VaultSession) -> None:
        self.session = session
        self.log = logging.getLogger("vaultp2p.transfer")
        self._send_lock = asyncio.Lock()
        self._queue: deque[tuple[TransferSource, asyncio.Future]] = deque()
        self._flush_task: asyncio.Task | None = None
        self._contexts: dict[str, DecodeContext] = {}

    # Sending

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def send_file(self, source: Any, name: str | None = None) -> TransferMetadata:
        session = self.session
        session._check_alive()
        src = await open_source(source, name)

        if not session.connections.open_connections():
            fut: asyncio.Future = asyncio.get_running_loop().create_future()
            self._queue.append((src, fut))
            self.log.info(
                "No open connection; queued name=%r size=%s position=%s",
                src.name,
                src.size,
                len(self._queue),
            )
            return await fut

        return await self._send_serialized(src)

    def on_connection_open(self) -> None:
        if not self._queue:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = self.session._spawn(self._flush())

    async def _flush(self) -> None:
        while self._queue:
            if self.session.destroyed or not self.session.connections.open_connections():
                return
            src, fut = self._queue.popleft()
            if fut.done():
                src.close()
                continue
            self.log.info("Flushing queued transfer name=%r", src.name)
            try:
                meta = await self._send_serialized(src)
            except asyncio.CancelledError:
                if not fut.done():
                    fut.cancel()
                raise
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
                continue
            if not fut.done():
                fut.set_result(meta)

    async def _send_serialized(self, src: TransferSource) -> TransferMetadata:
        async with self._send_lock:
            try:
                return await self._send_now(src)
            finally:
                src.close()

    async def _send_now(self, src: TransferSource) -> TransferMetadata:
        session = self.session
        meta = TransferMetadata(
            transfer_id=os.urandom(TRANSFER_ID_LEN),
            name=src.name,
            size=src.size,
            sha256=src.sha256,
        )
        chunk_size = max(1, int(session.config.chunk_size))

        self.log.info(
            "Sending name=%r size=%s chunk=%s tid=%s",
            meta.name,
            meta.size,
            chunk_size,
            meta.transfer_id.hex(),
        )
        await self._broadcast(encode_metadata(meta))

        offset = 0
        while offset < meta.size:
            piece = await src.read(chunk_size)
            if not piece:
                raise OSError(
                    f"source {meta.name!r} ended at {offset} of {meta.size} bytes"
                )
            await self._broadcast(encode_chunk(meta.transfer_id, piece))
            offset += len(piece)
            session.bus.emit(
                Progress(current=offset, total=meta.size, name=meta.name, direction="send")
            )

        session.stats_manager.inc("transfers_sent")
        session.stats_manager.inc("transfer_bytes_sent", meta.size)
        self.log.info("Sent name=%r size=%s", meta.name, meta.size)
        return meta

    async def _broadcast(self, plaintext: bytes) -> None:
        session = self.session
        session._check_alive()
        identity = session.identity
        envelope = session.cipher.encrypt(plaintext, aad=identity.encode("utf-8"))
        frame = data_frame(identity, envelope.to_bytes())

        targets = session.connections.open_connections()
        if not targets:
            self.log.warning("No open connection for %s-byte payload", len(plaintext))
        for conn in targets:
            if await conn.send(frame):
                session.stats_manager.inc("frames_out")
                session.stats_manager.inc("bytes_out", len(frame))

    # Receiving

    def handle_payload(self, sender: str, plaintext: bytes) -> None:
        if not plaintext:
            return
        tag = plaintext[0]
        if tag == P_META:
            self._on_metadata(sender, plaintext[1:])
        elif tag == P_CHUNK:
            self._on_chunk(sender, plaintext[1:])
        else:
            self.log.debug("Unknown payload tag=%s src=%s", tag, fmt_identity(sender))

    def _on_metadata(self, sender: str, body: bytes) -> None:
        session = self.session
        try:
            meta = decode_metadata(body)
        except MalformedMetadataError as e:
            self._contexts.pop(sender, None)
            session.stats_manager.inc("transfers_failed")
            self.log.warning("Malformed metadata src=%s err=%s", fmt_identity(sender), e)
            session.bus.emit(ErrorEvent(error=ErrorKind.MALFORMED_METADATA, message=str(e)))
            return

        previous = self._contexts.get(sender)
        if previous is not None:
            session.stats_manager.inc("transfers_failed")
            self.log.warning(
                "New transfer replaces unfinished one src=%s name=%r received=%s/%s",
                fmt_identity(sender),
                previous.metadata.name,
                previous.received,
                previous.metadata.size,
            )

        self._contexts[sender] = DecodeContext(metadata=meta)
        self.log.info(
            "Incoming src=%s name=%r size=%s",
            fmt_identity(sender),
            meta.name,
            meta.size,
        )
        session.bus.emit(IncomingMetadata(sender=sender, info=meta))

    def _on_chunk(self, sender: str, body: bytes) -> None:
        ctx = self._contexts.get(sender)
        tid = body[:TRANSFER_ID_LEN]
        if ctx is None or len(tid) != TRANSFER_ID_LEN or ctx.metadata.transfer_id != tid:
            self.log.debug("Dropping chunk without transfer src=%s", fmt_identity(sender))
            return

        piece = body[TRANSFER_ID_LEN:]
        ctx.chunks.append(piece)
        ctx.received += len(piece)
        meta = ctx.metadata
        self.session.bus.emit(
            Progress(
                current=ctx.received,
                total=meta.size,
                name=meta.name,
                direction="receive",
                peer=sender,
            )
        )

        if ctx.received >= meta.size:
            self._finish(sender, ctx)

    def _finish(self, sender: str, ctx: DecodeContext) -> None:
        session = self.session
        self._contexts.pop(sender, None)
        meta = ctx.metadata
        data = b"".join(ctx.chunks)
        ctx.chunks.clear()

        if len(data) != meta.size or hashlib.sha256(data).digest() != meta.sha256:
            session.stats_manager.inc("transfers_failed")
            self.log.warning(
                "Integrity check failed src=%s name=%r size=%s expected=%s",
                fmt_identity(sender),
                meta.name,
                len(data),
                meta.size,
            )
            session.bus.emit(
                ErrorEvent(
                    error=ErrorKind.INTEGRITY,
                    message=f"{meta.name}: content does not match announced digest",
                )
            )
            return

        session.stats_manager.inc("transfers_received")
        session.stats_manager.inc("transfer_bytes_received", len(data))
        self.log.info(
            "Received src=%s name=%r size=%s", fmt_identity(sender), meta.name, len(data)
        )
        done = FileComplete(data=data, name=meta.name, sender=sender, sha256=meta.sha256)
        session._record_received(done)
        session.bus.emit(done)

    def abort_from(self, sender: str, reason: str) -> None:
        ctx = self._contexts.pop(sender, None)
        if ctx is None:
            return
        self.session.stats_manager.inc("transfers_failed")
        self.log.warning(
            "Transfer interrupted src=%s name=%r received=%s/%s reason=%s",
            fmt_identity(sender),
            ctx.metadata.name,
            ctx.received,
            ctx.metadata.size,
            reason,
        )
        self.session.bus.emit(
            ErrorEvent(
                error=ErrorKind.INTEGRITY,
                message=f"{ctx.metadata.name}: transfer interrupted ({reason})",
            )
        )

    def abort_all(self, reason: str) -> None:
        for sender in list(self._contexts):
            self.abort_from(sender, reason)

    def active_contexts(self) -> dict[str, DecodeContext]:
        return dict(self._contexts)

    def close(self) -> None:
        while self._queue:
            src, fut = self._queue.popleft()
            src.close()
            if not fut.done():
                fut.set_exception(SessionClosedError("session destroyed"))
        self._contexts.clear()
