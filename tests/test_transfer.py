import asyncio
import hashlib
import io
import threading

import pytest

from vaultp2p.codec import encode
from vaultp2p.constants import B_META_ID, B_META_NAME, B_META_SHA256, B_META_SIZE, P_CHUNK, P_META
from vaultp2p.errors import EmptySourceError, ErrorKind, MalformedMetadataError
from vaultp2p.events import EventKind, TransferMetadata
from vaultp2p.transfer import decode_metadata, encode_chunk, encode_metadata, open_source

from conftest import Harness, Recorder, wait_until


class ThreadRecordingFile(io.BytesIO):
    """Remembers which threads performed reads."""

    def __init__(self, data: bytes, *, fail: bool = False) -> None:
        super().__init__(data)
        self.threads: set[int] = set()
        self.fail = fail

    def read(self, n: int = -1) -> bytes:
        self.threads.add(threading.get_ident())
        if self.fail:
            raise OSError("disk went away")
        return super().read(n)


@pytest.mark.asyncio
async def test_open_source_from_bytes_path_and_file(tmp_path) -> None:
    src = await open_source(b"abc", "notes.txt")
    assert (src.name, src.size, src.sha256) == ("notes.txt", 3, hashlib.sha256(b"abc").digest())
    src.close()

    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\x89" * 10)
    src = await open_source(str(path))
    assert src.name == "photo.jpg"
    assert src.size == 10
    src.close()

    fh = io.BytesIO(b"0123456789")
    fh.seek(4)
    src = await open_source(fh, "tail.bin")
    assert src.size == 6
    assert await src.read(100) == b"456789"


@pytest.mark.asyncio
async def test_open_source_strips_directories() -> None:
    src = await open_source(b"x", "../../etc/passwd")
    assert src.name == "passwd"


@pytest.mark.asyncio
async def test_empty_source_is_refused() -> None:
    with pytest.raises(EmptySourceError):
        await open_source(b"", "empty.txt")
    with pytest.raises(ValueError):
        await open_source(io.BytesIO(), "empty.txt")


@pytest.mark.asyncio
async def test_source_reads_run_off_the_event_loop() -> None:
    fh = ThreadRecordingFile(b"z" * 1000)
    src = await open_source(fh, "z.bin")
    assert await src.read(10) == b"z" * 10
    assert fh.threads
    assert threading.get_ident() not in fh.threads


@pytest.mark.asyncio
async def test_path_source_is_closed_when_hashing_fails(tmp_path, monkeypatch) -> None:
    path = tmp_path / "broken.bin"
    path.write_bytes(b"data")
    opened: list[ThreadRecordingFile] = []

    def fake_open(p, mode="r"):
        fh = ThreadRecordingFile(b"data", fail=True)
        opened.append(fh)
        return fh

    monkeypatch.setattr("vaultp2p.transfer.open", fake_open, raising=False)
    with pytest.raises(OSError):
        await open_source(str(path))
    assert len(opened) == 1
    assert opened[0].closed


def test_metadata_round_trip() -> None:
    meta = TransferMetadata(
        transfer_id=b"\x01" * 8, name="a.txt", size=5, sha256=hashlib.sha256(b"hello").digest()
    )
    payload = encode_metadata(meta)
    assert payload[0] == P_META
    assert decode_metadata(payload[1:]) == meta

    chunk = encode_chunk(meta.transfer_id, b"hel")
    assert chunk[0] == P_CHUNK
    assert chunk[1:9] == meta.transfer_id
    assert chunk[9:] == b"hel"


@pytest.mark.parametrize(
    "body",
    [
        b"\xff\xff",
        encode(["not", "a", "map"]),
        encode({B_META_ID: b"short", B_META_NAME: "a", B_META_SIZE: 1, B_META_SHA256: b"\x00" * 32}),
        encode({B_META_ID: b"\x00" * 8, B_META_NAME: "..", B_META_SIZE: 1, B_META_SHA256: b"\x00" * 32}),
        encode({B_META_ID: b"\x00" * 8, B_META_NAME: "a", B_META_SIZE: 0, B_META_SHA256: b"\x00" * 32}),
        encode({B_META_ID: b"\x00" * 8, B_META_NAME: "a", B_META_SIZE: 1, B_META_SHA256: b"\x00"}),
    ],
)
def test_malformed_metadata(body: bytes) -> None:
    with pytest.raises(MalformedMetadataError):
        decode_metadata(body)


@pytest.mark.asyncio
async def test_file_is_sliced_and_reassembled() -> None:
    async with Harness() as h:
        host = await h.host()
        joiner = await h.joiner(host)
        rec = Recorder(joiner)
        await wait_until(lambda: host.peer_count() == 1 and len(host.roster()) == 2)

        data = bytes(i % 251 for i in range(40960))
        meta = await host.send_file(data, "blob.bin")
        assert meta.size == 40960

        await wait_until(lambda: rec.of(EventKind.FILE_COMPLETE))

        incoming = rec.of(EventKind.INCOMING_METADATA)
        assert len(incoming) == 1
        assert incoming[0].sender == host.identity
        assert incoming[0].info.name == "blob.bin"
        assert incoming[0].info.size == 40960

        progress = [(p.current, p.total) for p in rec.of(EventKind.PROGRESS)]
        assert progress == [(16384, 40960), (32768, 40960), (40960, 40960)]

        done = rec.of(EventKind.FILE_COMPLETE)[0]
        assert done.data == data
        assert done.name == "blob.bin"
        assert done.sender == host.identity
        assert joiner.received_files() == [done]
        assert joiner.stats()["transfers_received"] == 1
        assert host.stats()["transfers_sent"] == 1


@pytest.mark.asyncio
async def test_zero_byte_send_touches_nothing() -> None:
    async with Harness() as h:
        host = await h.host()
        joiner = await h.joiner(host)
        rec = Recorder(joiner)
        await wait_until(lambda: host.peer_count() == 1)
        await wait_until(lambda: len(joiner.roster()) == 2)
        sent_before = h.network.frames_sent
        events_before = len(rec.events)

        with pytest.raises(EmptySourceError):
            await host.send_file(b"", "empty.txt")

        assert h.network.frames_sent == sent_before
        assert len(rec.events) == events_before


@pytest.mark.asyncio
async def test_send_before_any_joiner_is_flushed_on_connect() -> None:
    async with Harness() as h:
        host = await h.host()
        pending = host.transfer
        sending = asyncio.ensure_future(host.send_file(b"queued!", "q.txt"))
        await wait_until(lambda: pending.queued == 1)
        assert not sending.done()

        joiner = await h.joiner(host)
        rec = Recorder(joiner)
        meta = await sending
        assert meta.name == "q.txt"

        await wait_until(lambda: rec.of(EventKind.FILE_COMPLETE))
        assert rec.of(EventKind.FILE_COMPLETE)[0].data == b"queued!"


@pytest.mark.asyncio
async def test_metadata_without_chunks_then_disconnect_reports_integrity() -> None:
    async with Harness() as h:
        host = await h.host()
        joiner = await h.joiner(host)
        rec = Recorder(host)
        await wait_until(lambda: len(host.roster()) == 2)

        meta = TransferMetadata(
            transfer_id=b"\x07" * 8, name="cut.bin", size=100, sha256=b"\x00" * 32
        )
        await joiner.transfer._broadcast(encode_metadata(meta))
        await wait_until(lambda: rec.of(EventKind.INCOMING_METADATA))
        assert joiner.identity in host.transfer.active_contexts()

        joiner.destroy()
        await wait_until(lambda: rec.of(EventKind.ERROR))
        err = rec.of(EventKind.ERROR)[0]
        assert err.error == ErrorKind.INTEGRITY
        assert not err.fatal
        assert host.transfer.active_contexts() == {}
