"""Counters for one vaultp2p session."""

from __future__ import annotations

import time


class StatsManager:
    """
    Tracks session counters for:
    - Bytes and frames in/out
    - Malformed frames
    - Relayed frames (initiator)
    - Keep-alives
    - Decryption failures
    - Capacity rejections
    - Transfers sent, received and failed
    """

    def __init__(self) -> None:
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "frames_in": 0,
            "frames_out": 0,
            "frames_bad": 0,
            "frames_relayed": 0,
            "keepalives_in": 0,
            "keepalives_out": 0,
            "decrypt_failures": 0,
            "rejects_sent": 0,
            "transfers_sent": 0,
            "transfers_received": 0,
            "transfers_failed": 0,
            "transfer_bytes_sent": 0,
            "transfer_bytes_received": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        return dict(self._counters)

    def format_stats(self) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        lines = [f"vaultp2p {__version__} uptime={uptime_s:.0f}s"]
        c = self._counters
        lines.append(
            f"bytes in={c['bytes_in']} out={c['bytes_out']} "
            f"frames in={c['frames_in']} out={c['frames_out']} bad={c['frames_bad']}"
        )
        lines.append(
            f"relayed={c['frames_relayed']} keepalive in={c['keepalives_in']} "
            f"out={c['keepalives_out']} decrypt_failures={c['decrypt_failures']} "
            f"rejects={c['rejects_sent']}"
        )
        lines.append(
            f"transfers sent={c['transfers_sent']} received={c['transfers_received']} "
            f"failed={c['transfers_failed']} bytes sent={c['transfer_bytes_sent']} "
            f"received={c['transfer_bytes_received']}"
        )
        return "\n".join(lines)
