"""Upload progress: percentage and throughput derived from byte counters."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class ProgressInfo:
    percent: int
    #: Bytes per second since the previous sample.
    speed: float
    #: Bytes per second since the transfer started.
    avg_speed: float
    bytes_sent: int
    image_size: int
    part: int = 1
    total_parts: int = 1


ProgressCallback = Callable[[ProgressInfo], None]


def percent_of(bytes_sent: int, image_size: int) -> int:
    if image_size <= 0:
        return 100
    return (100 * bytes_sent) // image_size


def rate(byte_count: int, seconds: float) -> float:
    return byte_count / seconds if seconds > 0 else 0.0


class ProgressTracker:
    """Recomputes :class:`ProgressInfo` on every byte-sent update.

    Values are derived from the counters each time rather than accumulated,
    so rewinding ``bytes_sent`` (object retransmission) stays consistent.
    The listener never sees the same percentage twice in a row.
    """

    def __init__(
        self,
        image_size: int,
        *,
        part: int = 1,
        total_parts: int = 1,
        listener: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.image_size = image_size
        self.part = part
        self.total_parts = total_parts
        self.bytes_sent = 0
        self.bytes_received = 0
        self._listener = listener
        self._clock = clock
        self._start_time = clock()
        self._last_sample_time = self._start_time
        self._last_bytes_sent = 0
        self._start_bytes = 0
        self._last_percent: int | None = None

    def start(self, bytes_sent: int = 0) -> None:
        """Restart the clock, e.g. once the peer accepted the upload."""
        self._start_time = self._last_sample_time = self._clock()
        self.bytes_sent = self._last_bytes_sent = self._start_bytes = bytes_sent

    @property
    def percent(self) -> int:
        return percent_of(self.bytes_sent, self.image_size)

    @property
    def complete(self) -> bool:
        return self.bytes_sent >= self.image_size

    def update(self, bytes_sent: int) -> ProgressInfo:
        now = self._clock()
        info = ProgressInfo(
            percent=percent_of(bytes_sent, self.image_size),
            speed=rate(bytes_sent - self._last_bytes_sent, now - self._last_sample_time),
            avg_speed=rate(bytes_sent - self._start_bytes, now - self._start_time),
            bytes_sent=bytes_sent,
            image_size=self.image_size,
            part=self.part,
            total_parts=self.total_parts,
        )
        self.bytes_sent = bytes_sent
        self._last_sample_time = now
        self._last_bytes_sent = bytes_sent
        if self._listener is not None and info.percent != self._last_percent:
            self._last_percent = info.percent
            self._listener(info)
        return info

    def add(self, increment: int) -> ProgressInfo:
        return self.update(self.bytes_sent + increment)
