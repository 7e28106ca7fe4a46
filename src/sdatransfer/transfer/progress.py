"""Byte-accurate progress accounting for concurrent transfers.

This module provides:
- ProgressSample: Immutable point-in-time view of a job's progress
- ProgressTracker: Thread-safe confirmed/in-transit byte counters
- ProgressReader: Seekable part payload that reports reads to the tracker

Confirmed bytes only grow when a part is acknowledged, and each part is
counted once no matter how often it was retried. Bytes read by the network
layer are tracked per part as a high-water mark, so a signing pass or a
retried send over the same offsets is not counted twice.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["ProgressSample"], None]

# Window for throughput calculation (seconds)
SPEED_WINDOW = 5.0


@dataclass(frozen=True)
class ProgressSample:
    """Progress of one job at a point in time.

    Attributes:
        timestamp: Monotonic time of the sample.
        confirmed_bytes: Bytes in parts acknowledged so far (non-decreasing).
        total_bytes: Total bytes of the job.
        transferring_bytes: Bytes read for parts not yet acknowledged.
    """

    timestamp: float
    confirmed_bytes: int
    total_bytes: int
    transferring_bytes: int = 0

    @property
    def fraction(self) -> float:
        """Confirmed fraction in [0, 1]."""
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.confirmed_bytes / self.total_bytes)


class ProgressTracker:
    """Thread-safe progress accounting for one transfer job.

    Usage:
        tracker = ProgressTracker(total_bytes=size)
        tracker.subscribe(lambda sample: print(sample.confirmed_bytes))
        tracker.record_confirmed(part_number=1, byte_count=8 * 1024 * 1024)
        tracker.snapshot()
    """

    def __init__(self, total_bytes: int, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the tracker.

        Args:
            total_bytes: Total bytes the job will confirm.
            clock: Monotonic clock (replaceable in tests).
        """
        self._total = total_bytes
        self._clock = clock
        self._lock = threading.RLock()
        self._counted: dict[int, int] = {}
        self._confirmed = 0
        self._read_marks: dict[int, int] = {}
        self._samples: list[ProgressSample] = []
        self._subscribers: list[ProgressCallback] = []

    @property
    def total_bytes(self) -> int:
        """Total bytes of the job."""
        return self._total

    @property
    def confirmed_bytes(self) -> int:
        """Bytes in confirmed parts."""
        with self._lock:
            return self._confirmed

    @property
    def samples(self) -> list[ProgressSample]:
        """Copy of the append-only sample history."""
        with self._lock:
            return list(self._samples)

    def subscribe(self, callback: ProgressCallback) -> None:
        """Register a callback invoked with every new sample."""
        with self._lock:
            self._subscribers.append(callback)

    def is_counted(self, part_number: int) -> bool:
        """Check whether a part has already been confirmed."""
        with self._lock:
            return part_number in self._counted

    def record_confirmed(self, part_number: int, byte_count: int) -> bool:
        """Count a confirmed part exactly once.

        Args:
            part_number: Part that was acknowledged.
            byte_count: Bytes the part contributes to the total.

        Returns:
            True if the part was counted now, False if it already was.
        """
        with self._lock:
            if part_number in self._counted:
                logger.debug(f"Part {part_number} already counted, ignoring")
                return False
            self._counted[part_number] = byte_count
            self._confirmed += byte_count
            self._read_marks.pop(part_number, None)
            self._publish()
            return True

    def record_read(self, part_number: int, offset: int, length: int) -> None:
        """Note that bytes [offset, offset + length) of a part were read.

        Only the first traversal of an offset range moves the counter.
        """
        if length <= 0:
            return
        with self._lock:
            if part_number in self._counted:
                return
            mark = self._read_marks.get(part_number, 0)
            self._read_marks[part_number] = max(mark, offset + length)

    def reset_reads(self, part_number: int) -> None:
        """Forget in-transit bytes of a part that failed for good."""
        with self._lock:
            self._read_marks.pop(part_number, None)

    def snapshot(self) -> ProgressSample:
        """Return the current progress without recording it."""
        with self._lock:
            return self._sample()

    def rate(self) -> int:
        """Confirmed throughput in bytes/sec over the recent window."""
        now = self._clock()
        cutoff = now - SPEED_WINDOW
        with self._lock:
            recent = [s for s in self._samples if s.timestamp >= cutoff]
            if len(recent) < 2:
                return 0
            elapsed = max(recent[-1].timestamp - recent[0].timestamp, 0.1)
            return int((recent[-1].confirmed_bytes - recent[0].confirmed_bytes) / elapsed)

    def _sample(self) -> ProgressSample:
        return ProgressSample(
            timestamp=self._clock(),
            confirmed_bytes=self._confirmed,
            total_bytes=self._total,
            transferring_bytes=sum(self._read_marks.values()),
        )

    def _publish(self) -> None:
        # Called with the lock held so subscribers see samples in order
        sample = self._sample()
        self._samples.append(sample)
        for callback in self._subscribers:
            try:
                callback(sample)
            except Exception:
                logger.exception("Progress subscriber failed")


class ProgressReader(io.RawIOBase):
    """Read-only, seekable view over a part payload.

    Passed as the request body to the storage client. Every read reports
    its offset range to the tracker, which ignores ranges it has already
    seen (signing pass, retried sends).
    """

    def __init__(self, data: bytes, part_number: int, tracker: ProgressTracker | None) -> None:
        super().__init__()
        self._data = memoryview(data)
        self._part_number = part_number
        self._tracker = tracker
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._pos + offset
        elif whence == io.SEEK_END:
            position = len(self._data) + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"Negative seek position {position}")
        self._pos = position
        return self._pos

    def read(self, size: int | None = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._data) - self._pos
        start = min(self._pos, len(self._data))
        chunk = bytes(self._data[start : start + size])
        self._pos = start + len(chunk)
        if self._tracker is not None and chunk:
            self._tracker.record_read(self._part_number, start, len(chunk))
        return chunk

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        chunk = self.read(len(buffer))
        buffer[: len(chunk)] = chunk
        return len(chunk)
