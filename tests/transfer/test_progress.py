"""Tests for progress accounting."""

import io
import threading

from sdatransfer.transfer.progress import ProgressReader, ProgressSample, ProgressTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_confirmed_counted_once(self) -> None:
        """A part confirmed twice should only be counted once."""
        tracker = ProgressTracker(total_bytes=300)

        assert tracker.record_confirmed(1, 100) is True
        assert tracker.record_confirmed(1, 100) is False
        assert tracker.confirmed_bytes == 100
        assert tracker.is_counted(1)
        assert not tracker.is_counted(2)

    def test_samples_non_decreasing(self) -> None:
        """Every published sample should have at least the previous count."""
        tracker = ProgressTracker(total_bytes=600)
        for part in (2, 1, 3, 2):
            tracker.record_confirmed(part, 200)

        counts = [s.confirmed_bytes for s in tracker.samples]
        assert counts == sorted(counts)
        assert counts[-1] == 600
        assert tracker.samples[-1].fraction == 1.0

    def test_subscribers_receive_samples(self) -> None:
        """Subscribers should see one sample per newly counted part."""
        tracker = ProgressTracker(total_bytes=200)
        received: list[ProgressSample] = []
        tracker.subscribe(received.append)

        tracker.record_confirmed(1, 100)
        tracker.record_confirmed(1, 100)
        tracker.record_confirmed(2, 100)

        assert [s.confirmed_bytes for s in received] == [100, 200]

    def test_failing_subscriber_does_not_break_tracking(self) -> None:
        """An exception in a subscriber should not stop accounting."""
        tracker = ProgressTracker(total_bytes=100)

        def broken(sample: ProgressSample) -> None:
            raise RuntimeError("display gone")

        tracker.subscribe(broken)
        assert tracker.record_confirmed(1, 100)
        assert tracker.confirmed_bytes == 100

    def test_reads_use_high_water_mark(self) -> None:
        """Re-reading the same range should not add in-transit bytes."""
        tracker = ProgressTracker(total_bytes=1000)
        tracker.record_read(1, 0, 400)
        tracker.record_read(1, 0, 400)
        tracker.record_read(1, 200, 300)

        assert tracker.snapshot().transferring_bytes == 500

    def test_confirm_clears_in_transit(self) -> None:
        """Confirming a part should move its bytes out of in-transit."""
        tracker = ProgressTracker(total_bytes=1000)
        tracker.record_read(1, 0, 500)
        tracker.record_confirmed(1, 500)
        tracker.record_read(1, 0, 500)

        sample = tracker.snapshot()
        assert sample.transferring_bytes == 0
        assert sample.confirmed_bytes == 500

    def test_reset_reads(self) -> None:
        """A failed part should drop its in-transit bytes."""
        tracker = ProgressTracker(total_bytes=1000)
        tracker.record_read(2, 0, 300)
        tracker.reset_reads(2)

        assert tracker.snapshot().transferring_bytes == 0

    def test_concurrent_confirmation(self) -> None:
        """Concurrent confirmations should add up exactly."""
        tracker = ProgressTracker(total_bytes=100 * 10)

        def confirm(start: int) -> None:
            for part in range(start, 101, 2):
                tracker.record_confirmed(part, 10)
                tracker.record_confirmed(part, 10)

        threads = [threading.Thread(target=confirm, args=(s,)) for s in (1, 2, 1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.confirmed_bytes == 1000
        counts = [s.confirmed_bytes for s in tracker.samples]
        assert counts == sorted(counts)
        assert len(counts) == 100

    def test_rate(self) -> None:
        """Rate should reflect confirmed bytes over the recent window."""
        clock = FakeClock()
        tracker = ProgressTracker(total_bytes=1000, clock=clock)
        tracker.record_confirmed(1, 100)
        clock.now += 2.0
        tracker.record_confirmed(2, 300)

        assert tracker.rate() == 150

    def test_empty_job_fraction(self) -> None:
        """A job with nothing to transfer is complete."""
        assert ProgressTracker(total_bytes=0).snapshot().fraction == 1.0


class TestProgressReader:
    """Tests for ProgressReader."""

    def test_reads_report_to_tracker(self) -> None:
        """Reads should advance the part's in-transit mark."""
        tracker = ProgressTracker(total_bytes=10)
        reader = ProgressReader(b"0123456789", part_number=1, tracker=tracker)

        assert reader.read(4) == b"0123"
        assert reader.read() == b"456789"
        assert reader.read() == b""
        assert tracker.snapshot().transferring_bytes == 10

    def test_rewind_does_not_double_count(self) -> None:
        """A signing pass followed by the send should count the bytes once."""
        tracker = ProgressTracker(total_bytes=10)
        reader = ProgressReader(b"0123456789", part_number=1, tracker=tracker)

        reader.read()
        reader.seek(0)
        reader.read()

        assert tracker.snapshot().transferring_bytes == 10

    def test_seek_and_length(self) -> None:
        """The reader should behave like a seekable file."""
        reader = ProgressReader(b"abcdef", part_number=1, tracker=None)

        assert len(reader) == 6
        assert reader.seek(-2, io.SEEK_END) == 4
        assert reader.read() == b"ef"
        assert reader.seek(-3, io.SEEK_CUR) == 3
        assert reader.tell() == 3

    def test_readinto(self) -> None:
        """readinto should fill the buffer from the current position."""
        reader = ProgressReader(b"abcdef", part_number=1, tracker=None)
        buffer = bytearray(4)

        assert reader.readinto(buffer) == 4
        assert bytes(buffer) == b"abcd"
