"""Tests for end-to-end transfer jobs."""

import os
import sqlite3
import threading
from pathlib import Path

import pytest

from sdatransfer.core import (
    CIPHER_SEGMENT_SIZE,
    SEGMENT_SIZE,
    CheckpointError,
    ChecksumMismatch,
    ConfigError,
    IntegrityError,
    KeyUnsealError,
    NetworkError,
    PartStatus,
    ServiceError,
    SizeUnknownError,
    TransferCancelled,
    TransferDirection,
    decrypt_bytes,
    generate_keypair,
)
from sdatransfer.transfer import (
    InvalidTransitionError,
    JobConfig,
    JobPhase,
    RetryPolicy,
    TransferOutcome,
    TransferStateStore,
    abandon,
    compute_job_id,
    download,
    upload,
)
from sdatransfer.transfer.orchestrator import VALID_TRANSITIONS, _UploadRunner
from sdatransfer.transfer.storage import MemoryObjectStore, PartData

MiB = 1024 * 1024
SMALL_PART = 2 * CIPHER_SEGMENT_SIZE


class FaultyStore(MemoryObjectStore):
    """Memory store with injectable part failures."""

    def __init__(self) -> None:
        super().__init__()
        # part number -> errors raised by the next put_part calls
        self.put_failures: dict[int, list[Exception]] = {}
        # part numbers whose put_part always fails
        self.broken_parts: set[int] = set()
        # range start -> number of reads reporting a wrong MD5
        self.bad_md5: dict[int, int] = {}
        # range starts whose reads always fail
        self.broken_ranges: set[int] = set()
        # reads longer than this many bytes fail
        self.max_read: int | None = None
        self.put_calls: list[int] = []
        self.get_calls: list[tuple[int, int]] = []

    def put_part(self, key, upload_id, part_number, body, size, md5):
        self.put_calls.append(part_number)
        if part_number in self.broken_parts:
            raise NetworkError(f"connection reset on part {part_number}")
        errors = self.put_failures.get(part_number)
        if errors:
            raise errors.pop(0)
        return super().put_part(key, upload_id, part_number, body, size, md5)

    def get_part(self, key, start, end):
        self.get_calls.append((start, end))
        if start in self.broken_ranges:
            raise NetworkError(f"connection reset at {start}")
        if self.max_read is not None and end - start > self.max_read:
            raise NetworkError(f"connection reset at {start}")
        received = super().get_part(key, start, end)
        if self.bad_md5.get(start, 0) > 0:
            self.bad_md5[start] -= 1
            return PartData(data=received.data, md5="0" * 32)
        return received


class CountingStateStore(TransferStateStore):
    """Checkpoint store that records every confirmed part."""

    def __init__(self, db_path) -> None:
        super().__init__(db_path)
        self.confirm_calls: list[int] = []

    def confirm_part(self, job_id, part_number, etag, plaintext_size):
        self.confirm_calls.append(part_number)
        return super().confirm_part(job_id, part_number, etag, plaintext_size)


class LockedStateStore(TransferStateStore):
    """Checkpoint store whose database is locked once parts start arriving."""

    def confirm_part(self, job_id, part_number, etag, plaintext_size):
        raise sqlite3.OperationalError("database is locked")


class VanishingStateStore(TransferStateStore):
    """Checkpoint store whose jobs are abandoned by another process mid-run."""

    def confirm_part(self, job_id, part_number, etag, plaintext_size):
        self.discard(job_id)
        return super().confirm_part(job_id, part_number, etag, plaintext_size)


@pytest.fixture
def no_wait() -> RetryPolicy:
    return RetryPolicy(sleep=lambda seconds: None)


@pytest.fixture
def reader_keys() -> tuple[bytes, bytes]:
    return generate_keypair()


@pytest.fixture
def sender_keys() -> tuple[bytes, bytes]:
    return generate_keypair()


@pytest.fixture
def store() -> FaultyStore:
    return FaultyStore()


@pytest.fixture
def state_store():
    checkpoints = CountingStateStore(":memory:")
    yield checkpoints
    checkpoints.close()


def _write(path: Path, size: int) -> bytes:
    data = os.urandom(size)
    path.write_bytes(data)
    return data


def _upload_config(reader_keys, sender_keys, retry, **kwargs) -> JobConfig:
    return JobConfig(
        recipient_public_keys=(reader_keys[1],),
        sender_private_key=sender_keys[0],
        retry_policy=retry,
        **kwargs,
    )


class TestPhases:
    """Tests for the job phase machine."""

    def test_terminal_phases(self) -> None:
        """Terminal phases should allow no transitions."""
        for phase in (JobPhase.COMPLETED, JobPhase.ABORTED, JobPhase.RESUMABLE):
            assert VALID_TRANSITIONS[phase] == set()

    def test_every_active_phase_can_exit(self) -> None:
        """Any non-terminal phase may end aborted or resumable."""
        for phase in (JobPhase.INIT, JobPhase.PLANNING, JobPhase.IN_FLIGHT, JobPhase.FINALIZING):
            assert {JobPhase.ABORTED, JobPhase.RESUMABLE} <= VALID_TRANSITIONS[phase]

    def test_invalid_transition(self, store: FaultyStore, no_wait: RetryPolicy) -> None:
        """Skipping a phase should raise InvalidTransitionError."""
        runner = _UploadRunner(Path("x"), "obj", JobConfig(retry_policy=no_wait), store, None)

        with pytest.raises(InvalidTransitionError):
            runner.transition_to(JobPhase.FINALIZING)


class TestJobConfig:
    """Tests for JobConfig validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"part_size": 0}, {"max_part_count": 0}, {"concurrency": 0}],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        """Non-positive limits should raise ConfigError."""
        with pytest.raises(ConfigError):
            JobConfig(**kwargs)

    def test_recipients_become_tuple(self) -> None:
        """Recipient keys should be stored as a tuple."""
        config = JobConfig(recipient_public_keys=[b"a" * 32])

        assert config.recipient_public_keys == (b"a" * 32,)


class TestJobId:
    """Tests for compute_job_id."""

    def test_deterministic(self) -> None:
        """The same invocation should give the same id."""
        args = (TransferDirection.UPLOAD, "/a", "b", 10, 1.5, 100, [b"k1", b"k2"])

        assert compute_job_id(*args) == compute_job_id(*args)
        assert len(compute_job_id(*args)) == 32

    def test_key_order_does_not_matter(self) -> None:
        """Recipient order should not change the id."""
        first = compute_job_id(TransferDirection.UPLOAD, "/a", "b", 10, 1.5, 100, [b"k1", b"k2"])
        second = compute_job_id(TransferDirection.UPLOAD, "/a", "b", 10, 1.5, 100, [b"k2", b"k1"])

        assert first == second

    def test_changes_with_mtime(self) -> None:
        """A modified source should get a new id."""
        first = compute_job_id(TransferDirection.UPLOAD, "/a", "b", 10, 1.5, 100, [b"k"])
        second = compute_job_id(TransferDirection.UPLOAD, "/a", "b", 10, 2.5, 100, [b"k"])

        assert first != second


class TestUpload:
    """Tests for upload()."""

    def test_upload_with_transient_failures(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, sender_keys, no_wait
    ) -> None:
        """A 25 MiB upload should survive two failures of part 3."""
        source = tmp_path / "sample.bam"
        data = _write(source, 25 * MiB)
        store.put_failures[3] = [NetworkError("reset"), NetworkError("reset")]
        samples = []
        config = _upload_config(
            reader_keys, sender_keys, no_wait, part_size=8 * MiB, on_progress=samples.append
        )

        result = upload(source, "sample.bam.c4gh", config, store, state_store)

        assert result.success, result.error
        assert result.outcome == TransferOutcome.COMPLETE
        assert result.phase == JobPhase.COMPLETED
        assert result.bytes_transferred == 25 * MiB
        assert samples[-1].confirmed_bytes == 25 * MiB
        assert sorted(state_store.confirm_calls) == [1, 2, 3, 4]
        assert store.put_calls.count(3) == 3
        assert decrypt_bytes(store.objects["sample.bam.c4gh"], reader_keys[0]) == data
        # Completed jobs leave no checkpoint
        assert state_store.load(result.job_id) is None

    def test_progress_never_decreases(
        self, tmp_path: Path, store: FaultyStore, reader_keys, sender_keys, no_wait
    ) -> None:
        """Progress samples should be non-decreasing and end at the file size."""
        source = tmp_path / "data.bin"
        _write(source, 7 * SEGMENT_SIZE + 5)
        samples = []
        config = _upload_config(
            reader_keys, sender_keys, no_wait, part_size=SMALL_PART, on_progress=samples.append
        )

        assert upload(source, "data.c4gh", config, store).success

        counts = [s.confirmed_bytes for s in samples]
        assert counts == sorted(counts)
        assert counts[-1] == 7 * SEGMENT_SIZE + 5

    def test_empty_file(
        self, tmp_path: Path, store: FaultyStore, reader_keys, sender_keys, no_wait
    ) -> None:
        """An empty file should upload as a single-part object."""
        source = tmp_path / "empty"
        source.write_bytes(b"")
        config = _upload_config(reader_keys, sender_keys, no_wait)

        result = upload(source, "empty.c4gh", config, store)

        assert result.success
        assert decrypt_bytes(store.objects["empty.c4gh"], reader_keys[0]) == b""

    def test_multiple_recipients(
        self, tmp_path: Path, store: FaultyStore, sender_keys, no_wait
    ) -> None:
        """Every recipient should be able to decrypt the object."""
        source = tmp_path / "data.bin"
        data = _write(source, 3 * SEGMENT_SIZE)
        readers = [generate_keypair() for _ in range(3)]
        config = JobConfig(
            recipient_public_keys=tuple(public for _, public in readers),
            sender_private_key=sender_keys[0],
            retry_policy=no_wait,
            part_size=SMALL_PART,
        )

        assert upload(source, "data.c4gh", config, store).success
        for private, _ in readers:
            assert decrypt_bytes(store.objects["data.c4gh"], private) == data

    def test_resume_after_interruption(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, sender_keys, no_wait
    ) -> None:
        """A resumed upload should only send the missing parts."""
        source = tmp_path / "data.bin"
        data = _write(source, 7 * SEGMENT_SIZE - 10)
        store.broken_parts.add(4)
        config = _upload_config(
            reader_keys, sender_keys, no_wait, part_size=SMALL_PART, concurrency=1
        )

        first = upload(source, "data.c4gh", config, store, state_store)

        assert first.outcome == TransferOutcome.RESUMABLE
        assert first.resume_token == first.job_id
        assert first.last_confirmed_part == 3
        assert isinstance(first.error, NetworkError)
        assert first.part_status == {
            1: PartStatus.CONFIRMED,
            2: PartStatus.CONFIRMED,
            3: PartStatus.CONFIRMED,
            4: PartStatus.FAILED,
        }
        state = state_store.load(first.job_id)
        assert state is not None
        assert state.last_confirmed_part == 3
        assert state.committed_offset == 6 * SEGMENT_SIZE
        assert "data.c4gh" not in store.objects

        store.broken_parts.clear()
        store.put_calls.clear()
        second = upload(source, "data.c4gh", config, store, state_store)

        assert second.success, second.error
        assert second.job_id == first.job_id
        assert store.put_calls == [4]
        assert second.bytes_transferred == len(data)
        assert decrypt_bytes(store.objects["data.c4gh"], reader_keys[0]) == data
        assert state_store.load(first.job_id) is None

    def test_resume_without_sender_key_restarts(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, no_wait
    ) -> None:
        """Without a sender key the data key cannot be recovered, so the upload restarts."""
        source = tmp_path / "data.bin"
        data = _write(source, 5 * SEGMENT_SIZE)
        store.broken_parts.add(3)
        config = JobConfig(
            recipient_public_keys=(reader_keys[1],),
            retry_policy=no_wait,
            part_size=SMALL_PART,
            concurrency=1,
        )

        first = upload(source, "data.c4gh", config, store, state_store)
        assert first.outcome == TransferOutcome.RESUMABLE

        store.broken_parts.clear()
        store.put_calls.clear()
        second = upload(source, "data.c4gh", config, store, state_store)

        assert second.success
        assert sorted(store.put_calls) == [1, 2, 3]
        assert len(store.aborted) == 1
        assert decrypt_bytes(store.objects["data.c4gh"], reader_keys[0]) == data

    def test_fatal_error_aborts(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, sender_keys, no_wait
    ) -> None:
        """A repeated checksum mismatch should abort the multipart upload."""
        source = tmp_path / "data.bin"
        _write(source, 5 * SEGMENT_SIZE)
        store.put_failures[2] = [ChecksumMismatch("bad digest"), ChecksumMismatch("bad digest")]
        config = _upload_config(reader_keys, sender_keys, no_wait, part_size=SMALL_PART)

        result = upload(source, "data.c4gh", config, store, state_store)

        assert result.outcome == TransferOutcome.FAILED
        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, ChecksumMismatch)
        assert len(store.aborted) == 1
        assert store.uploads == {}
        assert state_store.list_jobs() == []

    @pytest.mark.parametrize("store_class", [LockedStateStore, VanishingStateStore])
    def test_checkpoint_failure_aborts(
        self, tmp_path: Path, store: FaultyStore, reader_keys, sender_keys, no_wait, store_class
    ) -> None:
        """A failing checkpoint store should abort the upload instead of raising."""
        source = tmp_path / "data.bin"
        _write(source, 5 * SEGMENT_SIZE)
        config = _upload_config(reader_keys, sender_keys, no_wait, part_size=SMALL_PART)
        checkpoints = store_class(":memory:")
        try:
            result = upload(source, "data.c4gh", config, store, checkpoints)

            assert result.phase == JobPhase.ABORTED
            assert isinstance(result.error, CheckpointError)
            assert len(store.aborted) == 1
            assert store.uploads == {}
            assert "data.c4gh" not in store.objects
            assert checkpoints.list_jobs() == []
        finally:
            checkpoints.close()

    def test_cancel_before_start(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, sender_keys, no_wait
    ) -> None:
        """A cancelled job should abort its multipart upload and keep no checkpoint."""
        source = tmp_path / "data.bin"
        _write(source, 3 * SEGMENT_SIZE)
        cancel = threading.Event()
        cancel.set()
        config = _upload_config(reader_keys, sender_keys, no_wait, cancel_event=cancel)

        result = upload(source, "data.c4gh", config, store, state_store)

        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, TransferCancelled)
        assert store.put_calls == []
        assert len(store.aborted) == 1
        assert state_store.list_jobs() == []

    def test_cancel_in_flight(
        self, tmp_path: Path, store: FaultyStore, reader_keys, sender_keys, no_wait
    ) -> None:
        """Cancelling after the first confirmed part should stop the job."""
        source = tmp_path / "data.bin"
        _write(source, 9 * SEGMENT_SIZE)
        cancel = threading.Event()
        config = _upload_config(
            reader_keys,
            sender_keys,
            no_wait,
            part_size=SMALL_PART,
            concurrency=1,
            cancel_event=cancel,
            on_progress=lambda sample: cancel.set(),
        )

        result = upload(source, "data.c4gh", config, store)

        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, TransferCancelled)
        assert "data.c4gh" not in store.objects
        assert len(store.aborted) == 1

    def test_standard_input_rejected(
        self, store: FaultyStore, reader_keys, sender_keys, no_wait
    ) -> None:
        """Uploading from a stream of unknown size should fail up front."""
        config = _upload_config(reader_keys, sender_keys, no_wait)

        result = upload("-", "data.c4gh", config, store)

        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, SizeUnknownError)
        assert store.uploads == {}

    def test_missing_file(self, tmp_path: Path, store: FaultyStore, reader_keys, no_wait) -> None:
        """A missing source should fail with ConfigError."""
        config = JobConfig(recipient_public_keys=(reader_keys[1],), retry_policy=no_wait)

        result = upload(tmp_path / "missing", "data.c4gh", config, store)

        assert isinstance(result.error, ConfigError)
        assert result.job_id is None

    def test_no_recipients(self, tmp_path: Path, store: FaultyStore, no_wait) -> None:
        """An upload without recipients should fail with ConfigError."""
        source = tmp_path / "data.bin"
        _write(source, 10)

        result = upload(source, "data.c4gh", JobConfig(retry_policy=no_wait), store)

        assert isinstance(result.error, ConfigError)


@pytest.fixture
def uploaded(tmp_path: Path, store: FaultyStore, reader_keys, sender_keys, no_wait) -> bytes:
    """Upload a five block file as data.c4gh and return its plaintext."""
    source = tmp_path / "upload.bin"
    data = _write(source, 5 * SEGMENT_SIZE - 100)
    config = _upload_config(reader_keys, sender_keys, no_wait, part_size=SMALL_PART)
    assert upload(source, "data.c4gh", config, store).success
    return data


def _download_config(reader_keys, retry, **kwargs) -> JobConfig:
    return JobConfig(private_key=reader_keys[0], retry_policy=retry, part_size=SMALL_PART, **kwargs)


class TestDownload:
    """Tests for download()."""

    def test_round_trip(
        self, tmp_path: Path, store: FaultyStore, state_store, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """A downloaded file should equal the uploaded plaintext."""
        target = tmp_path / "out" / "data.bin"

        result = download("data.c4gh", target, _download_config(reader_keys, no_wait), store, state_store)

        assert result.success, result.error
        assert target.read_bytes() == uploaded
        assert result.bytes_transferred == len(uploaded)
        assert sorted(state_store.confirm_calls) == [1, 2, 3]
        assert state_store.list_jobs() == []

    def test_checksum_failure_keeps_verified_prefix(
        self, tmp_path: Path, store: FaultyStore, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """A part whose MD5 mismatches twice should abort with only verified bytes written."""
        target = tmp_path / "data.bin"
        header_length = len(store.objects["data.c4gh"]) - (len(uploaded) + 5 * 28)
        store.bad_md5[header_length + SMALL_PART] = 2

        result = download(
            "data.c4gh", target, _download_config(reader_keys, no_wait, concurrency=1), store
        )

        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, ChecksumMismatch)
        assert result.last_confirmed_part == 1
        assert target.read_bytes() == uploaded[: 2 * SEGMENT_SIZE]

    def test_tampered_block_not_written(
        self, tmp_path: Path, store: FaultyStore, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """A block that fails authentication must never reach the file."""
        target = tmp_path / "data.bin"
        obj = bytearray(store.objects["data.c4gh"])
        obj[-40] ^= 0x01
        store.objects["data.c4gh"] = bytes(obj)

        result = download("data.c4gh", target, _download_config(reader_keys, no_wait), store)

        assert result.phase == JobPhase.ABORTED
        assert isinstance(result.error, IntegrityError)
        assert target.read_bytes() == uploaded[: 4 * SEGMENT_SIZE]

    def test_resume_after_interruption(
        self, tmp_path: Path, store: FaultyStore, state_store, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """A resumed download should not fetch the parts already written."""
        target = tmp_path / "data.bin"
        header_length = len(store.objects["data.c4gh"]) - (len(uploaded) + 5 * 28)
        part3_start = header_length + 2 * SMALL_PART
        store.broken_ranges.add(part3_start)
        config = _download_config(reader_keys, no_wait, concurrency=1)

        first = download("data.c4gh", target, config, store, state_store)

        assert first.outcome == TransferOutcome.RESUMABLE
        assert first.last_confirmed_part == 2
        assert target.read_bytes() == uploaded[: 4 * SEGMENT_SIZE]

        store.broken_ranges.clear()
        store.get_calls.clear()
        second = download("data.c4gh", target, config, store, state_store)

        assert second.success, second.error
        assert target.read_bytes() == uploaded
        part_reads = [call for call in store.get_calls if call[1] - call[0] > header_length]
        assert part_reads == [(part3_start, len(store.objects["data.c4gh"]))]

    def test_resume_before_first_part(
        self, tmp_path: Path, store: FaultyStore, state_store, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """A download interrupted before any part was written should resume into its own file."""
        target = tmp_path / "data.bin"
        header_length = len(store.objects["data.c4gh"]) - (len(uploaded) + 5 * 28)
        store.max_read = header_length
        config = _download_config(reader_keys, no_wait, concurrency=1)

        first = download("data.c4gh", target, config, store, state_store)

        assert first.outcome == TransferOutcome.RESUMABLE
        assert first.last_confirmed_part == 0
        assert target.exists()
        assert state_store.load(first.job_id) is not None

        store.max_read = None
        store.get_calls.clear()
        second = download("data.c4gh", target, config, store, state_store)

        assert second.success, second.error
        assert second.job_id == first.job_id
        assert target.read_bytes() == uploaded
        part_reads = [call for call in store.get_calls if call[1] - call[0] > header_length]
        assert len(part_reads) == 3
        assert state_store.load(first.job_id) is None

    def test_existing_file_not_overwritten(
        self, tmp_path: Path, store: FaultyStore, uploaded: bytes, reader_keys, no_wait
    ) -> None:
        """An existing local file should be kept unless overwrite is set."""
        target = tmp_path / "data.bin"
        target.write_bytes(b"keep me")

        result = download("data.c4gh", target, _download_config(reader_keys, no_wait), store)

        assert isinstance(result.error, ConfigError)
        assert target.read_bytes() == b"keep me"

        result = download(
            "data.c4gh", target, _download_config(reader_keys, no_wait, overwrite=True), store
        )
        assert result.success
        assert target.read_bytes() == uploaded

    def test_wrong_key(
        self, tmp_path: Path, store: FaultyStore, uploaded: bytes, no_wait
    ) -> None:
        """A key that is not a recipient should fail before anything is written."""
        target = tmp_path / "data.bin"
        stranger = generate_keypair()

        result = download("data.c4gh", target, _download_config(stranger, no_wait), store)

        assert isinstance(result.error, KeyUnsealError)
        assert not target.exists()

    def test_missing_object(self, tmp_path: Path, store: FaultyStore, reader_keys, no_wait) -> None:
        """A missing object should abort the download."""
        result = download(
            "missing.c4gh", tmp_path / "out.bin", _download_config(reader_keys, no_wait), store
        )

        assert result.phase == JobPhase.ABORTED
        assert not (tmp_path / "out.bin").exists()


class TestAbandon:
    """Tests for abandon()."""

    def test_abandon_interrupted_upload(
        self, tmp_path: Path, store: FaultyStore, state_store, reader_keys, sender_keys, no_wait
    ) -> None:
        """Abandoning should abort the upload and drop the checkpoint."""
        source = tmp_path / "data.bin"
        _write(source, 5 * SEGMENT_SIZE)
        store.broken_parts.add(3)
        config = _upload_config(
            reader_keys, sender_keys, no_wait, part_size=SMALL_PART, concurrency=1
        )
        result = upload(source, "data.c4gh", config, store, state_store)
        upload_id = state_store.load(result.job_id).upload_id

        assert abandon(result.job_id, store, state_store) is True
        assert upload_id in store.aborted
        assert state_store.load(result.job_id) is None

    def test_abandon_unknown_job(self, store: FaultyStore, state_store) -> None:
        """Abandoning an unknown job should return False."""
        assert abandon("nope", store, state_store) is False

    def test_abandon_gone_upload(self, store: FaultyStore, state_store) -> None:
        """An upload the service already dropped should not be an error."""
        state_store.begin(
            "job-1", TransferDirection.UPLOAD, "/a", "obj", "fp", 1, 10, upload_id="gone"
        )

        class GoneStore(FaultyStore):
            def abort_multipart(self, key, upload_id):
                raise ServiceError("gone", code="NoSuchUpload", status=404)

        assert abandon("job-1", GoneStore(), state_store) is True
        assert state_store.load("job-1") is None
