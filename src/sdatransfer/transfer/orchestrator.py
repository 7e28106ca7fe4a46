"""End-to-end transfer jobs.

States:
    INIT -> PLANNING -> IN_FLIGHT -> FINALIZING -> COMPLETED
    any non-terminal state -> ABORTED | RESUMABLE

An upload encrypts the local file block by block, slices the encrypted
stream into planned parts and hands them to the worker pool; a download
fetches parts concurrently, puts them back in order and decrypts them into
the local file. The plaintext file is read or written by this thread only;
workers only ever see ciphertext parts.

All state transitions are validated.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import sqlite3
import stat
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from sdatransfer.core.config import MIN_PART_SIZE_HINT_MB
from sdatransfer.core.crypto import (
    HEADER_PREFIX_SIZE,
    BlockDecoder,
    block_count,
    decrypted_size,
    encrypted_size,
    generate_data_key,
    header_size,
    open_encoder,
    packet_count,
    public_key_from_private,
    read_header,
    seal_header,
)
from sdatransfer.core.errors import (
    CheckpointError,
    ConfigError,
    IntegrityError,
    KeyUnsealError,
    NetworkError,
    ServiceError,
    SizeUnknownError,
    TransferCancelled,
    TransferError,
)
from sdatransfer.core.planning import S3_MAX_PARTS, PartRange, plan_fingerprint, plan_parts
from sdatransfer.core.types import PartStatus, TransferDirection
from sdatransfer.transfer.progress import ProgressTracker
from sdatransfer.transfer.retry import RetryPolicy, is_retryable
from sdatransfer.transfer.storage import normalize_etag
from sdatransfer.transfer.workers import (
    DEFAULT_WORKERS,
    DownloadPartWorker,
    PartResult,
    PartTask,
    PartWorker,
    UploadPartWorker,
    WorkerPool,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from sdatransfer.core.config import StorageConfig
    from sdatransfer.transfer.progress import ProgressCallback
    from sdatransfer.transfer.state import TransferState, TransferStateStore
    from sdatransfer.transfer.storage import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = MIN_PART_SIZE_HINT_MB * 1024 * 1024

# Seconds between cancellation checks while waiting for parts
POLL_INTERVAL = 0.25


class JobPhase(IntEnum):
    """Phase of a transfer job."""

    INIT = auto()
    PLANNING = auto()
    IN_FLIGHT = auto()
    FINALIZING = auto()
    COMPLETED = auto()
    ABORTED = auto()
    RESUMABLE = auto()


_EXITS = {JobPhase.ABORTED, JobPhase.RESUMABLE}

# Valid state transitions
VALID_TRANSITIONS: dict[JobPhase, set[JobPhase]] = {
    JobPhase.INIT: {JobPhase.PLANNING} | _EXITS,
    JobPhase.PLANNING: {JobPhase.IN_FLIGHT} | _EXITS,
    JobPhase.IN_FLIGHT: {JobPhase.FINALIZING} | _EXITS,
    JobPhase.FINALIZING: {JobPhase.COMPLETED} | _EXITS,
    JobPhase.COMPLETED: set(),  # Terminal
    JobPhase.ABORTED: set(),  # Terminal
    JobPhase.RESUMABLE: set(),  # Terminal for this run
}


class InvalidTransitionError(Exception):
    """Raised when attempting invalid state transition."""

    pass


class TransferOutcome(str, Enum):
    """What a caller should do next with a job."""

    COMPLETE = "complete"
    RESUMABLE = "resumable"
    FAILED = "failed"


@dataclass(frozen=True)
class JobConfig:
    """Parameters of a transfer job, passed explicitly to every call.

    Attributes:
        recipient_public_keys: Readers the upload is encrypted for.
        private_key: Reader key used to decrypt downloads.
        sender_private_key: Writer key for uploads; also seals the data key
            in the checkpoint so an interrupted upload can resume.
        part_size: Requested part size in bytes (rounded up to whole blocks).
        max_part_count: Maximum number of parts per object.
        concurrency: Number of parts transferred in parallel.
        retry_policy: Backoff policy shared by all workers.
        verify_checksums: Compare service checksums with the bytes moved.
        overwrite: Allow a download to replace an existing local file.
        resume: Continue from a matching checkpoint when one exists.
        cancel_event: Set from another thread to cancel the job.
        on_progress: Callback receiving every progress sample.
    """

    recipient_public_keys: tuple[bytes, ...] = ()
    private_key: bytes | None = field(default=None, repr=False)
    sender_private_key: bytes | None = field(default=None, repr=False)
    part_size: int = DEFAULT_PART_SIZE
    max_part_count: int = S3_MAX_PARTS
    concurrency: int = DEFAULT_WORKERS
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    verify_checksums: bool = True
    overwrite: bool = False
    resume: bool = True
    cancel_event: threading.Event | None = field(default=None, compare=False)
    on_progress: ProgressCallback | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        """Validate fields."""
        object.__setattr__(self, "recipient_public_keys", tuple(self.recipient_public_keys))
        if self.part_size <= 0:
            raise ConfigError(f"Part size must be positive, got {self.part_size}")
        if self.max_part_count <= 0:
            raise ConfigError(f"Part count limit must be positive, got {self.max_part_count}")
        if self.concurrency < 1:
            raise ConfigError(f"Concurrency must be at least 1, got {self.concurrency}")

    @classmethod
    def for_storage(cls, storage: StorageConfig, **kwargs: object) -> JobConfig:
        """Create a JobConfig whose part size follows the storage hint."""
        kwargs.setdefault("part_size", storage.part_size)
        return cls(**kwargs)  # type: ignore[arg-type]


@dataclass(frozen=True)
class TransferJob:
    """An immutable, planned transfer.

    Attributes:
        job_id: Deterministic identifier; the same invocation yields the same id.
        direction: Upload or download.
        source: Local path (upload) or remote key (download).
        destination: Remote key (upload) or local path (download).
        total_size: Plaintext size in bytes.
        encrypted_size: Size of the encrypted object in bytes.
        header_length: Size of the container header.
        parts: The part plan.
    """

    job_id: str
    direction: TransferDirection
    source: str
    destination: str
    total_size: int
    encrypted_size: int
    header_length: int
    parts: tuple[PartRange, ...]

    @property
    def total_blocks(self) -> int:
        """Number of blocks in the encrypted object."""
        return block_count(self.total_size)

    @property
    def fingerprint(self) -> str:
        """Digest of the part plan."""
        return plan_fingerprint(self.parts)

    def plaintext_size(self, part: PartRange) -> int:
        """Plaintext bytes carried by a part."""
        return part.plaintext_size(self.total_size)


@dataclass
class TransferResult:
    """Final result of one run of a job.

    Attributes:
        success: Whether the job completed.
        phase: Terminal phase of the run.
        bytes_transferred: Plaintext bytes confirmed, resumed parts included.
        job_id: Job identifier (None if the job failed before planning).
        resume_token: Identifier to resume with, for resumable runs.
        error: The terminal error, if any.
        last_confirmed_part: Last part of the contiguous confirmed prefix.
        part_status: Completion state of every planned part.
    """

    success: bool
    phase: JobPhase
    bytes_transferred: int = 0
    job_id: str | None = None
    resume_token: str | None = None
    error: TransferError | None = None
    last_confirmed_part: int = 0
    part_status: dict[int, PartStatus] = field(default_factory=dict)

    @property
    def outcome(self) -> TransferOutcome:
        """Classify the result for the caller."""
        if self.phase == JobPhase.COMPLETED:
            return TransferOutcome.COMPLETE
        if self.phase == JobPhase.RESUMABLE:
            return TransferOutcome.RESUMABLE
        return TransferOutcome.FAILED


def compute_job_id(
    direction: TransferDirection,
    source: str,
    destination: str,
    size: int,
    mtime: float,
    part_size: int,
    key_material: Iterable[bytes],
) -> str:
    """Derive a job identifier from everything that shapes the transfer."""
    hasher = hashlib.sha256()
    for value in (direction.value, source, destination, str(size), repr(mtime), str(part_size)):
        hasher.update(value.encode("utf-8") + b"\0")
    for key in sorted(key_material):
        hasher.update(hashlib.sha256(key).digest())
    return hasher.hexdigest()[:32]


def _severity(error: TransferError) -> int:
    if isinstance(error, TransferCancelled):
        return 0
    if is_retryable(error):
        return 1
    return 2


def _merge_errors(current: TransferError | None, new: TransferError | None) -> TransferError | None:
    """Keep the most severe error; the earlier one wins a tie."""
    if current is None:
        return new
    if new is None or _severity(new) <= _severity(current):
        return current
    return new


def _as_transfer_error(error: BaseException | None) -> TransferError:
    if isinstance(error, TransferError):
        return error
    return TransferError(f"Unexpected error: {error}")


class _JobRunner:
    """Shared phase machine and dispatch loop for one run of a job."""

    direction: TransferDirection

    def __init__(
        self,
        job_config: JobConfig,
        store: ObjectStore,
        state_store: TransferStateStore | None,
    ) -> None:
        self.config = job_config
        self.store = store
        self.state_store = state_store
        self.phase = JobPhase.INIT
        self.job: TransferJob | None = None
        self.tracker: ProgressTracker | None = None
        # part number -> ETag of parts confirmed so far
        self.confirmed: dict[int, str] = {}
        self.part_status: dict[int, PartStatus] = {}
        self.checkpointed = False
        self._cancel = job_config.cancel_event or threading.Event()
        # Tells workers to stop retrying once the job is ending
        self._stop = threading.Event()

    @property
    def retry(self) -> RetryPolicy:
        return self.config.retry_policy

    def transition_to(self, new_phase: JobPhase) -> None:
        """Transition to a new phase with validation."""
        if new_phase not in VALID_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Cannot transition from {self.phase.name} to {new_phase.name}"
            )
        logger.debug(f"{self.direction.value} {self._short_id()}: {self.phase.name} -> {new_phase.name}")
        self.phase = new_phase

    def run(self) -> TransferResult:
        """Run the job to a terminal phase."""
        try:
            try:
                self.transition_to(JobPhase.PLANNING)
                self.plan()
                self._check_cancelled()
                self.transition_to(JobPhase.IN_FLIGHT)
                self._dispatch()
                self.transition_to(JobPhase.FINALIZING)
                self.finalize()
            except TransferError as e:
                return self._fail(e)
            except OSError as e:
                return self._fail(TransferError(f"Local I/O error: {e}"))
            except (sqlite3.Error, KeyError) as e:
                # KeyError: the checkpoint vanished under us (abandoned elsewhere)
                return self._fail(CheckpointError(f"Checkpoint store error: {e}"))
        finally:
            self.close()

        self.transition_to(JobPhase.COMPLETED)
        if self.state_store is not None and self.job is not None:
            self.state_store.discard(self.job.job_id)
        logger.info(f"{self.direction.value.capitalize()} {self._short_id()} completed")
        return self._result(success=True)

    # === Hooks ===

    def plan(self) -> None:
        raise NotImplementedError

    def tasks(self) -> Iterator[PartTask]:
        raise NotImplementedError

    def make_worker(self) -> PartWorker:
        raise NotImplementedError

    def accept(self, result: PartResult) -> None:
        """Record a successful part (called from this thread only)."""
        raise NotImplementedError

    def occupancy(self, outstanding: int) -> int:
        """Number of part payloads currently held in memory."""
        return outstanding

    def finalize(self) -> None:
        raise NotImplementedError

    def cleanup(self) -> None:
        """Release remote and local resources of an aborted job."""

    def close(self) -> None:
        """Release local resources (called on every exit path)."""

    # === Shared machinery ===

    def _short_id(self) -> str:
        return self.job.job_id[:12] if self.job else "(unplanned)"

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TransferCancelled("Transfer cancelled")

    def _begin_tracking(self, total: int) -> None:
        assert self.job is not None
        self.part_status = {part.number: PartStatus.PENDING for part in self.job.parts}
        self.tracker = ProgressTracker(total)
        if self.config.on_progress is not None:
            self.tracker.subscribe(self.config.on_progress)

    def _load_checkpoint(self) -> TransferState | None:
        """Return a checkpoint usable for this job, discarding stale ones."""
        if self.state_store is None or self.job is None:
            return None
        state = self.state_store.load(self.job.job_id)
        if state is None:
            return None
        if not self.config.resume:
            logger.info(f"Discarding checkpoint of {self._short_id()} (resume disabled)")
        elif state.direction != self.direction or state.plan_fingerprint != self.job.fingerprint:
            logger.warning(f"Checkpoint of {self._short_id()} does not match the plan, restarting")
        else:
            return state
        self.discard_stale(state)
        return None

    def discard_stale(self, state: TransferState) -> None:
        if self.state_store is not None:
            self.state_store.discard(state.job_id)

    def _confirm(self, part: PartRange, etag: str, plaintext_size: int) -> None:
        """Single mutation point for confirmed parts."""
        assert self.job is not None and self.tracker is not None
        if self.state_store is not None and self.checkpointed:
            self.state_store.confirm_part(self.job.job_id, part.number, etag, plaintext_size)
        self.confirmed[part.number] = etag
        self.part_status[part.number] = PartStatus.CONFIRMED
        self.tracker.record_confirmed(part.number, plaintext_size)

    def _dispatch(self) -> None:
        """Feed planned parts to the pool and collect their results."""
        pool = WorkerPool(self.make_worker(), self.config.concurrency, self._stop)
        limit = 2 * self.config.concurrency
        outstanding = 0
        error: TransferError | None = None

        def collect() -> None:
            nonlocal outstanding, error
            result = pool.next_result(timeout=POLL_INTERVAL)
            if result is None:
                if self._cancel.is_set() and error is None:
                    error = TransferCancelled("Transfer cancelled")
                    self._stop.set()
                    outstanding -= self._requeue(pool)
                return
            outstanding -= 1
            error = _merge_errors(error, self._handle(result))
            if error is not None:
                self._stop.set()
                outstanding -= self._requeue(pool)

        pool.start()
        tasks = self.tasks()
        try:
            while True:
                while error is None and outstanding and self.occupancy(outstanding) >= limit:
                    collect()
                if error is None and self._cancel.is_set():
                    error = TransferCancelled("Transfer cancelled")
                if error is not None:
                    break
                task = next(tasks, None)
                if task is None:
                    break
                pool.submit(task)
                self.part_status[task.part.number] = PartStatus.IN_FLIGHT
                outstanding += 1

            while outstanding > 0:
                collect()
            if error is None and self._cancel.is_set():
                error = TransferCancelled("Transfer cancelled")
        finally:
            tasks.close()
            self._stop.set()
            pool.stop()

        if error is not None:
            raise error

    def _requeue(self, pool: WorkerPool) -> int:
        """Take back queued tasks that no worker started."""
        removed = pool.cancel_pending()
        for task in removed:
            self.part_status[task.part.number] = PartStatus.PENDING
        return len(removed)

    def _handle(self, result: PartResult) -> TransferError | None:
        if not result.success:
            self.part_status[result.part_number] = (
                PartStatus.PENDING if result.cancelled else PartStatus.FAILED
            )
            return _as_transfer_error(result.error)
        try:
            self.accept(result)
        except TransferError as e:
            return e
        except OSError as e:
            return TransferError(f"Local I/O error: {e}")
        return None

    def _fail(self, error: TransferError) -> TransferResult:
        cancelled = isinstance(error, TransferCancelled)
        resumable = is_retryable(error) and not cancelled
        terminal = JobPhase.RESUMABLE if resumable else JobPhase.ABORTED
        self._stop.set()
        name = f"{self.direction.value.capitalize()} {self._short_id()}"
        if resumable and self.checkpointed:
            logger.error(
                f"{name} interrupted, resumable from part {self._last_confirmed() + 1}: {error}"
            )
        else:
            # Nothing a later run could pick up: release everything now
            self.cleanup()
            if self.state_store is not None and self.job is not None:
                try:
                    self.state_store.discard(self.job.job_id)
                except sqlite3.Error as e:
                    logger.warning(f"{name}: could not discard checkpoint: {e}")
            if cancelled:
                logger.warning(f"{name} cancelled")
            elif resumable:
                logger.error(f"{name} failed, retry later: {error}")
            else:
                logger.error(f"{name} aborted: {error}")
        self.transition_to(terminal)
        return self._result(success=False, error=error)

    def _last_confirmed(self) -> int:
        number = 0
        while number + 1 in self.confirmed:
            number += 1
        return number

    def _result(self, success: bool, error: TransferError | None = None) -> TransferResult:
        job_id = self.job.job_id if self.job else None
        return TransferResult(
            success=success,
            phase=self.phase,
            bytes_transferred=self.tracker.confirmed_bytes if self.tracker else 0,
            job_id=job_id,
            resume_token=job_id if self.phase == JobPhase.RESUMABLE else None,
            error=error,
            last_confirmed_part=self._last_confirmed(),
            part_status=dict(self.part_status),
        )

    def _part_size(self) -> int:
        return max(self.config.part_size, self.store.min_part_size)


class _UploadRunner(_JobRunner):
    direction = TransferDirection.UPLOAD

    def __init__(
        self,
        local_path: Path,
        remote_key: str,
        job_config: JobConfig,
        store: ObjectStore,
        state_store: TransferStateStore | None,
    ) -> None:
        super().__init__(job_config, store, state_store)
        self.local_path = local_path
        self.remote_key = remote_key
        self.data_key = b""
        self.header = b""
        self.upload_id: str | None = None
        self.sender_public_key: bytes | None = None

    def plan(self) -> None:
        config = self.config
        if not self.remote_key:
            raise ConfigError("Remote key must not be empty")
        if not config.recipient_public_keys:
            raise ConfigError("Uploads need at least one recipient public key")
        if config.sender_private_key is not None:
            self.sender_public_key = public_key_from_private(config.sender_private_key)

        file_stat = _regular_file_stat(self.local_path)
        size = file_stat.st_size
        header_length = header_size(len(config.recipient_public_keys))
        total = encrypted_size(size, header_length)
        part_size = self._part_size()
        parts = plan_parts(total, part_size, config.max_part_count, header_size=header_length)

        keys = list(config.recipient_public_keys)
        if self.sender_public_key is not None:
            keys.append(self.sender_public_key)
        source = str(self.local_path.resolve())
        self.job = TransferJob(
            job_id=compute_job_id(
                self.direction, source, self.remote_key, size, file_stat.st_mtime, part_size, keys
            ),
            direction=self.direction,
            source=source,
            destination=self.remote_key,
            total_size=size,
            encrypted_size=total,
            header_length=header_length,
            parts=tuple(parts),
        )
        self._begin_tracking(size)
        logger.info(
            f"Upload {self._short_id()}: {self.local_path} -> {self.remote_key} "
            f"({size} bytes, {len(parts)} parts)"
        )

        state = self._load_checkpoint()
        if state is None or not self._resume(state):
            if state is not None:
                self.discard_stale(state)
            self._start_fresh()
        self.header = seal_header(
            self.data_key, config.recipient_public_keys, config.sender_private_key
        )

    def _start_fresh(self) -> None:
        assert self.job is not None
        self.data_key = generate_data_key()
        self.upload_id = self.retry.call(
            lambda: self.store.create_multipart(self.remote_key),
            f"create multipart upload for {self.remote_key}",
        )
        sealed_key = None
        if self.sender_public_key is not None:
            sealed_key = seal_header(
                self.data_key, [self.sender_public_key], self.config.sender_private_key
            )
        if self.state_store is not None:
            self.state_store.begin(
                self.job.job_id,
                self.direction,
                self.job.source,
                self.job.destination,
                self.job.fingerprint,
                len(self.job.parts),
                self.job.total_size,
                upload_id=self.upload_id,
                sealed_key=sealed_key,
            )
            self.checkpointed = True

    def _resume(self, state: TransferState) -> bool:
        """Adopt a checkpoint; return False if the upload must restart."""
        assert self.job is not None and self.tracker is not None
        sender_key = self.config.sender_private_key
        if not state.upload_id or state.sealed_key is None or sender_key is None:
            logger.info(f"Upload {self._short_id()}: checkpoint has no usable data key, restarting")
            return False
        try:
            data_key, _ = read_header(io.BytesIO(state.sealed_key), sender_key)
        except (KeyUnsealError, IntegrityError) as e:
            logger.warning(f"Upload {self._short_id()}: cannot unseal checkpoint key ({e}), restarting")
            return False

        upload_id = state.upload_id
        try:
            remote_parts = self.retry.call(
                lambda: self.store.list_parts(self.remote_key, upload_id),
                f"list parts of {self.remote_key}",
            )
        except ServiceError as e:
            if e.code == "NoSuchUpload" or e.status == 404:
                logger.info(f"Upload {self._short_id()}: multipart upload is gone, restarting")
                return False
            raise

        remote = {number: normalize_etag(etag) for number, etag in remote_parts.items()}
        valid = {
            number: part.etag
            for number, part in state.parts.items()
            if remote.get(number) == normalize_etag(part.etag)
        }

        self.data_key = data_key
        self.upload_id = upload_id
        if self.state_store is not None:
            # Re-record only the parts the service still holds
            self.state_store.begin(
                self.job.job_id,
                self.direction,
                self.job.source,
                self.job.destination,
                self.job.fingerprint,
                len(self.job.parts),
                self.job.total_size,
                upload_id=upload_id,
                sealed_key=state.sealed_key,
            )
            self.checkpointed = True
        for part in self.job.parts:
            if part.number in valid:
                self._confirm(part, valid[part.number], self.job.plaintext_size(part))

        logger.info(
            f"Resuming upload {self._short_id()}: "
            f"{len(valid)}/{len(self.job.parts)} parts already confirmed"
        )
        return True

    def discard_stale(self, state: TransferState) -> None:
        if state.upload_id:
            self._abort_remote(state.upload_id)
        super().discard_stale(state)

    def make_worker(self) -> PartWorker:
        assert self.upload_id is not None
        return UploadPartWorker(
            self.store,
            self.remote_key,
            self.upload_id,
            self.retry,
            self.tracker,
            verify_checksums=self.config.verify_checksums,
        )

    def tasks(self) -> Iterator[PartTask]:
        """Encode pending parts in plan order, one file cursor."""
        assert self.job is not None
        job = self.job
        with open(self.local_path, "rb") as source:
            for part in job.parts:
                if part.number in self.confirmed:
                    continue
                source.seek(part.plaintext_offset)
                blocks = open_encoder(
                    self.data_key,
                    source,
                    start_index=part.first_block,
                    max_blocks=part.block_count,
                    total_blocks=job.total_blocks,
                )
                payload = b"".join(block.to_bytes() for block in blocks)
                if part.number == 1:
                    payload = self.header + payload
                if len(payload) != part.size:
                    raise IntegrityError(
                        f"Part {part.number} encoded to {len(payload)} bytes, "
                        f"planned {part.size}; was the file modified?"
                    )
                yield PartTask(part=part, payload=payload, plaintext_size=job.plaintext_size(part))

    def accept(self, result: PartResult) -> None:
        assert result.etag is not None
        self._confirm(result.task.part, result.etag, result.task.plaintext_size)

    def finalize(self) -> None:
        assert self.job is not None and self.upload_id is not None
        missing = [p.number for p in self.job.parts if p.number not in self.confirmed]
        if missing:
            raise TransferError(f"Parts not confirmed: {missing}")
        upload_id = self.upload_id
        parts = sorted(self.confirmed.items())
        self.retry.call(
            lambda: self.store.complete_multipart(self.remote_key, upload_id, parts),
            f"complete multipart upload for {self.remote_key}",
        )

    def cleanup(self) -> None:
        if self.upload_id is not None:
            self._abort_remote(self.upload_id)

    def _abort_remote(self, upload_id: str) -> None:
        try:
            self.retry.call(
                lambda: self.store.abort_multipart(self.remote_key, upload_id),
                f"abort multipart upload for {self.remote_key}",
            )
            logger.info(f"Aborted multipart upload {upload_id[:12]} of {self.remote_key}")
        except TransferError as e:
            logger.warning(f"Failed to abort multipart upload {upload_id[:12]}: {e}")


class _DownloadRunner(_JobRunner):
    direction = TransferDirection.DOWNLOAD

    def __init__(
        self,
        remote_key: str,
        local_path: Path,
        job_config: JobConfig,
        store: ObjectStore,
        state_store: TransferStateStore | None,
    ) -> None:
        super().__init__(job_config, store, state_store)
        self.remote_key = remote_key
        self.local_path = local_path
        self.header = b""
        self.decoder: BlockDecoder | None = None
        self.output: BinaryIO | None = None
        self.written = 0
        self.next_part = 1
        self.buffer: dict[int, PartResult] = {}

    def plan(self) -> None:
        config = self.config
        if not self.remote_key:
            raise ConfigError("Remote key must not be empty")
        if config.private_key is None:
            raise ConfigError("Downloads need the reader's private key")
        if self.local_path.is_dir():
            raise ConfigError(f"{self.local_path} is a directory")

        total = self.retry.call(lambda: self.store.head(self.remote_key), f"head {self.remote_key}")
        data_key = self._fetch_header(total, config.private_key)
        header_length = len(self.header)
        plaintext_total = decrypted_size(total, header_length)
        part_size = self._part_size()
        parts = plan_parts(total, part_size, config.max_part_count, header_size=header_length)

        destination = str(self.local_path.resolve())
        self.job = TransferJob(
            job_id=compute_job_id(
                self.direction,
                self.remote_key,
                destination,
                total,
                0.0,
                part_size,
                [public_key_from_private(config.private_key)],
            ),
            direction=self.direction,
            source=self.remote_key,
            destination=destination,
            total_size=plaintext_total,
            encrypted_size=total,
            header_length=header_length,
            parts=tuple(parts),
        )
        self._begin_tracking(plaintext_total)
        logger.info(
            f"Download {self._short_id()}: {self.remote_key} -> {self.local_path} "
            f"({plaintext_total} bytes, {len(parts)} parts)"
        )

        state = self._load_checkpoint()
        if state is None or not self._resume(state):
            if state is not None:
                self.discard_stale(state)
            self._start_fresh(owned=state is not None)

        start_block = parts[self.next_part - 1].first_block if self.next_part <= len(parts) else 0
        self.decoder = BlockDecoder(data_key, start_index=start_block)

    def _fetch_header(self, total: int, private_key: bytes) -> bytes:
        """Fetch and open the container header; return the data key."""
        prefix = self._read_range(0, min(total, HEADER_PREFIX_SIZE))
        header_length = header_size(packet_count(prefix))
        if header_length > total:
            raise IntegrityError(f"Header of {header_length} bytes exceeds object size {total}")
        raw = self._read_range(0, header_length)
        data_key, parsed_length = read_header(io.BytesIO(raw), private_key)
        if parsed_length != header_length:
            raise IntegrityError("Header length does not match its packet count")
        self.header = raw
        return data_key

    def _read_range(self, start: int, end: int) -> bytes:
        def fetch() -> bytes:
            data = self.store.get_part(self.remote_key, start, end).data
            if len(data) != end - start:
                raise NetworkError(f"Short read of bytes {start}-{end - 1} of {self.remote_key}")
            return data

        return self.retry.call(fetch, f"read header of {self.remote_key}")

    def _start_fresh(self, owned: bool = False) -> None:
        """Open the local file from byte 0.

        An existing file is only replaced with overwrite, or when it is the
        output of an earlier run of this job (owned).
        """
        assert self.job is not None
        if self.local_path.exists() and not (self.config.overwrite or owned):
            raise ConfigError(f"{self.local_path} already exists (use overwrite to replace it)")
        self.local_path.parent.mkdir(parents=True, exist_ok=True)
        self.output = open(self.local_path, "wb")
        if self.state_store is not None:
            self.state_store.begin(
                self.job.job_id,
                self.direction,
                self.job.source,
                self.job.destination,
                self.job.fingerprint,
                len(self.job.parts),
                self.job.total_size,
            )
            self.checkpointed = True

    def _resume(self, state: TransferState) -> bool:
        """Continue after the verified prefix of a previous run."""
        assert self.job is not None
        last = state.last_confirmed_part
        expected = sum(self.job.plaintext_size(p) for p in self.job.parts[:last])
        if state.committed_offset != expected:
            return False
        try:
            local_size = self.local_path.stat().st_size
        except FileNotFoundError:
            return False
        if local_size < expected:
            logger.warning(f"Download {self._short_id()}: local file is shorter than the checkpoint")
            return False

        self.output = open(self.local_path, "r+b")
        self.output.truncate(expected)
        self.output.seek(expected)
        self.written = expected
        self.checkpointed = self.state_store is not None
        assert self.tracker is not None
        for part in self.job.parts[:last]:
            self.confirmed[part.number] = state.parts[part.number].etag
            self.part_status[part.number] = PartStatus.CONFIRMED
            self.tracker.record_confirmed(part.number, self.job.plaintext_size(part))
        self.next_part = last + 1
        logger.info(
            f"Resuming download {self._short_id()}: "
            f"{last}/{len(self.job.parts)} parts already written"
        )
        return True

    def make_worker(self) -> PartWorker:
        return DownloadPartWorker(
            self.store,
            self.remote_key,
            self.retry,
            self.tracker,
            verify_checksums=self.config.verify_checksums,
        )

    def tasks(self) -> Iterator[PartTask]:
        assert self.job is not None
        for part in self.job.parts:
            if part.number < self.next_part:
                continue
            yield PartTask(part=part, plaintext_size=self.job.plaintext_size(part))

    def occupancy(self, outstanding: int) -> int:
        return outstanding + len(self.buffer)

    def accept(self, result: PartResult) -> None:
        """Buffer a part and write every part that is now in order."""
        assert self.job is not None and self.decoder is not None and self.output is not None
        self.buffer[result.part_number] = result
        while self.next_part in self.buffer:
            ready = self.buffer.pop(self.next_part)
            part = ready.task.part
            data = ready.data or b""
            if part.number == 1:
                if data[: self.job.header_length] != self.header:
                    raise IntegrityError("Container header changed during download")
                data = data[self.job.header_length :]
            plaintext = self.decoder.decode_span(data, ends_stream=part.number == len(self.job.parts))
            self.output.write(plaintext)
            self.output.flush()
            self.written += len(plaintext)
            self._confirm(part, ready.etag or "", len(plaintext))
            self.next_part += 1

    def finalize(self) -> None:
        assert self.job is not None and self.output is not None
        if self.next_part != len(self.job.parts) + 1 or self.written != self.job.total_size:
            raise IntegrityError(
                f"Decoded {self.written} of {self.job.total_size} bytes; the stream is incomplete"
            )
        self.output.flush()
        os.fsync(self.output.fileno())

    def cleanup(self) -> None:
        """Cut the local file back to the verified prefix."""
        if self.output is None:
            return
        self.buffer.clear()
        self.output.truncate(self.written)
        self.output.close()
        self.output = None
        if self.written == 0:
            self.local_path.unlink(missing_ok=True)
            logger.info(f"Removed partial download {self.local_path}")
        else:
            logger.info(f"Truncated {self.local_path} to the {self.written} verified bytes")

    def close(self) -> None:
        if self.output is not None:
            self.output.close()
            self.output = None


def _regular_file_stat(path: Path) -> os.stat_result:
    """Stat a local upload source, rejecting inputs of unknown size."""
    if str(path) == "-":
        raise SizeUnknownError("Uploading from standard input is not supported: the size must be known")
    try:
        file_stat = path.stat()
    except FileNotFoundError as e:
        raise ConfigError(f"Local file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Cannot access {path}: {e}") from e
    if stat.S_ISDIR(file_stat.st_mode):
        raise ConfigError(f"{path} is a directory")
    if not stat.S_ISREG(file_stat.st_mode):
        raise SizeUnknownError(f"{path} is not a regular file; its size cannot be known up front")
    return file_stat


def upload(
    local_path: str | Path,
    remote_key: str,
    job_config: JobConfig,
    store: ObjectStore,
    state_store: TransferStateStore | None = None,
) -> TransferResult:
    """Encrypt a local file and upload it as a multipart object.

    Args:
        local_path: File to upload.
        remote_key: Destination key in the archive.
        job_config: Job parameters.
        store: Storage backend.
        state_store: Checkpoint store; without one the job cannot resume.

    Returns:
        TransferResult; errors are reported in it, not raised.
    """
    runner = _UploadRunner(Path(local_path), remote_key, job_config, store, state_store)
    return runner.run()


def download(
    remote_key: str,
    local_path: str | Path,
    job_config: JobConfig,
    store: ObjectStore,
    state_store: TransferStateStore | None = None,
) -> TransferResult:
    """Download an object and decrypt it into a local file.

    Only authenticated plaintext is written. When the job aborts, the local
    file is cut back to the verified prefix (or removed if that is empty).

    Args:
        remote_key: Key of the encrypted object.
        local_path: Destination file.
        job_config: Job parameters.
        store: Storage backend.
        state_store: Checkpoint store; without one the job cannot resume.

    Returns:
        TransferResult; errors are reported in it, not raised.
    """
    runner = _DownloadRunner(remote_key, Path(local_path), job_config, store, state_store)
    return runner.run()


def abandon(job_id: str, store: ObjectStore, state_store: TransferStateStore) -> bool:
    """Give up on a resumable job.

    Aborts the job's multipart upload (if any) and discards its checkpoint.

    Returns:
        True if a checkpoint was found and discarded.
    """
    state = state_store.load(job_id)
    if state is None:
        return False
    if state.direction == TransferDirection.UPLOAD and state.upload_id:
        try:
            store.abort_multipart(state.destination, state.upload_id)
        except ServiceError as e:
            if e.code != "NoSuchUpload" and e.status != 404:
                raise
            logger.debug(f"Multipart upload {state.upload_id[:12]} already gone")
    state_store.discard(job_id)
    logger.info(f"Abandoned job {job_id[:12]}")
    return True
