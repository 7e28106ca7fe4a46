"""Part workers and the pool that runs them concurrently.

This module provides:
- PartTask / PartResult: Unit of work handed to the pool and its outcome
- PartWorker: Base class running one part through the retry policy
- UploadPartWorker / DownloadPartWorker: Part transfer against an ObjectStore
- WorkerPool: Fixed set of threads fed by a task queue

Workers never touch checkpoints or part records; they only return a
PartResult. The orchestrator is the single place that records progress.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from sdatransfer.core.errors import (
    ChecksumMismatch,
    NetworkError,
    TransferCancelled,
    TransferError,
)
from sdatransfer.transfer.progress import ProgressReader
from sdatransfer.transfer.storage import is_md5_etag, md5_hex, normalize_etag

if TYPE_CHECKING:
    from collections.abc import Callable

    from sdatransfer.core.planning import PartRange
    from sdatransfer.transfer.progress import ProgressTracker
    from sdatransfer.transfer.retry import RetryPolicy
    from sdatransfer.transfer.storage import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class PartTask:
    """A part queued for transfer.

    Attributes:
        part: Byte range of the part in the encrypted object.
        payload: Encrypted bytes to send (uploads only).
        plaintext_size: Plaintext bytes the part carries.
    """

    part: PartRange
    payload: bytes | None = None
    plaintext_size: int = 0


@dataclass
class PartResult:
    """Outcome of one part.

    Attributes:
        task: The task this result belongs to.
        success: Whether the part was transferred and verified.
        etag: ETag returned by the service (uploads) or MD5 of the bytes (downloads).
        data: Received bytes (downloads only).
        error: The final exception if the part failed.
        elapsed_time: Time taken in seconds, retries included.
    """

    task: PartTask
    success: bool
    etag: str | None = None
    data: bytes | None = None
    error: BaseException | None = None
    elapsed_time: float = 0.0

    @property
    def part_number(self) -> int:
        """Number of the part."""
        return self.task.part.number

    @property
    def cancelled(self) -> bool:
        """Whether the part was abandoned because of a cancellation."""
        return isinstance(self.error, TransferCancelled)


class PartWorker(ABC):
    """Base class for part workers.

    Subclasses implement _attempt(), a single try at moving one part. The
    base class wraps it in the retry policy and converts failures into a
    PartResult.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        retry_policy: RetryPolicy,
        tracker: ProgressTracker | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._retry = retry_policy
        self._tracker = tracker

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Return the worker type name (e.g., 'upload', 'download')."""
        ...

    def execute(
        self,
        task: PartTask,
        cancel_check: Callable[[], bool] | None = None,
    ) -> PartResult:
        """Transfer one part.

        Args:
            task: The part to transfer.
            cancel_check: Returns True once the job is being cancelled.

        Returns:
            PartResult; failures are reported in it, never raised.
        """
        start_time = time.time()
        number = task.part.number

        def attempt() -> PartResult:
            if cancel_check and cancel_check():
                raise TransferCancelled(f"Part {number} cancelled")
            return self._attempt(task)

        try:
            result = self._retry.call(attempt, f"{self.worker_type} part {number}")
        except TransferError as e:
            if self._tracker is not None:
                self._tracker.reset_reads(number)
            if not isinstance(e, TransferCancelled):
                logger.error(f"{self.worker_type} part {number} failed: {e}")
            return PartResult(
                task=task,
                success=False,
                error=e,
                elapsed_time=time.time() - start_time,
            )

        result.elapsed_time = time.time() - start_time
        logger.debug(
            f"{self.worker_type} part {number}: {task.part.size} bytes "
            f"in {result.elapsed_time:.2f}s"
        )
        return result

    @abstractmethod
    def _attempt(self, task: PartTask) -> PartResult:
        """Perform a single attempt; raise TransferError on failure."""
        ...


class UploadPartWorker(PartWorker):
    """Uploads encrypted parts of a multipart upload."""

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        upload_id: str,
        retry_policy: RetryPolicy,
        tracker: ProgressTracker | None = None,
        verify_checksums: bool = True,
    ) -> None:
        super().__init__(store, key, retry_policy, tracker)
        self._upload_id = upload_id
        self._verify = verify_checksums

    @property
    def worker_type(self) -> str:
        return "upload"

    def _attempt(self, task: PartTask) -> PartResult:
        payload = task.payload
        if payload is None:
            raise TransferError(f"Part {task.part.number} has no payload")
        expected = md5_hex(payload)
        body = ProgressReader(payload, task.part.number, self._tracker)
        etag = self._store.put_part(
            self._key,
            self._upload_id,
            task.part.number,
            body,
            len(payload),
            expected,
        )
        if not is_md5_etag(etag):
            logger.debug(f"Part {task.part.number}: opaque ETag, checksum not verified")
        elif self._verify and normalize_etag(etag) != expected:
            raise ChecksumMismatch(
                f"Part {task.part.number}: service ETag does not match the payload",
                expected=expected,
                actual=normalize_etag(etag),
            )
        return PartResult(task=task, success=True, etag=etag)


class DownloadPartWorker(PartWorker):
    """Fetches byte ranges of an encrypted object.

    The MD5 check only runs when the store reports one for the range; S3
    does not for ranged GETs. The length is always checked, and every block
    is authenticated when it is decrypted.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        retry_policy: RetryPolicy,
        tracker: ProgressTracker | None = None,
        verify_checksums: bool = True,
    ) -> None:
        super().__init__(store, key, retry_policy, tracker)
        self._verify = verify_checksums

    @property
    def worker_type(self) -> str:
        return "download"

    def _attempt(self, task: PartTask) -> PartResult:
        part = task.part
        received = self._store.get_part(self._key, part.start, part.end)
        data = received.data
        if len(data) != part.size:
            raise NetworkError(
                f"Part {part.number}: expected {part.size} bytes, received {len(data)}"
            )
        actual = md5_hex(data)
        if self._verify and received.md5 is not None and received.md5 != actual:
            raise ChecksumMismatch(
                f"Part {part.number}: received bytes do not match the reported MD5",
                expected=received.md5,
                actual=actual,
            )
        if self._tracker is not None:
            self._tracker.record_read(part.number, 0, len(data))
        return PartResult(task=task, success=True, etag=actual, data=data)


class WorkerPool:
    """Pool of threads running part tasks.

    Tasks go in through submit() and come back as PartResult through
    next_result(), in completion order.

    Usage:
        pool = WorkerPool(UploadPartWorker(...), max_workers=4)
        pool.start()
        pool.submit(PartTask(part=part, payload=payload))
        result = pool.next_result()
        pool.stop()
    """

    def __init__(
        self,
        worker: PartWorker,
        max_workers: int = DEFAULT_WORKERS,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize the worker pool.

        Args:
            worker: Worker executing every task (must be thread-safe).
            max_workers: Number of worker threads.
            cancel_event: Set to ask running tasks to stop early.
        """
        self._worker = worker
        self._max_workers = max(1, max_workers)
        self._cancel_event = cancel_event or threading.Event()

        # Pool state
        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()

        self._task_queue: queue.Queue[PartTask | None] = queue.Queue()
        self._results: queue.Queue[PartResult] = queue.Queue()

        self._workers: list[threading.Thread] = []
        self._active = 0

        # Statistics
        self._completed_count = 0
        self._error_count = 0

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def active_count(self) -> int:
        """Get number of tasks being executed."""
        with self._lock:
            return self._active

    @property
    def queue_size(self) -> int:
        """Get number of queued tasks."""
        return self._task_queue.qsize()

    @property
    def completed_count(self) -> int:
        """Get number of successful tasks."""
        with self._lock:
            return self._completed_count

    @property
    def error_count(self) -> int:
        """Get number of failed tasks."""
        with self._lock:
            return self._error_count

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool already running")
                return

            self._pool_state = PoolState.RUNNING

            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"{self._worker.worker_type}-worker-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.debug(f"Worker pool started with {self._max_workers} workers")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker threads.

        Queued tasks that were not picked up are dropped.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return

            self._pool_state = PoolState.STOPPING
            workers = list(self._workers)

        self.cancel_pending()
        # Poison pills to stop workers
        for _ in workers:
            self._task_queue.put(None)

        for worker in workers:
            worker.join(timeout=timeout / len(workers))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            logger.debug("Worker pool stopped")

    def submit(self, task: PartTask) -> bool:
        """Submit a task to the pool.

        Returns:
            True if task was submitted, False if pool is not running.
        """
        if self._pool_state != PoolState.RUNNING:
            logger.warning("Cannot submit task: pool not running")
            return False

        self._task_queue.put(task)
        logger.debug(f"Task submitted: {self._worker.worker_type} part {task.part.number}")
        return True

    def next_result(self, timeout: float | None = None) -> PartResult | None:
        """Wait for the next finished task.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            The next PartResult, or None on timeout.
        """
        try:
            return self._results.get(timeout=timeout)
        except queue.Empty:
            return None

    def cancel_pending(self) -> list[PartTask]:
        """Remove queued tasks that no worker has started.

        Returns:
            The removed tasks.
        """
        removed = []
        while True:
            try:
                task = self._task_queue.get_nowait()
            except queue.Empty:
                break
            if task is None:
                # Keep poison pills for the workers
                self._task_queue.put(None)
                break
            removed.append(task)
        return removed

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while self._pool_state == PoolState.RUNNING:
            try:
                task = self._task_queue.get(timeout=1.0)
            except queue.Empty:
                continue

            if task is None:
                # Poison pill - stop worker
                break

            self._results.put(self._process_task(task))

    def _process_task(self, task: PartTask) -> PartResult:
        """Run one task and update statistics."""
        with self._lock:
            self._active += 1
        try:
            result = self._worker.execute(task, cancel_check=self._cancel_event.is_set)
        except Exception as e:
            logger.exception(f"Unexpected error on part {task.part.number}")
            result = PartResult(task=task, success=False, error=e)
        finally:
            with self._lock:
                self._active -= 1

        with self._lock:
            if result.success:
                self._completed_count += 1
            else:
                self._error_count += 1
        return result
