"""Multipart transfer of encrypted objects.

Architecture:
    Orchestrator → WorkerPool → PartWorker → ObjectStore

Components:
- **Orchestrator**: upload()/download() run one job through its phases,
  owning the plaintext file, the part plan and the checkpoint
- **WorkerPool**: Concurrent part workers fed by a task queue
- **PartWorker**: UploadPartWorker / DownloadPartWorker, one part per task,
  retried per RetryPolicy and verified against service checksums
- **ObjectStore**: S3ObjectStore (boto3) or MemoryObjectStore
- **TransferStateStore**: SQLite checkpoints for resumable jobs
- **ProgressTracker**: Confirmed-byte accounting and progress samples
"""

from sdatransfer.transfer.orchestrator import (
    DEFAULT_PART_SIZE,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    JobConfig,
    JobPhase,
    TransferJob,
    TransferOutcome,
    TransferResult,
    abandon,
    compute_job_id,
    download,
    upload,
)
from sdatransfer.transfer.progress import (
    ProgressCallback,
    ProgressReader,
    ProgressSample,
    ProgressTracker,
)
from sdatransfer.transfer.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    RetryPolicy,
    is_retryable,
)
from sdatransfer.transfer.state import ConfirmedPart, TransferState, TransferStateStore
from sdatransfer.transfer.storage import (
    MemoryObjectStore,
    ObjectStore,
    PartData,
    S3ObjectStore,
    create_store,
)
from sdatransfer.transfer.workers import (
    DEFAULT_WORKERS,
    DownloadPartWorker,
    PartResult,
    PartTask,
    PartWorker,
    PoolState,
    UploadPartWorker,
    WorkerPool,
)

__all__ = [
    # Orchestrator
    "DEFAULT_PART_SIZE",
    "InvalidTransitionError",
    "JobConfig",
    "JobPhase",
    "TransferJob",
    "TransferOutcome",
    "TransferResult",
    "VALID_TRANSITIONS",
    "abandon",
    "compute_job_id",
    "download",
    "upload",
    # Progress
    "ProgressCallback",
    "ProgressReader",
    "ProgressSample",
    "ProgressTracker",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "RetryPolicy",
    "is_retryable",
    # State
    "ConfirmedPart",
    "TransferState",
    "TransferStateStore",
    # Storage
    "MemoryObjectStore",
    "ObjectStore",
    "PartData",
    "S3ObjectStore",
    "create_store",
    # Workers
    "DEFAULT_WORKERS",
    "DownloadPartWorker",
    "PartResult",
    "PartTask",
    "PartWorker",
    "PoolState",
    "UploadPartWorker",
    "WorkerPool",
]
