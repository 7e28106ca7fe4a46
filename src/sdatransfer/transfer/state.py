"""Checkpoint storage for resumable transfers.

This module provides:
- TransferStateStore: SQLite-based checkpoint database
- TransferState: Persisted record of one job
- ConfirmedPart: One acknowledged part of a job

Architecture:
    A part is written here only after the storage service returned its
    ETag (upload) or its bytes were verified and written (download). The
    committed offset is the plaintext length of the contiguous run of
    confirmed parts starting at part 1, so a checkpoint never claims bytes
    that were not acknowledged.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from sdatransfer.core.types import TransferDirection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmedPart:
    """An acknowledged part.

    Attributes:
        number: 1-based part number.
        etag: ETag returned by the service (uploads) or MD5 of the part (downloads).
        plaintext_size: Plaintext bytes carried by the part.
    """

    number: int
    etag: str
    plaintext_size: int


@dataclass
class TransferState:
    """Persisted checkpoint of one transfer job.

    Attributes:
        job_id: Deterministic job identifier.
        direction: Upload or download.
        source: Source locator (local path or remote key).
        destination: Destination locator.
        plan_fingerprint: Digest of the part plan the job was started with.
        part_count: Number of parts in the plan.
        total_size: Plaintext size of the job.
        upload_id: Multipart upload id (uploads only).
        sealed_key: Data key sealed to the sender (uploads only).
        committed_offset: Plaintext bytes covered by the confirmed prefix.
        created_at: Creation timestamp.
        updated_at: Timestamp of the last change.
        parts: Confirmed parts by number.
    """

    job_id: str
    direction: TransferDirection
    source: str
    destination: str
    plan_fingerprint: str
    part_count: int
    total_size: int
    upload_id: str | None = None
    sealed_key: bytes | None = None
    committed_offset: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0
    parts: dict[int, ConfirmedPart] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row, parts: list[ConfirmedPart]) -> TransferState:
        """Create TransferState from database rows."""
        return cls(
            job_id=row["job_id"],
            direction=TransferDirection(row["direction"]),
            source=row["source"],
            destination=row["destination"],
            plan_fingerprint=row["plan_fingerprint"],
            part_count=row["part_count"],
            total_size=row["total_size"],
            upload_id=row["upload_id"],
            sealed_key=row["sealed_key"],
            committed_offset=row["committed_offset"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            parts={part.number: part for part in parts},
        )

    @property
    def last_confirmed_part(self) -> int:
        """Highest part number of the contiguous confirmed prefix (0 if none)."""
        number = 0
        while number + 1 in self.parts:
            number += 1
        return number


def _committed_offset(parts: dict[int, int]) -> int:
    """Sum plaintext sizes of the contiguous prefix of confirmed parts."""
    offset = 0
    number = 1
    while number in parts:
        offset += parts[number]
        number += 1
    return offset


class TransferStateStore:
    """SQLite-based checkpoint store shared by all jobs of a process."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the checkpoint database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS transfer_jobs (
                job_id TEXT PRIMARY KEY,
                direction TEXT NOT NULL,
                source TEXT NOT NULL,
                destination TEXT NOT NULL,
                plan_fingerprint TEXT NOT NULL,
                part_count INTEGER NOT NULL,
                total_size INTEGER NOT NULL,
                upload_id TEXT,
                sealed_key BLOB,
                committed_offset INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS confirmed_parts (
                job_id TEXT NOT NULL REFERENCES transfer_jobs(job_id) ON DELETE CASCADE,
                part_number INTEGER NOT NULL,
                etag TEXT NOT NULL,
                plaintext_size INTEGER NOT NULL,
                confirmed_at REAL NOT NULL,
                PRIMARY KEY (job_id, part_number)
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def begin(
        self,
        job_id: str,
        direction: TransferDirection,
        source: str,
        destination: str,
        plan_fingerprint: str,
        part_count: int,
        total_size: int,
        upload_id: str | None = None,
        sealed_key: bytes | None = None,
    ) -> TransferState:
        """Create (or replace) the checkpoint of a job.

        Any parts confirmed under a previous checkpoint with the same id are
        dropped.

        Returns:
            The new, empty TransferState.
        """
        now = time.time()
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                self._conn.execute("DELETE FROM transfer_jobs WHERE job_id = ?", (job_id,))
                self._conn.execute(
                    """
                    INSERT INTO transfer_jobs (
                        job_id, direction, source, destination, plan_fingerprint,
                        part_count, total_size, upload_id, sealed_key,
                        committed_offset, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        job_id,
                        direction.value,
                        source,
                        destination,
                        plan_fingerprint,
                        part_count,
                        total_size,
                        upload_id,
                        sealed_key,
                        now,
                        now,
                    ),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise

        logger.debug(f"Checkpoint started for job {job_id[:12]} ({part_count} parts)")
        return TransferState(
            job_id=job_id,
            direction=direction,
            source=source,
            destination=destination,
            plan_fingerprint=plan_fingerprint,
            part_count=part_count,
            total_size=total_size,
            upload_id=upload_id,
            sealed_key=sealed_key,
            created_at=now,
            updated_at=now,
        )

    def load(self, job_id: str) -> TransferState | None:
        """Load the checkpoint of a job.

        Returns:
            TransferState if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM transfer_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                return None
            part_rows = self._conn.execute(
                "SELECT * FROM confirmed_parts WHERE job_id = ? ORDER BY part_number",
                (job_id,),
            ).fetchall()

        parts = [
            ConfirmedPart(
                number=part["part_number"],
                etag=part["etag"],
                plaintext_size=part["plaintext_size"],
            )
            for part in part_rows
        ]
        return TransferState.from_row(row, parts)

    def confirm_part(self, job_id: str, part_number: int, etag: str, plaintext_size: int) -> int:
        """Record an acknowledged part and advance the committed offset.

        Args:
            job_id: Job the part belongs to.
            part_number: 1-based part number.
            etag: Acknowledgement from the service.
            plaintext_size: Plaintext bytes carried by the part.

        Returns:
            The committed offset after recording the part.

        Raises:
            KeyError: If the job has no checkpoint.
        """
        now = time.time()
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM transfer_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            if exists is None:
                raise KeyError(f"No checkpoint for job {job_id}")

            self._conn.execute("BEGIN")
            try:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO confirmed_parts (
                        job_id, part_number, etag, plaintext_size, confirmed_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (job_id, part_number, etag, plaintext_size, now),
                )
                rows = self._conn.execute(
                    "SELECT part_number, plaintext_size FROM confirmed_parts WHERE job_id = ?",
                    (job_id,),
                ).fetchall()
                offset = _committed_offset({r["part_number"]: r["plaintext_size"] for r in rows})
                self._conn.execute(
                    "UPDATE transfer_jobs SET committed_offset = ?, updated_at = ? WHERE job_id = ?",
                    (offset, now, job_id),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return offset

    def discard(self, job_id: str) -> bool:
        """Remove the checkpoint of a job.

        Returns:
            True if a checkpoint was removed.
        """
        with self._lock:
            cursor = self._conn.execute("DELETE FROM transfer_jobs WHERE job_id = ?", (job_id,))
        removed = cursor.rowcount > 0
        if removed:
            logger.debug(f"Checkpoint discarded for job {job_id[:12]}")
        return removed

    def list_jobs(self) -> list[TransferState]:
        """List all checkpoints, most recently updated first."""
        with self._lock:
            ids = [
                row["job_id"]
                for row in self._conn.execute(
                    "SELECT job_id FROM transfer_jobs ORDER BY updated_at DESC"
                ).fetchall()
            ]
        jobs = []
        for job_id in ids:
            state = self.load(job_id)
            if state is not None:
                jobs.append(state)
        return jobs
