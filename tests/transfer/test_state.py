"""Tests for the checkpoint store."""

from pathlib import Path

import pytest

from sdatransfer.core import TransferDirection
from sdatransfer.transfer.state import TransferStateStore


@pytest.fixture
def store():
    """Create an in-memory checkpoint store."""
    state_store = TransferStateStore(":memory:")
    yield state_store
    state_store.close()


def _begin(store: TransferStateStore, job_id: str = "job-1", **kwargs):
    values = dict(
        job_id=job_id,
        direction=TransferDirection.UPLOAD,
        source="/data/sample.bam",
        destination="sample.bam.c4gh",
        plan_fingerprint="abc123",
        part_count=4,
        total_size=400,
        upload_id="upload-1",
        sealed_key=b"\x01" * 124,
    )
    values.update(kwargs)
    return store.begin(**values)


class TestTransferStateStore:
    """Tests for TransferStateStore."""

    def test_begin_and_load(self, store: TransferStateStore) -> None:
        """A started job should load back with its fields."""
        _begin(store)
        state = store.load("job-1")

        assert state is not None
        assert state.direction == TransferDirection.UPLOAD
        assert state.upload_id == "upload-1"
        assert state.sealed_key == b"\x01" * 124
        assert state.committed_offset == 0
        assert state.parts == {}
        assert state.last_confirmed_part == 0

    def test_load_missing(self, store: TransferStateStore) -> None:
        """Loading an unknown job should return None."""
        assert store.load("nope") is None

    def test_committed_offset_follows_prefix(self, store: TransferStateStore) -> None:
        """The committed offset only covers the contiguous prefix."""
        _begin(store)

        assert store.confirm_part("job-1", 1, '"e1"', 100) == 100
        assert store.confirm_part("job-1", 3, '"e3"', 100) == 100
        assert store.confirm_part("job-1", 2, '"e2"', 100) == 300

        state = store.load("job-1")
        assert state.committed_offset == 300
        assert state.last_confirmed_part == 3
        assert state.parts[2].etag == '"e2"'

    def test_confirm_is_idempotent(self, store: TransferStateStore) -> None:
        """Confirming the same part twice should not double the offset."""
        _begin(store)
        store.confirm_part("job-1", 1, '"e1"', 100)

        assert store.confirm_part("job-1", 1, '"e1"', 100) == 100

    def test_confirm_unknown_job(self, store: TransferStateStore) -> None:
        """Confirming a part of an unknown job should raise KeyError."""
        with pytest.raises(KeyError):
            store.confirm_part("nope", 1, '"e1"', 100)

    def test_begin_replaces_previous(self, store: TransferStateStore) -> None:
        """Starting a job again should drop its confirmed parts."""
        _begin(store)
        store.confirm_part("job-1", 1, '"e1"', 100)
        _begin(store, upload_id="upload-2")

        state = store.load("job-1")
        assert state.upload_id == "upload-2"
        assert state.parts == {}
        assert state.committed_offset == 0

    def test_discard(self, store: TransferStateStore) -> None:
        """Discarding should remove the job and its parts."""
        _begin(store)
        store.confirm_part("job-1", 1, '"e1"', 100)

        assert store.discard("job-1") is True
        assert store.discard("job-1") is False
        assert store.load("job-1") is None

    def test_list_jobs(self, store: TransferStateStore) -> None:
        """All jobs should be listed."""
        _begin(store, "job-1")
        _begin(store, "job-2", direction=TransferDirection.DOWNLOAD, upload_id=None, sealed_key=None)

        jobs = {state.job_id: state for state in store.list_jobs()}
        assert set(jobs) == {"job-1", "job-2"}
        assert jobs["job-2"].direction == TransferDirection.DOWNLOAD
        assert jobs["job-2"].upload_id is None

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        """A checkpoint written to disk should survive a restart."""
        db_path = tmp_path / "state" / "state.db"
        first = TransferStateStore(db_path)
        _begin(first)
        first.confirm_part("job-1", 1, '"e1"', 100)
        first.close()

        second = TransferStateStore(db_path)
        try:
            state = second.load("job-1")
            assert state is not None
            assert state.committed_offset == 100
            assert state.parts[1].plaintext_size == 100
        finally:
            second.close()
