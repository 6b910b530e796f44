"""
Unit tests for data models.

Tests the Job record, upload units and the small value types shared by the
pipeline stages.
"""

from dataclasses import FrozenInstanceError
from datetime import datetime

import pytest

from app.models import (
    ChunkTransferState,
    Job,
    JobStatus,
    TERMINAL_STATUSES,
    UploadSession,
    UploadState,
    UploadUnit,
)


class TestJobStatus:
    """Tests for the JobStatus enum."""

    def test_job_status_values(self):
        """Test that JobStatus enum has all required values."""
        assert JobStatus.PENDING.value == "pending"
        assert JobStatus.PROCESSING.value == "processing"
        assert JobStatus.COMPLETED.value == "completed"
        assert JobStatus.FAILED.value == "failed"
        assert JobStatus.CANCELLED.value == "cancelled"

    def test_terminal_statuses(self):
        """Test that only finished states are terminal."""
        assert set(TERMINAL_STATUSES) == {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class TestJob:
    """Tests for the Job class."""

    def test_job_creation_with_defaults(self):
        """Test creating a job with minimal required parameters."""
        job = Job(file_names=["a.pdf", "b.png"])

        assert job.file_names == ["a.pdf", "b.png"]
        assert job.status == JobStatus.PENDING
        assert job.transcription is None
        assert job.progress is None
        assert job.model_used is None
        assert job.used_fallback is False
        assert job.error_message is None
        assert len(job.job_id) > 0
        assert isinstance(job.created_at, datetime)
        assert job.completed_at is None
        assert not job.is_terminal()

    def test_job_ids_are_unique(self):
        """Test that every job gets its own identifier."""
        assert Job(file_names=["a.pdf"]).job_id != Job(file_names=["a.pdf"]).job_id

    def test_job_copies_file_names(self):
        """Test that later changes to the caller's list do not leak into the job."""
        names = ["a.pdf"]
        job = Job(file_names=names)
        names.append("b.pdf")

        assert job.file_names == ["a.pdf"]

    def test_to_dict_serializes_values(self):
        """Test that to_dict returns JSON-friendly values."""
        created = datetime(2024, 5, 1, 12, 0, 0)
        job = Job(
            file_names=["scan.pdf"],
            job_id="job-1",
            status=JobStatus.FAILED,
            transcription="Page one",
            progress="Failed on scan_part2.pdf",
            model_used="gemini-2.5-flash",
            used_fallback=True,
            error_message="quota",
            created_at=created,
            completed_at=created,
        )

        data = job.to_dict()

        assert data["job_id"] == "job-1"
        assert data["status"] == "failed"
        assert data["transcription"] == "Page one"
        assert data["used_fallback"] is True
        assert data["created_at"] == "2024-05-01T12:00:00"
        assert data["completed_at"] == "2024-05-01T12:00:00"

    def test_repr_mentions_status(self):
        """Test the string representation."""
        job = Job(file_names=["a.pdf"], job_id="job-2", status=JobStatus.CANCELLED)

        assert "job-2" in repr(job)
        assert "cancelled" in repr(job)
        assert job.is_terminal()


class TestUploadValues:
    """Tests for upload related value types."""

    def test_upload_unit_size_and_repr(self):
        """Test that size reflects the payload and the payload stays out of repr."""
        unit = UploadUnit(name="a.pdf", data=b"%PDF-1.4 body", mime_type="application/pdf")

        assert unit.size == len(b"%PDF-1.4 body")
        assert "body" not in repr(unit)

    def test_upload_unit_is_immutable(self):
        """Test that units cannot be modified after creation."""
        unit = UploadUnit(name="a.pdf", data=b"x", mime_type="application/pdf")

        with pytest.raises(FrozenInstanceError):
            unit.name = "b.pdf"

    def test_chunk_end(self):
        """Test the exclusive end offset of a chunk."""
        chunk = ChunkTransferState(offset=512, chunk_size=256, is_final=False)

        assert chunk.end == 768

    def test_upload_session_starts_negotiating(self):
        """Test the initial state of a session."""
        session = UploadSession(
            endpoint="https://example.test/upload",
            upload_url=None,
            total_size=10,
            mime_type="application/pdf",
            display_name="a.pdf",
        )

        assert session.state is UploadState.NEGOTIATING
        assert session.offset == 0
