"""
Data models for the Gemini Document Transcriber.

This module defines the core data structures used throughout the pipeline:
upload units and sessions for the resumable upload protocol, transcription
attempts and results, and the job record used to track batch transcription.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4


class PromptVariant(Enum):
    """
    Prompt framings used when requesting a transcription.

    Attributes:
        STANDARD: Strict verbatim OCR extraction (first attempt)
        RESTORATION: Historical-document restoration framing used after a
            content-policy block
    """
    STANDARD = "standard"
    RESTORATION = "restoration"


class AttemptOutcome(Enum):
    """Outcome of a single generation request."""
    TEXT = "text"
    POLICY_BLOCK = "content-policy-block"
    TRANSIENT_ERROR = "transient-error"
    FATAL_ERROR = "fatal-error"


class UploadState(Enum):
    """
    States of a resumable upload session.

    Attributes:
        NEGOTIATING: Session initiation request in flight
        TRANSFERRING: Session URL obtained, chunks being sent
        FINALIZED: Final chunk acknowledged, resource handle issued
        FAILED: Upload aborted by an error or cancellation
    """
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    FINALIZED = "finalized"
    FAILED = "failed"


class JobStatus(Enum):
    """
    Enumeration of possible job processing states.

    Attributes:
        PENDING: Job has been created but processing has not started
        PROCESSING: Units are being uploaded and transcribed
        COMPLETED: Every unit was transcribed
        FAILED: A unit failed non-recoverably; partial text is kept
        CANCELLED: The caller aborted the job
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class UploadUnit:
    """
    One transcribable document (a whole input file or a split part of one).

    Attributes:
        name: Display name, e.g. ``report_part2.pdf``
        data: Raw file bytes
        mime_type: Declared media type
        index: Position of the unit within its job
        source_name: Name of the input file the unit came from
        part: 1-based part number when the unit is a split fragment
    """
    name: str
    data: bytes = field(repr=False)
    mime_type: str
    index: int = 0
    source_name: Optional[str] = None
    part: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadSession:
    """
    A negotiated resumable upload session.

    ``offset`` is the number of bytes the remote store has acknowledged so far,
    which is where a resumed transfer would continue from.
    """
    endpoint: str
    upload_url: Optional[str]
    total_size: int
    mime_type: str
    display_name: str
    state: UploadState = UploadState.NEGOTIATING
    offset: int = 0


@dataclass(frozen=True)
class ChunkTransferState:
    """Byte range of one chunk and whether it finalizes the upload."""
    offset: int
    chunk_size: int
    is_final: bool

    @property
    def end(self) -> int:
        return self.offset + self.chunk_size


@dataclass(frozen=True)
class ResourceHandle:
    """Reference to content stored upstream, issued on upload finalization."""
    uri: str
    mime_type: str
    name: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionAttempt:
    """Record of one generation request."""
    variant: PromptVariant
    model: str
    outcome: AttemptOutcome
    error_message: Optional[str] = None


@dataclass
class TranscriptionResult:
    """
    Text produced for one unit by one model.

    Attributes:
        text: Transcribed text
        model: Model that produced the text
        attempts: Attempts made with this model, in order
        escalated: Whether the restoration prompt produced the text
    """
    text: str
    model: str
    attempts: list[TranscriptionAttempt] = field(default_factory=list)
    escalated: bool = False


@dataclass
class FallbackResult:
    """Outcome of running a unit through the model chain."""
    text: str
    model_used: str
    used_fallback: bool
    attempts: list[TranscriptionAttempt] = field(default_factory=list)


class Job:
    """
    Represents a batch transcription job.

    This class tracks the state and results of a multi-file transcription job
    throughout its lifecycle. The transcription field is updated after every
    unit so partial results can be polled while the job runs.

    Attributes:
        job_id: Unique identifier for the job
        status: Current processing state (JobStatus enum)
        file_names: Names of the input files, in processing order
        transcription: Accumulated text so far (None until the first unit finishes)
        progress: Human-readable status line, e.g. "Processing unit 2 of 5: a.pdf"
        model_used: Model that produced the most recent unit's text
        used_fallback: Whether any unit was produced by a fallback model
        error_message: Error description if job failed (None if successful)
        created_at: Timestamp when the job was created
        completed_at: Timestamp when the job finished (None if still processing)
    """

    def __init__(
        self,
        file_names: list[str],
        job_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        transcription: Optional[str] = None,
        progress: Optional[str] = None,
        model_used: Optional[str] = None,
        used_fallback: bool = False,
        error_message: Optional[str] = None,
        created_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None
    ):
        self.job_id = job_id or str(uuid4())
        self.status = status
        self.file_names = list(file_names)
        self.transcription = transcription
        self.progress = progress
        self.model_used = model_used
        self.used_fallback = used_fallback
        self.error_message = error_message
        self.created_at = created_at or datetime.utcnow()
        self.completed_at = completed_at

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """
        Convert the Job instance to a dictionary representation.

        Returns:
            Dictionary containing all job attributes with serializable values
        """
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "file_names": list(self.file_names),
            "transcription": self.transcription,
            "progress": self.progress,
            "model_used": self.model_used,
            "used_fallback": self.used_fallback,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id!r}, status={self.status.value!r}, "
            f"files={len(self.file_names)})"
        )
