"""
In-memory registry of batch transcription jobs.

Jobs are created when a batch request is accepted and are updated by the
background task as every unit finishes, so pollers see partial text while the
job is still running. Finished jobs are dropped by the periodic cleanup.
"""

from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Optional

from app.models import Job, JobStatus, TERMINAL_STATUSES
from app.logging_config import get_logger, log_with_context


class JobManager:
    """
    Thread-safe store of transcription jobs keyed by job_id.

    Attributes:
        _jobs: Dictionary mapping job_id to Job instances
        _lock: Lock guarding every read and write of ``_jobs``
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()
        self.logger = get_logger(__name__)

    def create_job(self, file_names: list[str]) -> str:
        """
        Register a new PENDING job for the given input files.

        Args:
            file_names: Names of the input files, in processing order

        Returns:
            The unique job_id of the new job
        """
        job = Job(file_names=file_names)

        with self._lock:
            self._jobs[job.job_id] = job

        log_with_context(
            self.logger,
            "info",
            "Job created",
            job_id=job.job_id,
            file_count=len(job.file_names)
        )

        return job.job_id

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            log_with_context(self.logger, "error", "Job not found", job_id=job_id)
            raise KeyError(f"Job with id {job_id} not found")
        return job

    def update_progress(
        self,
        job_id: str,
        transcription: Optional[str] = None,
        progress: Optional[str] = None,
        model_used: Optional[str] = None,
        used_fallback: Optional[bool] = None
    ) -> None:
        """
        Record intermediate results of a running job.

        Fields left as None keep their current value. Updates to a job that
        already reached a terminal status are ignored.

        Raises:
            KeyError: If the job_id does not exist
        """
        with self._lock:
            job = self._require(job_id)
            if job.is_terminal():
                return

            if transcription is not None:
                job.transcription = transcription
            if progress is not None:
                job.progress = progress
            if model_used is not None:
                job.model_used = model_used
            if used_fallback is not None:
                job.used_fallback = used_fallback

        self.logger.debug(f"Job {job_id} progress: {progress}")

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        transcription: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Move a job to a new status.

        Terminal statuses (COMPLETED, FAILED, CANCELLED) set ``completed_at``.
        A job that is already terminal keeps its status; a late update from
        the background task cannot revive a cancelled job.

        Args:
            job_id: The unique identifier of the job to update
            status: The new status to set
            transcription: Accumulated text, complete or partial
            error_message: The error description (for FAILED status)

        Raises:
            KeyError: If the job_id does not exist
        """
        with self._lock:
            job = self._require(job_id)
            old_status = job.status

            if job.is_terminal():
                log_with_context(
                    self.logger,
                    "warning",
                    "Ignoring status update of finished job",
                    job_id=job_id,
                    old_status=old_status.value,
                    new_status=status.value
                )
                return

            job.status = status

            if transcription is not None:
                job.transcription = transcription

            if error_message is not None:
                job.error_message = error_message

            if status in TERMINAL_STATUSES:
                job.completed_at = datetime.utcnow()

            log_context = {
                "job_id": job_id,
                "old_status": old_status.value,
                "new_status": status.value
            }

            if error_message:
                log_context["error_message"] = error_message

            if transcription:
                log_context["transcription_length"] = len(transcription)

            log_with_context(
                self.logger,
                "info",
                "Job status updated",
                **log_context
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        """Return the job, or None if it does not exist."""
        with self._lock:
            return self._jobs.get(job_id)

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """
        Remove finished jobs older than ``max_age_hours``.

        Jobs in PENDING or PROCESSING status are never removed.

        Returns:
            The number of jobs that were removed
        """
        cutoff_time = datetime.utcnow() - timedelta(hours=max_age_hours)

        with self._lock:
            jobs_to_remove = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal() and job.completed_at and job.completed_at < cutoff_time
            ]
            for job_id in jobs_to_remove:
                del self._jobs[job_id]

        if jobs_to_remove:
            log_with_context(
                self.logger,
                "info",
                "Cleaned up old jobs",
                removed_count=len(jobs_to_remove),
                max_age_hours=max_age_hours
            )

        return len(jobs_to_remove)

    def get_all_jobs(self) -> Dict[str, Job]:
        """Get a copy of all jobs in the system."""
        with self._lock:
            return self._jobs.copy()
