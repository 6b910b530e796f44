"""
Transcription service orchestration for the Gemini Document Transcriber.

This module provides the TranscriptionService class which wires the pipeline
together: credentials and model resolution, document splitting, resumable
uploads, model fallback with prompt escalation, sequential job execution and
background batch jobs tracked by the JobManager.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from app.config import Settings, settings as default_settings
from app.document_processor import DocumentProcessor
from app.errors import ChunkTooLargeError, InputValidationError, JobCancelledError, JobFailedError
from app.gemini_client import get_gemini_client, resolve_api_key
from app.job_manager import JobManager
from app.job_sequencer import JobSequencer, JobState
from app.logging_config import get_logger, log_with_context
from app.model_fallback import ModelFallbackOrchestrator
from app.models import ChunkTransferState, FallbackResult, Job, JobStatus, ResourceHandle, UploadUnit
from app.retry import RetryPolicy
from app.title_suggester import DEFAULT_TITLE, suggest_title
from app.transcriber import GeminiTranscriber
from app.upload_client import ResumableUploadClient


# (filename, data, declared_mime_type)
InputFile = tuple[Optional[str], bytes, Optional[str]]


class TranscriptionService:
    """
    Entry point used by the HTTP layer.

    Attributes:
        settings: Configuration in effect
        document_processor: Detects formats and splits large PDFs
        job_manager: Registry of batch jobs
        client_factory: Returns a ``genai.Client`` for an API key
        sleep: Sleep coroutine shared by backoff and pacing
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        document_processor: Optional[DocumentProcessor] = None,
        job_manager: Optional[JobManager] = None,
        client_factory: Callable[[str], Any] = get_gemini_client,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.settings = config or default_settings
        self.document_processor = document_processor or DocumentProcessor(
            max_pages=self.settings.split_max_pages
        )
        self.job_manager = job_manager or JobManager()
        self.client_factory = client_factory
        self.sleep = sleep
        self.logger = get_logger(__name__)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def resolve_api_key(self, caller_key: Optional[str] = None) -> str:
        return resolve_api_key(caller_key, server_key=self.settings.gemini_api_key)

    def resolve_model(self, requested: Optional[str] = None) -> str:
        if requested and requested.strip():
            return requested.strip()
        return self.settings.gemini_model_name

    def _upload_client(self, api_key: Optional[str]) -> ResumableUploadClient:
        return ResumableUploadClient(
            api_key=api_key,
            base_url=self.settings.gemini_api_base_url,
            chunk_size=self.settings.get_upload_chunk_size_bytes(),
            timeout=self.settings.http_timeout_seconds,
        )

    def build_orchestrator(self, api_key: str) -> ModelFallbackOrchestrator:
        transcriber = GeminiTranscriber(self.client_factory(api_key))
        return ModelFallbackOrchestrator(
            transcriber,
            fallback_models=self.settings.get_fallback_models(),
            retry_policy=RetryPolicy(
                max_attempts=self.settings.retry_max_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
            ),
            sleep=self.sleep,
        )

    async def prepare_units(self, files: list[InputFile]) -> list[UploadUnit]:
        """
        Validate input files and turn them into ordered upload units.

        PDF splitting runs in a worker thread.

        Raises:
            InputValidationError: If no file was given, a file is empty,
                too large or of an unsupported type
        """
        if not files:
            raise InputValidationError("No files provided")

        max_size = self.settings.get_max_file_size_bytes()
        for filename, data, _ in files:
            if not data:
                raise InputValidationError(f"File {filename or '(unnamed)'} is empty")
            if len(data) > max_size:
                raise InputValidationError(
                    f"File {filename} is {len(data)} bytes, the limit is "
                    f"{self.settings.max_file_size_mb} MB"
                )
        return await asyncio.to_thread(self.document_processor.prepare_units, files)

    def _is_inline(self, unit: UploadUnit) -> bool:
        limit = self.settings.get_inline_max_size_bytes()
        return limit > 0 and unit.size <= limit

    async def process_unit(
        self,
        unit: UploadUnit,
        api_key: str,
        model: str,
        orchestrator: ModelFallbackOrchestrator,
        cancel_event: Optional[asyncio.Event] = None,
        on_status: Optional[Callable[[str], None]] = None
    ) -> FallbackResult:
        """
        Upload one unit (unless small enough to send inline) and transcribe it.

        The resource handle is obtained once and reused for every model of
        the fallback chain.
        """
        if self._is_inline(unit):
            content = unit
        else:
            if on_status is not None:
                on_status(f"Uploading {unit.name}")
            async with self._upload_client(api_key) as uploader:
                content = await uploader.upload(unit, cancel_event=cancel_event)

        if on_status is not None:
            on_status(f"Transcribing {unit.name} with {model}")
        return await orchestrator.run(
            content,
            model,
            cancel_event=cancel_event,
            on_status=on_status,
            unit_name=unit.name,
        )

    async def transcribe_units(
        self,
        units: list[UploadUnit],
        api_key: str,
        model: str,
        on_progress: Optional[Callable[[JobState], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        job_id: Optional[str] = None
    ) -> JobState:
        """Run the units through the sequencer with one shared orchestrator."""
        orchestrator = self.build_orchestrator(api_key)

        async def process(unit: UploadUnit, event: Optional[asyncio.Event], on_status: Callable[[str], None]) -> FallbackResult:
            return await self.process_unit(unit, api_key, model, orchestrator, event, on_status)

        sequencer = JobSequencer(
            process,
            inter_unit_delay=self.settings.inter_unit_delay_seconds,
            sleep=self.sleep,
        )
        return await sequencer.run(units, on_progress=on_progress, cancel_event=cancel_event, job_id=job_id)

    async def transcribe_files(
        self,
        files: list[InputFile],
        api_key: Optional[str] = None,
        model_name: Optional[str] = None
    ) -> JobState:
        """
        Transcribe files synchronously.

        Raises:
            InputValidationError: On missing key, files or unsupported input
            JobFailedError: If a unit failed; the error carries the partial state
        """
        key = self.resolve_api_key(api_key)
        model = self.resolve_model(model_name)
        units = await self.prepare_units(files)
        return await self.transcribe_units(units, key, model)

    async def transcribe_uri(
        self,
        file_uri: str,
        mime_type: str,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None
    ) -> FallbackResult:
        """Transcribe a file that was already uploaded, e.g. through the upload proxy."""
        if not file_uri or not file_uri.strip():
            raise InputValidationError("file_uri is required")
        key = self.resolve_api_key(api_key)
        model = self.resolve_model(model_name)
        handle = ResourceHandle(uri=file_uri.strip(), mime_type=mime_type or "application/pdf")
        return await self.build_orchestrator(key).run(handle, model, unit_name=handle.uri)

    async def start_batch(
        self,
        files: list[InputFile],
        api_key: Optional[str] = None,
        model_name: Optional[str] = None
    ) -> str:
        """
        Validate the input and start a background job.

        Input errors are raised here, before a job exists.

        Returns:
            The job_id to poll
        """
        key = self.resolve_api_key(api_key)
        model = self.resolve_model(model_name)
        units = await self.prepare_units(files)

        job_id = self.job_manager.create_job([name or "" for name, _, _ in files])
        cancel_event = asyncio.Event()
        self._cancel_events[job_id] = cancel_event
        task = asyncio.create_task(self._run_batch_job(job_id, units, key, model, cancel_event))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._forget(job_id))
        return job_id

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._cancel_events.pop(job_id, None)

    async def _run_batch_job(
        self,
        job_id: str,
        units: list[UploadUnit],
        api_key: str,
        model: str,
        cancel_event: asyncio.Event
    ) -> None:
        def on_progress(state: JobState) -> None:
            self.job_manager.update_progress(
                job_id,
                transcription=state.accumulated_text if state.segments else None,
                progress=state.status_text,
                model_used=state.last_model_used,
                used_fallback=state.used_fallback,
            )

        self.job_manager.update_job_status(job_id, JobStatus.PROCESSING)
        log_with_context(self.logger, "info", "Processing job", job_id=job_id, model=model, unit_count=len(units))

        try:
            state = await self.transcribe_units(
                units, api_key, model, on_progress=on_progress, cancel_event=cancel_event, job_id=job_id
            )
        except JobCancelledError as e:
            partial = e.state.accumulated_text if e.state is not None else None
            self.job_manager.update_job_status(job_id, JobStatus.CANCELLED, transcription=partial)
        except JobFailedError as e:
            self.job_manager.update_job_status(
                job_id,
                JobStatus.FAILED,
                transcription=e.state.accumulated_text,
                error_message=str(e),
            )
        except Exception as e:
            log_with_context(self.logger, "error", "Job failed - unexpected error", job_id=job_id, error=e)
            self.job_manager.update_job_status(
                job_id,
                JobStatus.FAILED,
                error_message=f"Unexpected error during job processing: {e}",
            )
        else:
            self.job_manager.update_job_status(job_id, JobStatus.COMPLETED, transcription=state.accumulated_text)

    def get_batch_status(self, job_id: str) -> Optional[Job]:
        return self.job_manager.get_job(job_id)

    def cancel_batch(self, job_id: str) -> Job:
        """
        Ask a job to stop. The job stops before its next unit or chunk and
        keeps the text of the units already finished.

        Raises:
            KeyError: If the job does not exist
        """
        job = self.job_manager.get_job(job_id)
        if job is None:
            raise KeyError(f"Job with id {job_id} not found")

        event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
            log_with_context(self.logger, "info", "Job cancellation requested", job_id=job_id)
        elif not job.is_terminal():
            self.job_manager.update_job_status(job_id, JobStatus.CANCELLED)
        return job

    async def start_upload(
        self,
        mime_type: str,
        display_name: str,
        size: int,
        api_key: Optional[str] = None
    ) -> str:
        """Negotiate a resumable upload on behalf of a client and return the session URL."""
        if size <= 0:
            raise InputValidationError("size must be positive")
        key = self.resolve_api_key(api_key)
        async with self._upload_client(key) as uploader:
            session = await uploader.start_session(mime_type, display_name, size)
        return session.upload_url

    async def forward_chunk(
        self,
        upload_url: str,
        offset: int,
        total_size: int,
        data: bytes
    ) -> Optional[ResourceHandle]:
        """
        Relay one chunk of a client-driven upload.

        Returns:
            The resource handle once the last chunk finalized the upload,
            otherwise None
        """
        if not data:
            raise InputValidationError("Chunk is empty")
        if len(data) > self.settings.get_proxy_chunk_size_bytes():
            raise ChunkTooLargeError(f"Chunk exceeds {self.settings.proxy_chunk_size_mb} MB")

        async with self._upload_client(None) as uploader:
            session = uploader.resume_session(upload_url, total_size, offset)
            chunk = ChunkTransferState(
                offset=offset,
                chunk_size=len(data),
                is_final=offset + len(data) >= total_size,
            )
            return await uploader.send_chunk(session, chunk, data)

    async def suggest_title(self, text: str, api_key: Optional[str] = None) -> str:
        """Suggest a file name; falls back to the default name on any failure."""
        try:
            client = self.client_factory(self.resolve_api_key(api_key))
        except InputValidationError:
            return DEFAULT_TITLE
        return await suggest_title(client, text, model=self.settings.gemini_title_model)

    def cleanup_old_jobs(self, max_age_hours: Optional[int] = None) -> int:
        """Remove finished jobs older than ``max_age_hours`` (default from settings)."""
        if max_age_hours is None:
            max_age_hours = self.settings.job_cleanup_max_age_hours
        return self.job_manager.cleanup_old_jobs(max_age_hours)

    async def shutdown(self) -> None:
        """Cancel running batch jobs and wait for their tasks to finish."""
        self.logger.info("Shutting down TranscriptionService")
        for event in list(self._cancel_events.values()):
            event.set()
        running = dict(self._tasks)
        for task in running.values():
            task.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)

        # Tasks cancelled mid-flight never reach their own status update
        for job_id in running:
            job = self.job_manager.get_job(job_id)
            if job is not None and not job.is_terminal():
                self.job_manager.update_job_status(job_id, JobStatus.CANCELLED, error_message="Server shutting down")
        self.logger.info("TranscriptionService shutdown complete")
