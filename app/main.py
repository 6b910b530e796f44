"""
FastAPI application for the Gemini Document Transcriber.

This module initializes the FastAPI application with CORS configuration,
request logging, exception handlers for consistent error responses and the
transcription, upload proxy and title endpoints.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

from app.api_models import (
    BatchStatusResponse,
    BatchTranscribeResponse,
    ErrorResponse,
    HealthResponse,
    TitleRequest,
    TitleResponse,
    TranscribeResponse,
    TranscribeUriRequest,
    UploadChunkResponse,
    UploadInitRequest,
    UploadInitResponse,
)
from app.config import settings
from app.errors import (
    ChunkTooLargeError,
    ContentPolicyBlock,
    InputValidationError,
    JobCancelledError,
    JobFailedError,
    TranscriberError,
    TransientError,
    UploadError,
)
from app.logging_config import get_logger, log_with_context, setup_logging
from app.models import Job
from app.transcription_service import InputFile, TranscriptionService

# Configure structured logging
setup_logging(
    log_level=settings.log_level.value,
    use_json=True
)
logger = get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600

# Global transcription service instance
transcription_service: Optional[TranscriptionService] = None


async def cleanup_jobs_periodically(service: TranscriptionService, interval_seconds: float) -> None:
    """Drop finished jobs older than the configured age, once per interval."""
    while True:
        await asyncio.sleep(interval_seconds)
        service.cleanup_old_jobs()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Creates the transcription service and the job cleanup task on startup,
    and cancels running jobs on shutdown.
    """
    global transcription_service

    logger.info("Gemini Document Transcriber starting up...")
    logger.info(settings.display())

    transcription_service = TranscriptionService()
    cleanup_task = asyncio.create_task(
        cleanup_jobs_periodically(transcription_service, CLEANUP_INTERVAL_SECONDS)
    )
    logger.info("Application startup complete")

    yield

    logger.info("Gemini Document Transcriber shutting down...")
    cleanup_task.cancel()
    await asyncio.gather(cleanup_task, return_exceptions=True)
    await transcription_service.shutdown()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Gemini Document Transcriber",
    description="""
    Verbatim transcription of scanned documents and images with Google Gemini.

    ## Features

    * **Large files**: PDFs are split into parts of a few pages and uploaded with
      Google's resumable upload protocol
    * **Content-policy escalation**: a refused page is retried once with a
      document-restoration prompt
    * **Model fallback**: overloaded models are retried with backoff, then the
      next model of the chain takes over
    * **Ordered batches**: files are processed one after another and their text
      is joined in input order

    ## API Workflow

    ### Batch Transcription
    1. Upload files to `POST /api/v1/transcribe/batch`
    2. Poll `GET /api/v1/transcribe/batch/{job_id}`; partial text grows as units finish
    3. Abort with `DELETE /api/v1/transcribe/batch/{job_id}` if needed

    ### Browser-driven Upload
    1. `POST /api/v1/upload/init` returns an upload session URL
    2. Send the file in order through `POST /api/v1/upload/chunk`
    3. Transcribe the finalized file with `POST /api/v1/transcribe` and its `file_uri`
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status code and processing time."""
    log_with_context(
        logger,
        "info",
        "Incoming request",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else "unknown"
    )

    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    log_with_context(
        logger,
        "info",
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2)
    )
    return response


def error_content(code: str, message: str, details: Any = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details}}


def error_status(exc: TranscriberError) -> tuple[int, str]:
    """Map a pipeline error onto an HTTP status and error code."""
    if isinstance(exc, JobFailedError) and isinstance(exc.__cause__, TranscriberError):
        return error_status(exc.__cause__)
    if isinstance(exc, ChunkTooLargeError):
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "CHUNK_TOO_LARGE"
    if isinstance(exc, InputValidationError):
        return status.HTTP_400_BAD_REQUEST, "INVALID_INPUT"
    if isinstance(exc, ContentPolicyBlock):
        return status.HTTP_422_UNPROCESSABLE_ENTITY, "CONTENT_POLICY_BLOCK"
    if isinstance(exc, TransientError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, "UPSTREAM_UNAVAILABLE"
    if isinstance(exc, UploadError):
        return status.HTTP_502_BAD_GATEWAY, "UPLOAD_FAILED"
    if isinstance(exc, JobCancelledError):
        return status.HTTP_409_CONFLICT, "JOB_CANCELLED"
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "TRANSCRIPTION_FAILED"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Return 400 Bad Request for malformed requests."""
    log_with_context(
        logger,
        "warning",
        "Validation error",
        path=request.url.path,
        method=request.method,
        errors=str(exc.errors())
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_content("VALIDATION_ERROR", "Invalid request data", jsonable_errors(exc.errors()))
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(
    request: Request,
    exc: ValidationError
) -> JSONResponse:
    """Return 400 Bad Request for request bodies validated inside an endpoint."""
    log_with_context(
        logger,
        "warning",
        "Pydantic validation error",
        path=request.url.path,
        method=request.method,
        errors=str(exc.errors())
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_content("VALIDATION_ERROR", "Invalid data format", jsonable_errors(exc.errors()))
    )


def jsonable_errors(errors: list) -> list:
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in errors
    ]


@app.exception_handler(ValueError)
async def value_error_exception_handler(
    request: Request,
    exc: ValueError
) -> JSONResponse:
    """Return 400 Bad Request, e.g. for a JSON body that does not parse."""
    log_with_context(
        logger,
        "warning",
        "ValueError",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_content("INVALID_INPUT", str(exc))
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass through error bodies raised by endpoints without FastAPI's ``detail`` wrapper."""
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_content("HTTP_ERROR", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(TranscriberError)
async def transcriber_exception_handler(
    request: Request,
    exc: TranscriberError
) -> JSONResponse:
    """
    Map pipeline errors onto HTTP responses.

    A failed job reports the status of the error that stopped it and keeps
    the text of the units finished before it in ``details.partial_text``.
    """
    status_code, code = error_status(exc)
    details = None
    if isinstance(exc, JobFailedError):
        details = {
            "partial_text": exc.state.accumulated_text,
            "completed_units": len(exc.state.segments),
            "total_units": len(exc.state.units),
        }

    log_with_context(
        logger,
        "error" if status_code >= 500 else "warning",
        "Request failed",
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        error=exc
    )
    return JSONResponse(status_code=status_code, content=error_content(code, str(exc), details))


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Return 500 Internal Server Error for unexpected errors."""
    log_with_context(
        logger,
        "error",
        "Unexpected error",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_content("INTERNAL_ERROR", "An unexpected error occurred", str(exc))
    )


def get_service() -> TranscriptionService:
    if not transcription_service:
        logger.error("Transcription service not available")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_content("SERVICE_UNAVAILABLE", "Transcription service is not available")
        )
    return transcription_service


def job_not_found(job_id: str) -> HTTPException:
    log_with_context(logger, "warning", "Job not found", job_id=job_id)
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_content("JOB_NOT_FOUND", f"Job with ID {job_id} not found")
    )


def batch_status(job: Job) -> BatchStatusResponse:
    return BatchStatusResponse(
        job_id=job.job_id,
        status=job.status.value,
        transcription=job.transcription,
        progress=job.progress,
        model_used=job.model_used,
        used_fallback=job.used_fallback,
        error=job.error_message
    )


async def read_files(uploads: list) -> list[InputFile]:
    files: list[InputFile] = []
    for upload in uploads:
        if isinstance(upload, StarletteUploadFile):
            files.append((upload.filename, await upload.read(), upload.content_type))
    return files


def form_text(form, key: str) -> Optional[str]:
    value = form.get(key)
    return value if isinstance(value, str) else None


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Check service health status"
)
async def health_check() -> HealthResponse:
    """
    Report whether the service runs and which models it is configured with.

    The API key itself is never returned, only whether one is configured.
    """
    return HealthResponse(
        status="healthy" if transcription_service else "starting",
        api_key_configured=settings.gemini_api_key is not None,
        model=settings.gemini_model_name,
        fallback_models=settings.get_fallback_models()
    )


@app.post(
    "/api/v1/transcribe",
    response_model=TranscribeResponse,
    tags=["Transcription"],
    summary="Transcribe files or an uploaded file synchronously",
    responses={
        400: {"model": ErrorResponse, "description": "Missing file, key or unsupported input"},
        422: {"model": ErrorResponse, "description": "Blocked under both prompt framings"},
        502: {"model": ErrorResponse, "description": "Upload to the file store failed"},
        503: {"model": ErrorResponse, "description": "Every model of the chain is unavailable"},
    }
)
async def transcribe(request: Request) -> TranscribeResponse:
    """
    Transcribe and wait for the result.

    Accepts either:

    - a JSON body ``{"file_uri", "mime_type", "api_key"?, "model_name"?}`` for a
      file uploaded through the upload proxy, or
    - a multipart form with one or more ``files`` (plus optional ``api_key`` and
      ``model_name``), processed in order through the full pipeline.

    Example (curl):
        ```bash
        curl -X POST http://localhost:8000/api/v1/transcribe \\
             -F "files=@scan.pdf" -F "model_name=gemini-2.5-flash"
        ```
    """
    service = get_service()
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        body = TranscribeUriRequest.model_validate(await request.json())
        result = await service.transcribe_uri(
            body.file_uri,
            body.mime_type,
            api_key=body.api_key,
            model_name=body.model_name
        )
        return TranscribeResponse(
            text=result.text,
            model_used=result.model_used,
            used_fallback=result.used_fallback
        )

    form = await request.form()
    files = await read_files(form.getlist("files") or form.getlist("file"))
    if not files:
        raise InputValidationError("No file provided")

    state = await service.transcribe_files(
        files,
        api_key=form_text(form, "api_key"),
        model_name=form_text(form, "model_name")
    )
    return TranscribeResponse(
        text=state.accumulated_text,
        model_used=state.last_model_used,
        used_fallback=state.used_fallback
    )


@app.post(
    "/api/v1/transcribe/batch",
    response_model=BatchTranscribeResponse,
    status_code=status.HTTP_200_OK,
    tags=["Transcription"],
    summary="Start a background transcription job",
    responses={
        400: {"model": ErrorResponse, "description": "Missing file, key or unsupported input"},
    }
)
async def create_batch_transcription(
    files: list[UploadFile] = File(..., description="Images or PDFs, in the order their text should appear"),
    api_key: Optional[str] = Form(None),
    model_name: Optional[str] = Form(None)
) -> BatchTranscribeResponse:
    """
    Upload files for background transcription.

    Input errors (no key, unsupported type, empty or oversized file) are
    reported here, before a job is created. Poll the returned job id with
    ``GET /api/v1/transcribe/batch/{job_id}``.
    """
    service = get_service()
    job_id = await service.start_batch(await read_files(files), api_key=api_key, model_name=model_name)

    log_with_context(logger, "info", "Batch transcription job created", job_id=job_id, file_count=len(files))
    return BatchTranscribeResponse(job_id=job_id, status="pending")


@app.get(
    "/api/v1/transcribe/batch/{job_id}",
    response_model=BatchStatusResponse,
    tags=["Transcription"],
    summary="Get batch transcription job status and result",
    responses={404: {"model": ErrorResponse, "description": "Job not found"}}
)
async def get_batch_transcription_status(job_id: str) -> BatchStatusResponse:
    """
    Get the status of a batch job.

    While the job runs, ``transcription`` holds the text of the units
    finished so far and ``progress`` the latest status line. A failed or
    cancelled job keeps its partial text.
    """
    job = get_service().get_batch_status(job_id)
    if not job:
        raise job_not_found(job_id)
    return batch_status(job)


@app.delete(
    "/api/v1/transcribe/batch/{job_id}",
    response_model=BatchStatusResponse,
    tags=["Transcription"],
    summary="Cancel a batch transcription job",
    responses={404: {"model": ErrorResponse, "description": "Job not found"}}
)
async def cancel_batch_transcription(job_id: str) -> BatchStatusResponse:
    """
    Ask a running job to stop.

    No further unit or chunk is started; a request already in flight is
    allowed to finish. Poll the job to see it reach ``cancelled``.
    """
    try:
        job = get_service().cancel_batch(job_id)
    except KeyError:
        raise job_not_found(job_id)
    return batch_status(job)


@app.post(
    "/api/v1/upload/init",
    response_model=UploadInitResponse,
    tags=["Upload"],
    summary="Negotiate a resumable upload session"
)
async def init_upload(body: UploadInitRequest) -> UploadInitResponse:
    """
    Start a resumable upload on behalf of a browser client and return the
    session URL. Chunks are then sent through ``POST /api/v1/upload/chunk``.
    """
    upload_url = await get_service().start_upload(
        body.mime_type,
        body.display_name,
        body.size,
        api_key=body.api_key
    )
    return UploadInitResponse(upload_url=upload_url)


@app.post(
    "/api/v1/upload/chunk",
    response_model=UploadChunkResponse,
    tags=["Upload"],
    summary="Relay one chunk of a resumable upload",
    responses={413: {"model": ErrorResponse, "description": "Chunk exceeds the proxy chunk size"}}
)
async def upload_chunk(
    chunk: UploadFile = File(...),
    upload_url: str = Form(...),
    offset: int = Form(..., ge=0),
    total_size: int = Form(..., gt=0)
) -> UploadChunkResponse:
    """
    Forward one chunk to the upload session.

    Chunks must be sent in order; the chunk that reaches ``total_size``
    finalizes the upload and the response carries the stored file.
    """
    data = await chunk.read()
    handle = await get_service().forward_chunk(upload_url, offset, total_size, data)
    if handle is None:
        return UploadChunkResponse(status="active")
    return UploadChunkResponse(status="finalized", file=asdict(handle))


@app.post(
    "/api/v1/title",
    response_model=TitleResponse,
    tags=["Transcription"],
    summary="Suggest a file name for a transcription"
)
async def suggest_title(body: TitleRequest) -> TitleResponse:
    """Suggest a short file name; falls back to ``transcription`` instead of failing."""
    title = await get_service().suggest_title(body.text, api_key=body.api_key)
    return TitleResponse(title=title)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
