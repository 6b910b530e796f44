"""
API request and response models for the Gemini Document Transcriber.

This module defines Pydantic models for API request validation and
response serialization, ensuring consistent data structures across
all endpoints.
"""

from typing import Any, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict


class TranscribeUriRequest(BaseModel):
    """
    JSON body for transcribing a file that was uploaded through the proxy.

    Attributes:
        file_uri: URI returned by the finalized upload
        mime_type: Media type of the uploaded file
        api_key: Caller key, used only when the server has none configured
        model_name: Requested primary model
    """
    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "file_uri": "https://generativelanguage.googleapis.com/v1beta/files/abc123",
                "mime_type": "application/pdf",
                "model_name": "gemini-2.5-flash"
            }
        }
    )

    file_uri: str = Field(..., min_length=1, description="URI of the uploaded file")
    mime_type: str = Field("application/pdf", description="Media type of the file")
    api_key: Optional[str] = Field(None, description="Gemini API key (server key takes precedence)")
    model_name: Optional[str] = Field(None, description="Requested primary model")


class TranscribeResponse(BaseModel):
    """Result of a synchronous transcription."""
    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "text": "INVOICE No. 1042\n\nTotal due: 310.00 EUR",
                "model_used": "gemini-2.5-flash",
                "used_fallback": True
            }
        }
    )

    text: str = Field(..., description="Transcribed text, units separated by a blank line")
    model_used: Optional[str] = Field(None, description="Model that produced the last unit")
    used_fallback: bool = Field(..., description="Whether a fallback model produced any unit")


class BatchTranscribeResponse(BaseModel):
    """
    Response model for batch transcription job creation.

    Attributes:
        job_id: Unique identifier for tracking the transcription job
        status: Current job status (typically "pending" for new jobs)
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "pending"
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")


class BatchStatusResponse(BaseModel):
    """
    Response model for batch transcription job status query.

    ``transcription`` grows while the job runs and is kept when the job
    fails or is cancelled, holding the text of every finished unit.
    """
    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "processing",
                "transcription": "Page one text",
                "progress": "Processing unit 2 of 3: scan_part2.pdf",
                "model_used": "gemini-3-pro-preview",
                "used_fallback": False,
                "error": None
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")
    transcription: Optional[str] = Field(None, description="Text accumulated so far")
    progress: Optional[str] = Field(None, description="Latest status line")
    model_used: Optional[str] = Field(None, description="Model that produced the latest unit")
    used_fallback: bool = Field(False, description="Whether a fallback model produced any unit")
    error: Optional[str] = Field(None, description="Error message (when failed)")


class UploadInitRequest(BaseModel):
    """Body of an upload negotiation request."""
    mime_type: str = Field(..., min_length=1, description="Media type of the file")
    display_name: str = Field(..., min_length=1, description="Name shown for the stored file")
    size: int = Field(..., gt=0, description="Total size of the file in bytes")
    api_key: Optional[str] = Field(None, description="Gemini API key (server key takes precedence)")


class UploadInitResponse(BaseModel):
    upload_url: str = Field(..., description="Session URL that chunks are sent to")


class UploadChunkResponse(BaseModel):
    """
    Outcome of a proxied chunk.

    ``file`` is only set once the final chunk finalized the upload.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "finalized",
                "file": {
                    "uri": "https://generativelanguage.googleapis.com/v1beta/files/abc123",
                    "mime_type": "application/pdf",
                    "name": "files/abc123",
                    "display_name": "scan.pdf"
                }
            }
        }
    )

    status: Literal["active", "finalized"] = Field(..., description="Upload state after the chunk")
    file: Optional[dict[str, Any]] = Field(None, description="Stored file (when finalized)")


class TitleRequest(BaseModel):
    text: str = Field(..., description="Transcribed text to name")
    api_key: Optional[str] = Field(None, description="Gemini API key (server key takes precedence)")


class TitleResponse(BaseModel):
    title: str = Field(..., description="Filesystem-safe name without extension")


class HealthResponse(BaseModel):
    """
    Response model for health check endpoint.

    Attributes:
        status: Overall service health status
        api_key_configured: Whether a server-side API key is set
        model: Primary model used when requests do not name one
        fallback_models: Models tried after the primary
    """
    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "status": "healthy",
                "api_key_configured": True,
                "model": "gemini-3-pro-preview",
                "fallback_models": ["gemini-2.5-flash", "gemini-2.0-flash"]
            }
        }
    )

    status: str = Field(..., description="Service health status")
    api_key_configured: bool = Field(..., description="Whether a server API key is configured")
    model: str = Field(..., description="Configured primary model")
    fallback_models: list[str] = Field(default_factory=list, description="Configured fallback models")


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    All API errors return this consistent structure.
    """

    class ErrorDetail(BaseModel):
        """Error detail structure."""
        code: str = Field(..., description="Error code")
        message: str = Field(..., description="Human-readable error message")
        details: Optional[Any] = Field(None, description="Additional error context")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "CONTENT_POLICY_BLOCK",
                    "message": "Blocked under both prompt framings on gemini-2.5-flash",
                    "details": {"partial_text": "Page one text"}
                }
            }
        }
    )

    error: ErrorDetail = Field(..., description="Error information")
