"""
Configuration management for the Gemini Document Transcriber.

This module provides configuration settings for the transcription pipeline,
including credentials, the model chain, upload chunking, retry pacing and
other operational parameters.

Uses Pydantic Settings for robust environment variable management with
validation and type safety.
"""

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIB = 1024 * 1024


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Configuration settings for the transcription service.

    All settings can be overridden using environment variables.
    Pydantic Settings provides automatic validation and type conversion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Gemini credentials and models
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="Server-side Gemini API key (takes precedence over caller keys)",
        alias="GEMINI_API_KEY"
    )

    gemini_model_name: str = Field(
        default="gemini-3-pro-preview",
        min_length=1,
        description="Primary model used when the caller does not request one",
        alias="GEMINI_MODEL_NAME"
    )

    gemini_fallback_models: str = Field(
        default="gemini-2.5-flash,gemini-2.0-flash",
        description="Comma-separated fallback models tried after the primary",
        alias="GEMINI_FALLBACK_MODELS"
    )

    gemini_title_model: str = Field(
        default="gemini-2.5-flash",
        description="Model used for filename suggestions",
        alias="GEMINI_TITLE_MODEL"
    )

    gemini_api_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the Gemini API (used for resumable uploads)",
        alias="GEMINI_API_BASE_URL"
    )

    # Upload configuration
    upload_chunk_size_mb: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Chunk size for direct resumable uploads (in megabytes)",
        alias="UPLOAD_CHUNK_SIZE_MB"
    )

    proxy_chunk_size_mb: int = Field(
        default=2,
        ge=1,
        le=64,
        description="Chunk size accepted by the upload proxy routes (in megabytes)",
        alias="PROXY_CHUNK_SIZE_MB"
    )

    inline_max_size_mb: int = Field(
        default=0,
        ge=0,
        le=20,
        description="Units up to this size are sent inline instead of uploaded (0 = always upload)",
        alias="INLINE_MAX_SIZE_MB"
    )

    max_file_size_mb: int = Field(
        default=500,
        ge=1,
        le=2048,
        description="Maximum input file size in megabytes",
        alias="MAX_FILE_SIZE_MB"
    )

    http_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for upload HTTP requests (in seconds)",
        alias="HTTP_TIMEOUT_SECONDS"
    )

    # Document splitting
    split_max_pages: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="PDFs with more pages than this are split into parts of this size",
        alias="SPLIT_MAX_PAGES"
    )

    # Retry and pacing
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per model before falling back to the next one",
        alias="RETRY_MAX_ATTEMPTS"
    )

    retry_base_delay_seconds: float = Field(
        default=1.5,
        ge=0,
        le=60,
        description="Base delay of the exponential backoff (in seconds)",
        alias="RETRY_BASE_DELAY_SECONDS"
    )

    inter_unit_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        le=60,
        description="Pause between consecutive units to respect rate limits (in seconds)",
        alias="INTER_UNIT_DELAY_SECONDS"
    )

    # API configuration
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port to expose the API",
        alias="API_PORT"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
        alias="API_HOST"
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
        alias="LOG_LEVEL"
    )

    # Job cleanup configuration
    job_cleanup_max_age_hours: int = Field(
        default=24,
        ge=1,
        le=720,
        description="Maximum age of finished jobs before cleanup (in hours)",
        alias="JOB_CLEANUP_MAX_AGE_HOURS"
    )

    @field_validator("gemini_api_key")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty or whitespace-only key as not configured."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("proxy_chunk_size_mb")
    @classmethod
    def validate_proxy_chunk_size(cls, v: int, info) -> int:
        """Ensure proxied chunks are not larger than direct upload chunks."""
        direct = info.data.get("upload_chunk_size_mb", 8)
        if v > direct:
            raise ValueError(
                f"proxy_chunk_size_mb ({v}) must be <= upload_chunk_size_mb ({direct})"
            )
        return v

    def get_fallback_models(self) -> list[str]:
        """Get the fallback model list, in priority order."""
        return [m.strip() for m in self.gemini_fallback_models.split(",") if m.strip()]

    def get_upload_chunk_size_bytes(self) -> int:
        return self.upload_chunk_size_mb * MIB

    def get_proxy_chunk_size_bytes(self) -> int:
        return self.proxy_chunk_size_mb * MIB

    def get_inline_max_size_bytes(self) -> int:
        return self.inline_max_size_mb * MIB

    def get_max_file_size_bytes(self) -> int:
        """Get maximum file size in bytes."""
        return self.max_file_size_mb * MIB

    def display(self) -> str:
        """
        Get a formatted string of all configuration settings.

        The API key itself is never printed, only whether one is configured.

        Returns:
            Formatted configuration string
        """
        return f"""
Gemini Document Transcriber Configuration:
==========================================
API Key Configured: {self.gemini_api_key is not None}
Primary Model: {self.gemini_model_name}
Fallback Models: {", ".join(self.get_fallback_models()) or "(none)"}
Title Model: {self.gemini_title_model}
Upload Chunk Size: {self.upload_chunk_size_mb} MB
Proxy Chunk Size: {self.proxy_chunk_size_mb} MB
Inline Max Size: {self.inline_max_size_mb} MB
Max File Size: {self.max_file_size_mb} MB
Split Max Pages: {self.split_max_pages}
Retry: {self.retry_max_attempts} attempts, base delay {self.retry_base_delay_seconds}s
Inter-unit Delay: {self.inter_unit_delay_seconds}s
API Host: {self.api_host}
API Port: {self.api_port}
Log Level: {self.log_level.value}
Job Cleanup Max Age: {self.job_cleanup_max_age_hours} hours
"""


# Create a global settings instance
# This will be imported and used throughout the application
settings = Settings()
