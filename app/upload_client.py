"""
Resumable upload client for the Gemini Files API.

Large documents cannot be sent inline with a generation request, so they are
stored upstream first using Google's resumable upload protocol:

1. Negotiate: a ``start`` request declares the size, media type and display
   name and returns a session URL in the ``x-goog-upload-url`` header.
2. Transfer: the payload is sent to the session URL as contiguous byte ranges,
   one request at a time. Every chunk carries its offset and an
   ``upload`` command; the last one carries ``upload, finalize``.
3. The finalize response holds the file resource whose ``uri`` is the handle
   used by generation requests.

The session is single-writer. Chunks are awaited one after another and the
next offset is only computed from an acknowledged chunk.
"""

import asyncio
import json
from typing import Optional

import httpx

from app.errors import InputValidationError, JobCancelledError, UploadError
from app.logging_config import get_logger, log_with_context
from app.models import ChunkTransferState, ResourceHandle, UploadSession, UploadState, UploadUnit


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024

# Google's upload server requires every non-final chunk to be a multiple of this
CHUNK_GRANULARITY = 256 * 1024

UPLOAD_URL_HEADER = "x-goog-upload-url"
UPLOAD_STATUS_HEADER = "x-goog-upload-status"


def plan_chunks(total_size: int, chunk_size: int) -> list[ChunkTransferState]:
    """
    Split ``total_size`` bytes into contiguous chunks of ``chunk_size``.

    Offsets run 0, C, 2C, ...; the last chunk ends exactly at ``total_size``
    and is the only one flagged final.
    """
    if total_size <= 0:
        raise ValueError("total_size must be positive")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    chunks = []
    for offset in range(0, total_size, chunk_size):
        size = min(chunk_size, total_size - offset)
        chunks.append(ChunkTransferState(offset=offset, chunk_size=size, is_final=offset + size >= total_size))
    return chunks


class ResumableUploadClient:
    """
    Uploads upload units to the Gemini Files API in fixed-size chunks.

    Args:
        api_key: Gemini API key, needed to negotiate sessions only
        base_url: API root, without a trailing slash
        chunk_size: Bytes per chunk; must be a multiple of 256 KiB
        timeout: Per-request timeout in seconds
        http_client: Optional shared ``httpx.AsyncClient`` (not closed by this client)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        if chunk_size <= 0 or chunk_size % CHUNK_GRANULARITY != 0:
            raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_GRANULARITY} bytes")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger(__name__)

    async def __aenter__(self) -> "ResumableUploadClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def negotiate_url(self) -> str:
        return f"{self.base_url}/upload/v1beta/files"

    async def start_session(self, mime_type: str, display_name: str, total_size: int) -> UploadSession:
        """
        Negotiate a resumable upload session.

        Raises:
            InputValidationError: If the client has no API key
            UploadError: If the request fails or no session URL is returned
        """
        if not self.api_key:
            raise InputValidationError("An API key is required to upload files")

        session = UploadSession(
            endpoint=self.negotiate_url,
            upload_url=None,
            total_size=total_size,
            mime_type=mime_type,
            display_name=display_name,
        )
        headers = {
            "x-goog-api-key": self.api_key,
            "X-Goog-Upload-Protocol": "resumable",
            "X-Goog-Upload-Command": "start",
            "X-Goog-Upload-Header-Content-Length": str(total_size),
            "X-Goog-Upload-Header-Content-Type": mime_type,
            "Content-Type": "application/json",
        }
        body = {"file": {"display_name": display_name}}

        try:
            response = await self._client.post(session.endpoint, headers=headers, json=body)
        except httpx.HTTPError as e:
            session.state = UploadState.FAILED
            raise UploadError(f"Upload negotiation failed: {e}") from e

        if not response.is_success:
            session.state = UploadState.FAILED
            raise UploadError(
                f"Upload negotiation failed: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        upload_url = response.headers.get(UPLOAD_URL_HEADER)
        if not upload_url:
            session.state = UploadState.FAILED
            raise UploadError(
                "Upload negotiation returned no session URL",
                status_code=response.status_code,
                body=response.text,
            )

        session.upload_url = upload_url
        session.state = UploadState.TRANSFERRING
        log_with_context(
            self.logger,
            "info",
            "Upload session negotiated",
            unit=display_name,
            total_size=total_size,
            mime_type=mime_type,
        )
        return session

    def resume_session(self, upload_url: str, total_size: int, offset: int = 0) -> UploadSession:
        """
        Rebuild a session negotiated earlier, e.g. by a browser through the
        upload proxy, so its remaining chunks can be sent.

        Raises:
            InputValidationError: If the URL does not point at the upload
                endpoint or the offset is outside the file
        """
        if not upload_url.startswith(self.negotiate_url):
            raise InputValidationError("Upload URL does not belong to the Gemini upload endpoint")
        if total_size <= 0 or not 0 <= offset < total_size:
            raise InputValidationError(f"Invalid offset {offset} for upload of {total_size} bytes")

        return UploadSession(
            endpoint=self.negotiate_url,
            upload_url=upload_url,
            total_size=total_size,
            mime_type="",
            display_name="",
            state=UploadState.TRANSFERRING,
            offset=offset,
        )

    async def send_chunk(
        self,
        session: UploadSession,
        chunk: ChunkTransferState,
        data: bytes
    ) -> Optional[ResourceHandle]:
        """
        Transmit one chunk of a session.

        Returns:
            The resource handle when ``chunk`` is final and the upload was
            finalized; None when the remote expects more chunks

        Raises:
            UploadError: On any response outside the protocol
        """
        if session.state is not UploadState.TRANSFERRING or not session.upload_url:
            raise UploadError(f"Cannot send chunks in upload state {session.state.value}")
        if chunk.offset != session.offset:
            raise UploadError(
                f"Chunk offset {chunk.offset} does not continue acknowledged offset {session.offset}"
            )
        if len(data) != chunk.chunk_size:
            raise UploadError(f"Chunk data is {len(data)} bytes, expected {chunk.chunk_size}")

        headers = {
            "Content-Length": str(chunk.chunk_size),
            "X-Goog-Upload-Offset": str(chunk.offset),
            "X-Goog-Upload-Command": "upload, finalize" if chunk.is_final else "upload",
        }

        try:
            response = await self._client.put(session.upload_url, headers=headers, content=data)
        except httpx.HTTPError as e:
            session.state = UploadState.FAILED
            raise UploadError(f"Chunk upload failed at offset {chunk.offset}: {e}") from e

        status_code = response.status_code
        upload_status = (response.headers.get(UPLOAD_STATUS_HEADER) or "").lower()

        if not chunk.is_final:
            incomplete = status_code == 308 or (
                response.is_success and upload_status == "active"
            )
            if not incomplete:
                session.state = UploadState.FAILED
                raise UploadError(
                    f"Unexpected response to chunk at offset {chunk.offset}: {status_code} {response.text}",
                    status_code=status_code,
                    body=response.text,
                )
            session.offset = chunk.end
            return None

        if not response.is_success:
            session.state = UploadState.FAILED
            raise UploadError(
                f"Upload finalization failed: {status_code} {response.text}",
                status_code=status_code,
                body=response.text,
            )

        handle = self._parse_handle(response, session)
        session.offset = chunk.end
        session.state = UploadState.FINALIZED
        return handle

    def _parse_handle(self, response: httpx.Response, session: UploadSession) -> ResourceHandle:
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            session.state = UploadState.FAILED
            raise UploadError(
                f"Upload finalization returned invalid JSON: {response.text}",
                status_code=response.status_code,
                body=response.text,
            ) from e

        file_info = payload.get("file") if isinstance(payload, dict) else None
        uri = file_info.get("uri") if isinstance(file_info, dict) else None
        if not uri:
            session.state = UploadState.FAILED
            raise UploadError(
                "Upload finalized without a file URI",
                status_code=response.status_code,
                body=response.text,
            )

        return ResourceHandle(
            uri=uri,
            mime_type=file_info.get("mimeType") or session.mime_type,
            name=file_info.get("name"),
            display_name=file_info.get("displayName") or session.display_name,
        )

    async def upload(self, unit: UploadUnit, cancel_event: Optional[asyncio.Event] = None) -> ResourceHandle:
        """
        Upload a unit and return its resource handle.

        Args:
            unit: The unit to upload
            cancel_event: When set, no further chunk is started

        Raises:
            InputValidationError: If the unit is empty
            UploadError: If negotiation or any chunk fails
            JobCancelledError: If ``cancel_event`` is set mid-upload
        """
        if unit.size == 0:
            raise InputValidationError(f"File {unit.name} is empty")

        session = await self.start_session(unit.mime_type, unit.name, unit.size)
        handle: Optional[ResourceHandle] = None

        for chunk in plan_chunks(unit.size, self.chunk_size):
            if cancel_event is not None and cancel_event.is_set():
                session.state = UploadState.FAILED
                raise JobCancelledError(f"Upload of {unit.name} cancelled at offset {chunk.offset}")

            handle = await self.send_chunk(session, chunk, unit.data[chunk.offset:chunk.end])
            log_with_context(
                self.logger,
                "debug",
                "Chunk acknowledged",
                unit=unit.name,
                offset=chunk.offset,
                chunk_size=chunk.chunk_size,
                is_final=chunk.is_final,
            )

        if handle is None or session.state is not UploadState.FINALIZED:
            raise UploadError(f"Upload of {unit.name} ended without finalization")

        log_with_context(
            self.logger,
            "info",
            "Upload finalized",
            unit=unit.name,
            file_uri=handle.uri,
            total_size=unit.size,
        )
        return handle
