"""
Unit tests for the resumable upload client.

The Gemini upload endpoint is replaced by an ``httpx.MockTransport`` that
records every request, so the protocol can be checked header by header.
"""

import asyncio

import httpx
import pytest

from app.errors import InputValidationError, JobCancelledError, UploadError
from app.models import ChunkTransferState, UploadState, UploadUnit
from app.upload_client import CHUNK_GRANULARITY, ResumableUploadClient, plan_chunks


BASE_URL = "https://upload.test"
SESSION_URL = f"{BASE_URL}/upload/v1beta/files?upload_id=abc"
FILE_JSON = {
    "file": {
        "name": "files/abc",
        "displayName": "scan.pdf",
        "mimeType": "application/pdf",
        "uri": f"{BASE_URL}/v1beta/files/abc",
    }
}


class FakeUploadServer:
    """Minimal resumable upload endpoint."""

    def __init__(self, chunk_status: int = 308, final_status: int = 200, final_json=None, session_url=SESSION_URL):
        self.requests: list[httpx.Request] = []
        self.chunk_status = chunk_status
        self.final_status = final_status
        self.final_json = FILE_JSON if final_json is None else final_json
        self.session_url = session_url

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            headers = {"x-goog-upload-url": self.session_url} if self.session_url else {}
            return httpx.Response(200, headers=headers)
        if request.headers["x-goog-upload-command"] == "upload":
            return httpx.Response(self.chunk_status, text="" if self.chunk_status == 308 else "nope")
        return httpx.Response(self.final_status, json=self.final_json)

    @property
    def chunk_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "PUT"]


def make_client(server: FakeUploadServer, chunk_size: int = CHUNK_GRANULARITY, api_key="test-key") -> ResumableUploadClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return ResumableUploadClient(api_key=api_key, base_url=BASE_URL, chunk_size=chunk_size, http_client=http_client)


def make_unit(size: int) -> UploadUnit:
    return UploadUnit(name="scan.pdf", data=bytes(i % 251 for i in range(size)), mime_type="application/pdf")


class TestPlanChunks:
    """Tests for the chunk plan."""

    def test_offsets_and_final_flag(self):
        """Test offsets 0, C, 2C and that only the last chunk finalizes."""
        chunks = plan_chunks(total_size=25, chunk_size=10)

        assert [c.offset for c in chunks] == [0, 10, 20]
        assert [c.chunk_size for c in chunks] == [10, 10, 5]
        assert [c.is_final for c in chunks] == [False, False, True]
        assert chunks[-1].offset + chunks[-1].chunk_size == 25

    def test_exact_multiple(self):
        """Test a size that is an exact multiple of the chunk size."""
        chunks = plan_chunks(total_size=20, chunk_size=10)

        assert [(c.offset, c.chunk_size, c.is_final) for c in chunks] == [(0, 10, False), (10, 10, True)]

    def test_single_chunk(self):
        """Test a file smaller than one chunk."""
        assert plan_chunks(total_size=3, chunk_size=10) == [ChunkTransferState(0, 3, True)]

    @pytest.mark.parametrize("total,chunk", [(0, 10), (-1, 10), (10, 0)])
    def test_invalid_sizes(self, total, chunk):
        """Test that non-positive sizes are rejected."""
        with pytest.raises(ValueError):
            plan_chunks(total, chunk)


class TestClientConstruction:
    """Tests for ResumableUploadClient construction."""

    def test_chunk_size_must_be_granular(self):
        """Test that chunk sizes must be multiples of 256 KiB."""
        with pytest.raises(ValueError):
            ResumableUploadClient(api_key="k", chunk_size=CHUNK_GRANULARITY + 1)

    @pytest.mark.asyncio
    async def test_missing_key_rejected_on_negotiation(self):
        """Test that negotiation without a key is an input error."""
        server = FakeUploadServer()
        client = make_client(server, api_key=None)

        with pytest.raises(InputValidationError):
            await client.start_session("application/pdf", "scan.pdf", 10)
        assert server.requests == []


class TestUpload:
    """Tests for the full upload flow."""

    @pytest.mark.asyncio
    async def test_negotiation_headers(self):
        """Test the start request of the resumable protocol."""
        server = FakeUploadServer()
        client = make_client(server)

        session = await client.start_session("application/pdf", "scan.pdf", 1234)

        request = server.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/upload/v1beta/files"
        assert request.headers["x-goog-upload-protocol"] == "resumable"
        assert request.headers["x-goog-upload-command"] == "start"
        assert request.headers["x-goog-upload-header-content-length"] == "1234"
        assert request.headers["x-goog-upload-header-content-type"] == "application/pdf"
        assert request.headers["x-goog-api-key"] == "test-key"
        assert b"scan.pdf" in request.content
        assert session.upload_url == SESSION_URL
        assert session.state is UploadState.TRANSFERRING

    @pytest.mark.asyncio
    async def test_multi_chunk_upload(self):
        """Test that chunks are sent in order with offsets and one finalize."""
        server = FakeUploadServer()
        client = make_client(server)
        unit = make_unit(CHUNK_GRANULARITY * 2 + 100)

        handle = await client.upload(unit)

        chunks = server.chunk_requests
        assert [r.headers["x-goog-upload-offset"] for r in chunks] == [
            "0", str(CHUNK_GRANULARITY), str(CHUNK_GRANULARITY * 2)
        ]
        assert [r.headers["x-goog-upload-command"] for r in chunks] == ["upload", "upload", "upload, finalize"]
        assert b"".join(r.content for r in chunks) == unit.data
        assert all(str(r.url) == SESSION_URL for r in chunks)
        assert handle.uri == f"{BASE_URL}/v1beta/files/abc"
        assert handle.mime_type == "application/pdf"
        assert handle.name == "files/abc"

    @pytest.mark.asyncio
    async def test_small_file_single_finalize(self):
        """Test that a file below the chunk size is sent as one finalizing chunk."""
        server = FakeUploadServer()
        client = make_client(server)

        await client.upload(make_unit(10))

        assert len(server.chunk_requests) == 1
        assert server.chunk_requests[0].headers["x-goog-upload-command"] == "upload, finalize"

    @pytest.mark.asyncio
    async def test_active_2xx_accepted_for_intermediate_chunks(self):
        """Test that 200 with an active upload status counts as incomplete."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, headers={"x-goog-upload-url": SESSION_URL})
            if request.headers["x-goog-upload-command"] == "upload":
                return httpx.Response(200, headers={"x-goog-upload-status": "active"})
            return httpx.Response(200, json=FILE_JSON)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ResumableUploadClient(api_key="k", base_url=BASE_URL, chunk_size=CHUNK_GRANULARITY, http_client=http_client)

        handle = await client.upload(make_unit(CHUNK_GRANULARITY + 1))

        assert handle.uri.endswith("files/abc")

    @pytest.mark.asyncio
    async def test_2xx_without_upload_status_is_fatal(self):
        """Test that an intermediate 200 lacking an active upload status stops the upload."""
        server = FakeUploadServer(chunk_status=200)
        client = make_client(server)

        with pytest.raises(UploadError) as exc_info:
            await client.upload(make_unit(CHUNK_GRANULARITY + 1))

        assert exc_info.value.status_code == 200
        assert len(server.chunk_requests) == 1

    @pytest.mark.asyncio
    async def test_missing_session_url_is_fatal(self):
        """Test that negotiation without a session URL raises UploadError."""
        server = FakeUploadServer(session_url=None)
        client = make_client(server)

        with pytest.raises(UploadError, match="no session URL"):
            await client.upload(make_unit(10))

    @pytest.mark.asyncio
    async def test_negotiation_error_surfaces_body(self):
        """Test that a rejected negotiation keeps status and body."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="API key not valid")

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ResumableUploadClient(api_key="k", base_url=BASE_URL, chunk_size=CHUNK_GRANULARITY, http_client=http_client)

        with pytest.raises(UploadError) as exc_info:
            await client.upload(make_unit(10))

        assert exc_info.value.status_code == 403
        assert "API key not valid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unexpected_chunk_status_is_fatal(self):
        """Test that an error response to an intermediate chunk stops the upload."""
        server = FakeUploadServer(chunk_status=400)
        client = make_client(server)

        with pytest.raises(UploadError) as exc_info:
            await client.upload(make_unit(CHUNK_GRANULARITY + 1))

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == "nope"
        assert len(server.chunk_requests) == 1

    @pytest.mark.asyncio
    async def test_finalize_without_uri_is_fatal(self):
        """Test that a finalize response lacking file.uri raises UploadError."""
        server = FakeUploadServer(final_json={"file": {"name": "files/abc"}})
        client = make_client(server)

        with pytest.raises(UploadError, match="without a file URI"):
            await client.upload(make_unit(10))

    @pytest.mark.asyncio
    async def test_empty_unit_rejected(self):
        """Test that empty files are rejected before negotiation."""
        server = FakeUploadServer()
        client = make_client(server)

        with pytest.raises(InputValidationError):
            await client.upload(make_unit(0))
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_chunk(self):
        """Test that a set cancel event prevents further chunks."""
        server = FakeUploadServer()
        client = make_client(server)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(JobCancelledError):
            await client.upload(make_unit(CHUNK_GRANULARITY * 2), cancel_event=cancel_event)

        assert server.chunk_requests == []


class TestResumeSession:
    """Tests for continuing sessions negotiated elsewhere."""

    @pytest.mark.asyncio
    async def test_resume_and_send_final_chunk(self):
        """Test relaying the final chunk of a client-driven upload."""
        server = FakeUploadServer()
        client = make_client(server)

        session = client.resume_session(SESSION_URL, total_size=30, offset=20)
        handle = await client.send_chunk(session, ChunkTransferState(20, 10, True), b"x" * 10)

        assert handle.uri.endswith("files/abc")
        assert session.state is UploadState.FINALIZED
        assert server.chunk_requests[0].headers["x-goog-upload-offset"] == "20"

    def test_foreign_url_rejected(self):
        """Test that chunks cannot be relayed to arbitrary hosts."""
        client = make_client(FakeUploadServer())

        with pytest.raises(InputValidationError):
            client.resume_session("https://evil.test/upload", total_size=10)

    def test_offset_outside_file_rejected(self):
        """Test offset validation."""
        client = make_client(FakeUploadServer())

        with pytest.raises(InputValidationError):
            client.resume_session(SESSION_URL, total_size=10, offset=10)

    @pytest.mark.asyncio
    async def test_out_of_order_chunk_rejected(self):
        """Test that a chunk must continue at the acknowledged offset."""
        server = FakeUploadServer()
        client = make_client(server)
        session = client.resume_session(SESSION_URL, total_size=30, offset=0)

        with pytest.raises(UploadError, match="does not continue"):
            await client.send_chunk(session, ChunkTransferState(10, 10, False), b"x" * 10)
        assert server.chunk_requests == []
