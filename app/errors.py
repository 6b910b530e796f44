"""
Error taxonomy and upstream error classification.

The generation service reports failures through an opaque error channel:
exception types and messages. ``ErrorClassifier`` maps those onto the three
categories the pipeline acts on (policy block, transient, fatal) using a
documented list of signatures. Transport exception types and structured
status codes (``code`` on SDK errors) decide before the transient message
signatures do, and the signature lists are constructor arguments, so the
classifier can follow upstream changes without touching the pipeline.
"""

import asyncio
from enum import Enum
from typing import Iterable, Optional

import httpx


class ErrorCategory(Enum):
    """Categories used to decide between escalation, retry and abort."""
    POLICY_BLOCK = "policy_block"
    TRANSIENT = "transient"
    FATAL = "fatal"


class TranscriberError(Exception):
    """Base class for all pipeline errors."""
    pass


class InputValidationError(TranscriberError):
    """Missing file, missing API key or missing resource handle. Never retried."""
    pass


class ContentPolicyBlock(TranscriberError):
    """The generation service refused to answer for content-policy reasons."""
    pass


class TransientError(TranscriberError):
    """A failure expected to resolve on retry (overload, network blip)."""
    pass


class FatalError(TranscriberError):
    """Any other failure, including malformed upstream responses."""
    pass


class UploadError(FatalError):
    """
    Exception raised when a resumable upload cannot complete.

    Attributes:
        status_code: HTTP status of the failing response, if any
        body: Response body text, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ChunkTooLargeError(InputValidationError):
    """A proxied upload chunk exceeds the configured proxy chunk size."""
    pass


class JobCancelledError(TranscriberError):
    """
    The caller aborted the job before it finished.

    Attributes:
        state: The sequencer state when the abort was noticed, if raised by
            the sequencer
    """

    def __init__(self, message: str, state=None):
        super().__init__(message)
        self.state = state


class JobFailedError(TranscriberError):
    """
    Exception raised when a job aborts on a unit failure.

    Attributes:
        state: The sequencer state at the time of failure; its accumulated
            text still holds every unit finished before the failure
    """

    def __init__(self, message: str, state):
        super().__init__(message)
        self.state = state


# Substrings that identify a content-policy refusal. Gemini reports blocks
# through finish reasons / block reasons whose names appear in error text.
POLICY_SIGNATURES = (
    "RECITATION",
    "SAFETY",
    "PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
    "blocked",
)

# Substrings that identify overload or connectivity problems.
TRANSIENT_SIGNATURES = (
    "503",
    "500 internal",
    "502",
    "504",
    "429",
    "overloaded",
    "UNAVAILABLE",
    "RESOURCE_EXHAUSTED",
    "DEADLINE_EXCEEDED",
    "Service Unavailable",
    "try again later",
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "connection aborted",
    "fetch failed",
    "ECONNRESET",
    "ETIMEDOUT",
)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

TRANSIENT_EXCEPTION_TYPES = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
)


class ErrorClassifier:
    """
    Maps arbitrary exceptions onto an ``ErrorCategory``.

    Order of checks:
    1. Pipeline exceptions already carrying a category
    2. Transport exception types (timeouts, connection failures)
    3. Structured HTTP-like ``code`` / ``status_code`` attributes; a
       transient code is transient, any other code is fatal
    4. Policy signatures in the message (case-insensitive)
    5. Transient signatures in the message (case-insensitive)
    6. Everything else is fatal
    """

    def __init__(
        self,
        policy_signatures: Iterable[str] = POLICY_SIGNATURES,
        transient_signatures: Iterable[str] = TRANSIENT_SIGNATURES,
        transient_status_codes: Iterable[int] = TRANSIENT_STATUS_CODES,
    ):
        self.policy_signatures = tuple(s.lower() for s in policy_signatures)
        self.transient_signatures = tuple(s.lower() for s in transient_signatures)
        self.transient_status_codes = frozenset(transient_status_codes)

    def classify(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, ContentPolicyBlock):
            return ErrorCategory.POLICY_BLOCK
        if isinstance(error, TransientError):
            return ErrorCategory.TRANSIENT
        if isinstance(error, TranscriberError):
            return ErrorCategory.FATAL

        if isinstance(error, TRANSIENT_EXCEPTION_TYPES):
            return ErrorCategory.TRANSIENT

        code = _status_code_of(error)
        if code is not None:
            if code in self.transient_status_codes:
                return ErrorCategory.TRANSIENT
            return ErrorCategory.FATAL

        message = str(error).lower()
        if any(sig in message for sig in self.policy_signatures):
            return ErrorCategory.POLICY_BLOCK

        if any(sig in message for sig in self.transient_signatures):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.FATAL

    def wrap(self, error: BaseException) -> TranscriberError:
        """Convert an upstream exception into the matching pipeline exception."""
        if isinstance(error, TranscriberError):
            return error
        category = self.classify(error)
        message = f"{error.__class__.__name__}: {error}"
        if category is ErrorCategory.POLICY_BLOCK:
            return ContentPolicyBlock(message)
        if category is ErrorCategory.TRANSIENT:
            return TransientError(message)
        return FatalError(message)


def _status_code_of(error: BaseException) -> Optional[int]:
    for attr in ("code", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    return None


default_classifier = ErrorClassifier()


def classify(error: BaseException) -> ErrorCategory:
    """Classify an exception with the default signature lists."""
    return default_classifier.classify(error)
