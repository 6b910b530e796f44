"""
Gemini transcription requests with content-policy escalation.

This module sends one document (an uploaded resource or inline bytes) to a
Gemini model together with the OCR prompt. When the model refuses for
content-policy reasons the request is repeated once with the restoration
framing, which asks for the same verbatim text under a different task
description.
"""

from typing import Any, Optional, Union

from google import genai
from google.genai import types

from app.errors import (
    ContentPolicyBlock,
    ErrorClassifier,
    FatalError,
    TranscriberError,
    TransientError,
    default_classifier,
)
from app.logging_config import get_logger, log_with_context
from app.models import (
    AttemptOutcome,
    PromptVariant,
    ResourceHandle,
    TranscriptionAttempt,
    TranscriptionResult,
    UploadUnit,
)
from app.prompts import SYSTEM_INSTRUCTION, prompt_for


TranscriptionContent = Union[ResourceHandle, UploadUnit]

# Finish reasons Gemini uses when it withholds output for policy reasons
POLICY_FINISH_REASONS = frozenset({
    "SAFETY",
    "RECITATION",
    "BLOCKLIST",
    "PROHIBITED_CONTENT",
    "SPII",
    "IMAGE_SAFETY",
})

HARM_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    types.HarmCategory.HARM_CATEGORY_CIVIC_INTEGRITY,
)


def permissive_safety_settings() -> list[types.SafetySetting]:
    """Disable safety filtering for every harm category."""
    return [
        types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
        for category in HARM_CATEGORIES
    ]


def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "name", None) or str(value)


def _outcome_of(error: TranscriberError) -> AttemptOutcome:
    if isinstance(error, ContentPolicyBlock):
        return AttemptOutcome.POLICY_BLOCK
    if isinstance(error, TransientError):
        return AttemptOutcome.TRANSIENT_ERROR
    return AttemptOutcome.FATAL_ERROR


class GeminiTranscriber:
    """
    Requests transcriptions from Gemini.

    Args:
        client: A ``google.genai.Client``
        classifier: Maps SDK exceptions onto policy / transient / fatal
    """

    def __init__(self, client: genai.Client, classifier: ErrorClassifier = default_classifier):
        self.client = client
        self.classifier = classifier
        self.logger = get_logger(__name__)

    def build_contents(self, content: TranscriptionContent, variant: PromptVariant) -> list[types.Content]:
        if isinstance(content, ResourceHandle):
            document = types.Part.from_uri(file_uri=content.uri, mime_type=content.mime_type)
        elif isinstance(content, UploadUnit):
            document = types.Part.from_bytes(data=content.data, mime_type=content.mime_type)
        else:
            raise FatalError(f"Unsupported transcription content: {type(content).__name__}")

        return [
            types.Content(
                role="user",
                parts=[types.Part.from_text(text=prompt_for(variant)), document],
            )
        ]

    def build_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=SYSTEM_INSTRUCTION,
            safety_settings=permissive_safety_settings(),
        )

    async def _generate(self, model: str, contents: list[types.Content], config: types.GenerateContentConfig) -> Any:
        return await self.client.aio.models.generate_content(
            model=model,
            contents=contents,
            config=config,
        )

    def extract_text(self, response: Any) -> str:
        """
        Return the text of a generation response.

        Raises:
            ContentPolicyBlock: If the prompt or the candidate was blocked
            FatalError: If the response has neither candidates nor a block reason
        """
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _enum_name(getattr(feedback, "block_reason", None))
        if block_reason and block_reason != "BLOCKED_REASON_UNSPECIFIED":
            raise ContentPolicyBlock(f"Prompt blocked: {block_reason}")

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise FatalError("Generation response contained no candidates")

        finish_reason = _enum_name(getattr(candidates[0], "finish_reason", None))
        if finish_reason in POLICY_FINISH_REASONS:
            raise ContentPolicyBlock(f"Response blocked: finish_reason={finish_reason}")

        return getattr(response, "text", None) or ""

    async def transcribe(
        self,
        content: TranscriptionContent,
        model: str,
        variant: PromptVariant = PromptVariant.STANDARD
    ) -> str:
        """
        Send one transcription request.

        Raises:
            ContentPolicyBlock: The model refused for policy reasons
            TransientError: Overload, rate limit or connectivity failure
            FatalError: Anything else
        """
        contents = self.build_contents(content, variant)
        try:
            response = await self._generate(model, contents, self.build_config())
        except Exception as e:
            raise self.classifier.wrap(e) from e
        return self.extract_text(response)

    async def _attempt(
        self,
        content: TranscriptionContent,
        model: str,
        variant: PromptVariant,
        attempts: list[TranscriptionAttempt]
    ) -> str:
        try:
            text = await self.transcribe(content, model, variant)
        except TranscriberError as e:
            attempts.append(TranscriptionAttempt(variant, model, _outcome_of(e), str(e)))
            raise
        attempts.append(TranscriptionAttempt(variant, model, AttemptOutcome.TEXT))
        return text

    async def transcribe_with_escalation(
        self,
        content: TranscriptionContent,
        model: str,
        attempts: Optional[list[TranscriptionAttempt]] = None
    ) -> TranscriptionResult:
        """
        Transcribe with the standard prompt, escalating once on a policy block.

        Args:
            content: Uploaded resource or inline unit
            model: Model identifier
            attempts: Optional list that every attempt is appended to,
                including failed ones

        Returns:
            TranscriptionResult with ``escalated`` set when the restoration
            prompt produced the text

        Raises:
            ContentPolicyBlock: If both framings were blocked
            TransientError / FatalError: From either request
        """
        if attempts is None:
            attempts = []
        first_attempt = len(attempts)

        try:
            text = await self._attempt(content, model, PromptVariant.STANDARD, attempts)
            return TranscriptionResult(text=text, model=model, attempts=attempts[first_attempt:])
        except ContentPolicyBlock as e:
            log_with_context(
                self.logger,
                "warning",
                "Content policy block, retrying with restoration prompt",
                model=model,
                error=e,
            )

        try:
            text = await self._attempt(content, model, PromptVariant.RESTORATION, attempts)
        except ContentPolicyBlock as e:
            raise ContentPolicyBlock(f"Blocked under both prompt framings on {model}: {e}") from e

        log_with_context(self.logger, "info", "Restoration prompt succeeded", model=model)
        return TranscriptionResult(text=text, model=model, attempts=attempts[first_attempt:], escalated=True)
