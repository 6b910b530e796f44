"""
Model chain fallback for transcription requests.

Each unit is tried on the requested model first. Transient failures are
retried on the same model with exponential backoff; once a model has used up
its attempts the next model of the chain takes over. Policy blocks that
survived prompt escalation and fatal errors stop the chain immediately.
"""

import asyncio
from functools import partial
from typing import Awaitable, Callable, Iterable, Optional

from app.errors import ErrorCategory, ErrorClassifier, InputValidationError, default_classifier
from app.logging_config import get_logger, log_with_context
from app.models import FallbackResult, TranscriptionAttempt
from app.retry import RetryPolicy, with_retry
from app.transcriber import GeminiTranscriber, TranscriptionContent


StatusCallback = Callable[[str], None]


def build_model_chain(primary: str, fallbacks: Iterable[str]) -> tuple[str, ...]:
    """
    Return ``[primary, *fallbacks]`` with blanks and repeats removed.

    Raises:
        InputValidationError: If no model identifier remains
    """
    chain: list[str] = []
    for model in [primary, *fallbacks]:
        model = (model or "").strip()
        if model and model not in chain:
            chain.append(model)
    if not chain:
        raise InputValidationError("No model configured")
    return tuple(chain)


class ModelFallbackOrchestrator:
    """
    Runs transcriptions across a model chain.

    Args:
        transcriber: Performs single-model transcriptions with escalation
        fallback_models: Models tried after the primary, in priority order
        retry_policy: Attempts and backoff per model
        classifier: Decides which errors are transient
        sleep: Sleep coroutine used for backoff waits
    """

    def __init__(
        self,
        transcriber: GeminiTranscriber,
        fallback_models: Iterable[str] = (),
        retry_policy: RetryPolicy = RetryPolicy(),
        classifier: ErrorClassifier = default_classifier,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.transcriber = transcriber
        self.fallback_models = list(fallback_models)
        self.retry_policy = retry_policy
        self.classifier = classifier
        self.sleep = sleep
        self.logger = get_logger(__name__)

    def _is_transient(self, error: BaseException) -> bool:
        return self.classifier.classify(error) is ErrorCategory.TRANSIENT

    async def run(
        self,
        content: TranscriptionContent,
        primary_model: str,
        cancel_event: Optional[asyncio.Event] = None,
        on_status: Optional[StatusCallback] = None,
        unit_name: Optional[str] = None
    ) -> FallbackResult:
        """
        Transcribe ``content``, falling back across the model chain.

        Returns:
            FallbackResult with the producing model and whether it differs
            from ``primary_model``

        Raises:
            TransientError: The last error, when every model exhausted its retries
            ContentPolicyBlock / FatalError / InputValidationError: At once
            JobCancelledError: If ``cancel_event`` is set during a backoff wait
        """
        chain = build_model_chain(primary_model, self.fallback_models)
        attempts: list[TranscriptionAttempt] = []
        last_error: Optional[BaseException] = None

        for position, model in enumerate(chain):
            if position > 0 and on_status is not None:
                on_status(f"Model {chain[position - 1]} unavailable, switching to {model}")

            def on_retry(attempt: int, delay: float, error: BaseException, model: str = model) -> None:
                log_with_context(
                    self.logger,
                    "warning",
                    "Transient error, backing off",
                    unit=unit_name,
                    model=model,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=error,
                )
                if on_status is not None:
                    on_status(
                        f"{model} is busy, retrying in {delay:g}s "
                        f"(attempt {attempt + 1} of {self.retry_policy.max_attempts})"
                    )

            try:
                result = await with_retry(
                    partial(self.transcriber.transcribe_with_escalation, content, model, attempts),
                    self.retry_policy,
                    self._is_transient,
                    on_retry=on_retry,
                    cancel_event=cancel_event,
                    sleep=self.sleep,
                )
            except Exception as e:
                if not self._is_transient(e):
                    raise
                last_error = e
                log_with_context(
                    self.logger,
                    "warning",
                    "Model exhausted retries",
                    unit=unit_name,
                    model=model,
                    remaining_models=len(chain) - position - 1,
                    error=e,
                )
                continue

            used_fallback = model != chain[0]
            log_with_context(
                self.logger,
                "info",
                "Unit transcribed",
                unit=unit_name,
                model=model,
                used_fallback=used_fallback,
                escalated=result.escalated,
                text_length=len(result.text),
            )
            return FallbackResult(
                text=result.text,
                model_used=model,
                used_fallback=used_fallback,
                attempts=attempts,
            )

        raise last_error
