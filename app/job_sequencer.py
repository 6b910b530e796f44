"""
Sequential job driver.

Units are processed strictly one after another so the accumulated text keeps
the input order. Progress is reported after every unit, and a short pause
between units keeps the request rate under upstream limits.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from app.errors import InputValidationError, JobCancelledError, JobFailedError
from app.logging_config import get_logger, log_with_context
from app.models import FallbackResult, UploadUnit


DEFAULT_SEPARATOR = "\n\n"

# (unit, cancel_event, on_status) -> FallbackResult
UnitProcessor = Callable[
    [UploadUnit, Optional[asyncio.Event], Callable[[str], None]],
    Awaitable[FallbackResult],
]


@dataclass
class JobState:
    """
    Mutable state of one running job, owned by the sequencer.

    Attributes:
        units: Units in processing order
        current_index: Index of the unit being processed
        segments: Text of every finished unit, in order
        last_model_used: Model that produced the latest segment
        used_fallback: Whether any segment came from a fallback model
        status_text: Latest human-readable status line
        failed: Set when a unit failed and the job stopped
        cancelled: Set when the caller aborted the job
        error: Error message of the failure
    """
    units: list[UploadUnit]
    separator: str = DEFAULT_SEPARATOR
    current_index: int = 0
    segments: list[str] = field(default_factory=list)
    last_model_used: Optional[str] = None
    used_fallback: bool = False
    status_text: str = ""
    failed: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def accumulated_text(self) -> str:
        return self.separator.join(self.segments)

    @property
    def completed(self) -> bool:
        return len(self.segments) == len(self.units) and not self.failed and not self.cancelled


class JobSequencer:
    """
    Runs a unit processor over an ordered list of units.

    Args:
        process_unit: Coroutine function transcribing one unit
        inter_unit_delay: Pause between units in seconds
        separator: Text placed between unit segments
        sleep: Sleep coroutine used for the pause
    """

    def __init__(
        self,
        process_unit: UnitProcessor,
        inter_unit_delay: float = 0.5,
        separator: str = DEFAULT_SEPARATOR,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.process_unit = process_unit
        self.inter_unit_delay = inter_unit_delay
        self.separator = separator
        self.sleep = sleep
        self.logger = get_logger(__name__)

    async def run(
        self,
        units: list[UploadUnit],
        on_progress: Optional[Callable[[JobState], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        job_id: Optional[str] = None
    ) -> JobState:
        """
        Transcribe every unit in order.

        Args:
            units: Units in the order their text must appear
            on_progress: Called with the state whenever it changes, so
                partial text is visible before the job finishes
            cancel_event: When set, no further unit is started
            job_id: Used for log context only

        Returns:
            The final JobState; ``accumulated_text`` holds the full text

        Raises:
            InputValidationError: If ``units`` is empty
            JobFailedError: When a unit fails; ``error.state`` keeps the
                text of the units finished before it
            JobCancelledError: When cancelled; ``error.state`` is attached
        """
        if not units:
            raise InputValidationError("No files to transcribe")

        state = JobState(units=list(units), separator=self.separator)
        total = len(state.units)

        def notify() -> None:
            if on_progress is not None:
                on_progress(state)

        def on_status(text: str) -> None:
            state.status_text = text
            notify()

        for index, unit in enumerate(state.units):
            if cancel_event is not None and cancel_event.is_set():
                self._mark_cancelled(state, job_id)
                notify()
                raise JobCancelledError(f"Job cancelled before unit {index + 1} of {total}", state)

            state.current_index = index
            on_status(f"Processing unit {index + 1} of {total}: {unit.name}")

            try:
                result = await self.process_unit(unit, cancel_event, on_status)
            except JobCancelledError as e:
                self._mark_cancelled(state, job_id)
                notify()
                raise JobCancelledError(str(e), state) from e
            except Exception as e:
                state.failed = True
                state.error = str(e)
                state.status_text = f"Failed on {unit.name}"
                log_with_context(
                    self.logger,
                    "error",
                    "Job aborted on unit failure",
                    job_id=job_id,
                    unit=unit.name,
                    completed_units=len(state.segments),
                    total_units=total,
                    error=e,
                )
                notify()
                raise JobFailedError(f"Processing {unit.name} failed: {e}", state) from e

            state.segments.append(result.text)
            state.last_model_used = result.model_used
            state.used_fallback = state.used_fallback or result.used_fallback
            state.status_text = f"Finished unit {index + 1} of {total}: {unit.name}"
            notify()

            if index < total - 1 and self.inter_unit_delay > 0:
                await self.sleep(self.inter_unit_delay)

        state.current_index = total
        state.status_text = "Done"
        notify()
        log_with_context(
            self.logger,
            "info",
            "Job completed",
            job_id=job_id,
            total_units=total,
            model=state.last_model_used,
            used_fallback=state.used_fallback,
            text_length=len(state.accumulated_text),
        )
        return state

    def _mark_cancelled(self, state: JobState, job_id: Optional[str]) -> None:
        state.cancelled = True
        state.status_text = "Cancelled"
        log_with_context(
            self.logger,
            "info",
            "Job cancelled",
            job_id=job_id,
            completed_units=len(state.segments),
            total_units=len(state.units),
        )
