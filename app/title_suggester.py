"""
Filename suggestions for finished transcriptions.

A naming request is a convenience: every failure falls back to a fixed
default name instead of surfacing an error.
"""

import re
from typing import Any

from app.logging_config import get_logger, log_with_context
from app.prompts import TITLE_PROMPT


DEFAULT_TITLE = "transcription"
TITLE_SAMPLE_CHARS = 2000

_DISALLOWED = re.compile(r"[^A-Za-z0-9_À-ÿ ]")
_WHITESPACE = re.compile(r"\s+")

logger = get_logger(__name__)


def sanitize_title(raw: str) -> str:
    """
    Reduce model output to a filesystem-safe name.

    Keeps ASCII letters, digits, underscores and Latin-1 accented letters;
    runs of spaces become a single underscore.

    >>> sanitize_title("Medical Record: John Doe.docx")
    'Medical_Record_John_Doedocx'
    """
    cleaned = _DISALLOWED.sub("", raw or "").strip()
    cleaned = _WHITESPACE.sub("_", cleaned)
    return cleaned or DEFAULT_TITLE


async def suggest_title(client: Any, text: str, model: str = "gemini-2.5-flash") -> str:
    """
    Ask ``model`` for a short file name describing ``text``.

    Only the first 2000 characters are sent. Returns ``"transcription"``
    when the text is blank, the request fails or the answer is empty.
    """
    sample = (text or "")[:TITLE_SAMPLE_CHARS]
    if not sample.strip():
        return DEFAULT_TITLE

    try:
        response = await client.aio.models.generate_content(
            model=model,
            contents=TITLE_PROMPT.format(text=sample),
        )
        raw = getattr(response, "text", None) or ""
    except Exception as e:
        log_with_context(logger, "warning", "Title suggestion failed", model=model, error=e)
        return DEFAULT_TITLE

    return sanitize_title(raw.strip())
