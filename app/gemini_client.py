"""
Gemini client construction and credential resolution.

The server-side key always wins over a key sent by the caller; the caller key
only serves deployments that do not configure one. Clients are cached per key
so repeated requests reuse the SDK's connection pool.
"""

from threading import Lock
from typing import Dict, Optional

from google import genai

from app.errors import InputValidationError
from app.logging_config import get_logger


logger = get_logger(__name__)

_clients: Dict[str, genai.Client] = {}
_clients_lock = Lock()


def resolve_api_key(caller_key: Optional[str], server_key: Optional[str]) -> str:
    """
    Pick the API key for a request.

    Args:
        caller_key: Key supplied with the request, if any
        server_key: Key configured on the server, if any

    Raises:
        InputValidationError: If neither key is available
    """
    for key in (server_key, caller_key):
        if key and key.strip():
            return key.strip()
    raise InputValidationError(
        "No Gemini API key available. Configure GEMINI_API_KEY or send api_key with the request."
    )


def get_gemini_client(api_key: str) -> genai.Client:
    """Return a cached ``genai.Client`` for ``api_key``."""
    with _clients_lock:
        client = _clients.get(api_key)
        if client is None:
            client = genai.Client(api_key=api_key)
            _clients[api_key] = client
            logger.info("Initialised Gemini client")
        return client


def clear_clients() -> None:
    """Drop every cached client."""
    with _clients_lock:
        _clients.clear()
