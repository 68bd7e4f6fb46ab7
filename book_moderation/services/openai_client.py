"""
Shared OpenAI clients for the Moderation API.

One client (and connection pool) per timeout value, created on first use so
importing the package never needs an API key. SDK retries are disabled: a
failed call surfaces as ProviderUnavailable and retrying is the caller's call.
"""
from typing import Dict, Optional

from openai import OpenAI
from book_moderation.config import settings
import logging

logger = logging.getLogger(__name__)

_clients: Dict[float, OpenAI] = {}


def get_openai_client(timeout: Optional[float] = None) -> OpenAI:
    """Get or create the shared client for ``timeout`` (defaults to the provider timeout)."""
    if not settings.openai_api_key:
        raise ValueError("OpenAI API key not configured (OPENAI_API_KEY)")

    timeout = timeout if timeout is not None else settings.provider_timeout_seconds
    client = _clients.get(timeout)
    if client is None:
        client = _clients[timeout] = OpenAI(
            api_key=settings.openai_api_key,
            timeout=timeout,
            max_retries=0,
        )
        logger.debug(f"Initialized OpenAI moderation client (timeout {timeout}s)")
    return client
