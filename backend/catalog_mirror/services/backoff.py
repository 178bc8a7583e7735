"""
backoff.py

Exponential backoff for transient remote-catalog failures (network errors,
5xx, 429). Auth and GraphQL errors are not retried.
"""
import asyncio
import logging

from catalog_mirror.core.config import settings
from catalog_mirror.errors import StashNetworkError, StashUnavailableError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (StashNetworkError, StashUnavailableError)
MAX_DELAY_SECONDS = 30


async def with_backoff(func, *args, max_retries: int = None, base_delay: float = None, **kwargs):
    """Execute `func` retrying transient errors with exponential backoff.

    The last transient error is re-raised once `max_retries` attempts are used up.
    """
    max_retries = settings.backoff_max_retries if max_retries is None else max_retries
    delay = settings.backoff_base_seconds if base_delay is None else base_delay
    last_exception = None

    for attempt in range(max(1, max_retries)):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            last_exception = e
            if attempt + 1 >= max_retries:
                break
            logger.warning(
                f"[Backoff] Transient error on attempt {attempt + 1}/{max_retries}, sleeping {delay}s: {e}"
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_DELAY_SECONDS)

    logger.error(f"[Backoff] Giving up after {max_retries} attempts: {last_exception}")
    raise last_exception
