"""
Backoff for read paths.

Writes are never retried here: a failed upsert is surfaced to the caller,
who can safely repeat it because upserts are idempotent by key.
"""

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from stakeledger.config import settings
from stakeledger.services.base import TransientIOError


def with_read_retry(func):
    """Retry an async read on TransientIOError with exponential backoff."""
    return retry(
        stop=stop_after_attempt(settings.read_retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=settings.read_retry_max_wait),
        retry=retry_if_exception_type(TransientIOError),
        reraise=True,
    )(func)
