"""Retry utilities with exponential backoff for snapshot persistence."""

import logging

from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)


# tenacity's before_sleep_log needs a stdlib logger
logger = logging.getLogger(__name__)


def _is_transient_db_error(exc: BaseException) -> bool:
    """Lock timeouts and dropped connections, not integrity or programming errors."""
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


# Reusable retry decorator for snapshot store writes
db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=5),
    retry=retry_if_exception(_is_transient_db_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
