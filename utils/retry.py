import time

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services.exceptions import UpstreamUnavailable
from utils.logger import log_warning

RETRYABLE_ERRORS = (UpstreamUnavailable, SQLAlchemyError)


def retry_delay(attempt: int) -> float:
    """Wait before the next try after `attempt` failures: 2s, 4s, 8s, capped."""
    delay = settings.INGEST_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
    return min(delay, settings.INGEST_MAX_DELAY_SECONDS)


def retry_call(func, description: str, attempts: int = None, retry_on=RETRYABLE_ERRORS):
    """
    Calls `func` until it succeeds or the attempts run out.

    Only errors listed in `retry_on` are retried; anything else propagates at
    once. The last error is re-raised after the final attempt.
    """
    attempts = max(1, attempts or settings.INGEST_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = retry_delay(attempt)
            log_warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.0f}s", str(e))
            time.sleep(delay)
