"""
Circuit Breakers and Retry Logic
Keeps transient provider failures (rate limits, 5xx, network) from failing a sync
"""
import logging
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
from tenacity.wait import wait_base

from app.services.sync.errors import ProviderTransportError

logger = logging.getLogger(__name__)


# ============================================================================
# PROVIDER BACKOFF
# ============================================================================

class wait_retry_after(wait_base):
    """
    Exponential backoff that yields to the provider's Retry-After hint.

    When the last failure carries `retry_after` (rate limit), wait that long,
    capped at max_wait. Otherwise fall back to exponential backoff.
    """

    def __init__(self, min_wait: float, max_wait: float):
        self.max_wait = max_wait
        self.fallback = wait_exponential(multiplier=max(min_wait, 0), min=min_wait, max=max_wait)

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self.max_wait)
        return self.fallback(retry_state)


# ============================================================================
# PROVIDER CIRCUIT BREAKER
# ============================================================================

def provider_retrying(
    max_retries: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    on_retry: Optional[Callable[[BaseException], None]] = None,
) -> AsyncRetrying:
    """
    Build a retry controller for one provider call.

    Retries on:
    - Rate limit errors (429 / ratelimited), honouring Retry-After
    - Transport errors (network, timeouts, 5xx)

    Permission and generic API errors are raised immediately. After the final
    attempt the last error is re-raised.

    Usage:
        async for attempt in provider_retrying(max_retries=3):
            with attempt:
                return await do_call()
    """

    def _before_sleep(retry_state: RetryCallState):
        before_sleep_log(logger, logging.WARNING)(retry_state)
        if on_retry and retry_state.outcome is not None:
            on_retry(retry_state.outcome.exception())

    return AsyncRetrying(
        retry=retry_if_exception_type(ProviderTransportError),
        stop=stop_after_attempt(max(max_retries, 0) + 1),
        wait=wait_retry_after(min_wait, max_wait),
        before_sleep=_before_sleep,
        reraise=True,
    )
