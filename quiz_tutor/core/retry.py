"""
Transport-level retry policies for the LLM and the remote grading function.

Scoring and generation never retry on their own; the only retries in the
service are the ones declared here around a single outbound call.
"""
import logging as py_logging

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from quiz_tutor.config import settings

py_logger = py_logging.getLogger(__name__)


def get_retry_decorator(
    max_attempts: int = 3,
    wait_strategy: str = "exponential",
    exceptions: tuple = (Exception,),
    max_wait: float = 30.0
):
    """Build a tenacity decorator; the last failure is re-raised unchanged"""
    if wait_strategy == "random_exponential":
        wait = wait_random_exponential(multiplier=1, max=max_wait)
    else:
        wait = wait_exponential(multiplier=1, min=1, max=max_wait)

    return retry(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait,
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(py_logger, py_logging.WARNING),
        reraise=True
    )


# Model invocations (rate limits, overloaded backends)
llm_retry = get_retry_decorator(
    max_attempts=settings.llm_max_retries,
    wait_strategy="exponential",
    max_wait=settings.retry_max_wait
)

# Grading function: connection and read failures only, HTTP error statuses are final
oracle_retry = get_retry_decorator(
    max_attempts=settings.oracle_max_retries,
    wait_strategy="random_exponential",
    exceptions=(httpx.TransportError,),
    max_wait=settings.retry_max_wait
)
