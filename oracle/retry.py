"""Bounded retry and timeout envelope for oracle calls.

Every call races a timer; a stuck call is abandoned rather than awaited.
Retries use exponential backoff and never exceed a fixed attempt count or
the overall deadline.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, List, Type, TypeVar

from pydantic import BaseModel

from oracle.adapter import BaseOracleAdapter
from oracle.errors import (
    OracleError,
    OracleResponseError,
    OracleRetryExhaustedError,
    OracleTimeoutError,
    OracleTransportError,
)
from oracle.validator import validate_oracle_output

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
ResultT = TypeVar("ResultT")

_RETRYABLE_STAGES = frozenset({"json_parse", "schema"})


def call_with_timeout(func: Callable[[], ResultT], timeout_seconds: float) -> ResultT:
    """Run ``func`` on a worker thread and wait at most ``timeout_seconds``.

    Raises:
        OracleTimeoutError: If the call has not finished in time. The worker
            is left to finish on its own; its result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oracle-call")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        future.cancel()
        raise OracleTimeoutError(timeout_seconds) from exc
    finally:
        executor.shutdown(wait=False)


def generate_with_retry(
    adapter: BaseOracleAdapter,
    prompt: str,
    response_model: Type[ModelT],
    *,
    max_retries: int = 2,
    timeout_seconds: float = 15.0,
    overall_timeout_seconds: float = 45.0,
    backoff_initial_seconds: float = 1.0,
    backoff_multiplier: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ModelT:
    """Generate and validate oracle output with bounded retry.

    Retries on timeouts, transport failures, and JSON/schema failures.
    Total attempts = 1 + max_retries, cut short by the overall deadline.

    Args:
        adapter: Adapter implementing ``generate(prompt) -> str``.
        prompt: The fully formatted prompt string.
        response_model: Pydantic model the response must satisfy.
        max_retries: Maximum number of additional attempts.
        timeout_seconds: Per-call timeout.
        overall_timeout_seconds: Deadline across all attempts and backoff.
        backoff_initial_seconds: Delay before the first retry.
        backoff_multiplier: Growth factor for later delays.

    Returns:
        A validated ``response_model`` instance.

    Raises:
        OracleResponseError: If a non-retryable validation error occurs.
        OracleRetryExhaustedError: If all attempts fail.
    """
    errors: List[OracleError] = []
    total_attempts = 1 + max(0, max_retries)
    deadline = clock() + overall_timeout_seconds
    attempts_made = 0

    for attempt in range(1, total_attempts + 1):
        if attempt > 1:
            delay = backoff_initial_seconds * (backoff_multiplier ** (attempt - 2))
            remaining = deadline - clock()
            if remaining <= 0:
                break
            if delay > 0:
                sleep(min(delay, remaining))

        remaining = deadline - clock()
        if remaining <= 0:
            break

        attempts_made = attempt
        try:
            raw = call_with_timeout(lambda: adapter.generate(prompt), min(timeout_seconds, remaining))
            result = validate_oracle_output(raw, response_model)
            if attempt > 1:
                logger.info(
                    "Oracle output validated on attempt %d/%d",
                    attempt,
                    total_attempts,
                )
            return result
        except OracleResponseError as exc:
            if exc.stage not in _RETRYABLE_STAGES:
                raise
            errors.append(exc)
            logger.warning(
                "Oracle attempt %d/%d failed at stage '%s': %s",
                attempt,
                total_attempts,
                exc.stage,
                "; ".join(exc.errors),
            )
        except (OracleTimeoutError, OracleTransportError) as exc:
            errors.append(exc)
            logger.warning(
                "Oracle attempt %d/%d failed: %s",
                attempt,
                total_attempts,
                exc,
            )

    if not errors:
        errors.append(OracleTimeoutError(overall_timeout_seconds))
    raise OracleRetryExhaustedError(
        attempts=attempts_made,
        last_error=errors[-1],
        history=errors,
    )
