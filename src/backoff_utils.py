"""Helper to run exchange REST calls with a timeout, throttling and backoff."""

import asyncio
import contextlib
import os
import random
import re


# Maximum duration allowed for each REST call.
REQUEST_TIMEOUT = float(os.getenv("GRID_REQUEST_TIMEOUT", "10"))


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code <= 599
    msg = str(exc)
    return " 429 " in msg or "Too Many Requests" in msg


async def call_with_retries(op, *, limiter, max_attempts=4, base_delay=0.25):
    """Execute ``op`` with timeout and retry/backoff logic.

    ``op`` is an async function (no-arg lambda) performing the REST call.
    ``limiter`` controls the request rate.
    Timeouts, HTTP 429 and 5xx are retried up to ``max_attempts`` times with
    exponential backoff and jitter; anything else is raised immediately.
    ``max_attempts=1`` keeps the timeout and throttle but never resends.
    """

    attempt = 0
    while True:
        attempt += 1
        await limiter.acquire()
        try:
            task = asyncio.create_task(op())
            try:
                return await asyncio.wait_for(task, timeout=REQUEST_TIMEOUT)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: PERF203 - classified below
            if not _is_retryable(e) or attempt >= max_attempts:
                raise
            # Retry-After seconds if the error text carries one
            m = None if isinstance(e, asyncio.TimeoutError) else re.search(
                r"Retry-After\"?:\s*\"?(\d+)", str(e), re.IGNORECASE
            )
            ra = float(m.group(1)) if m else None
            delay = ra if ra is not None else (base_delay * (2 ** (attempt - 1)))
            delay *= 0.8 + 0.4 * random.random()
            await asyncio.sleep(min(delay, 5.0))
