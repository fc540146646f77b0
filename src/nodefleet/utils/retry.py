# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable, Optional


class RetryError(RuntimeError):
    pass


def retry(
    *,
    retries: int,
    delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    reraise: bool = False,
):
    """
    Retry decorator for idempotent operations.

    retries: total number of attempts
    delay: seconds between attempts
    retry_on: exception types eligible for a retry
    retry_if: extra predicate; an eligible exception it rejects propagates at once
    on_retry: callback(attempt, exception), called before sleeping
    reraise: raise the last exception itself instead of RetryError
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    if retry_if is not None and not retry_if(exc):
                        raise
                    last_exc = exc
                    if attempt == retries:
                        break
                    if on_retry:
                        on_retry(attempt, exc)
                    sleep(delay)
            if reraise:
                raise last_exc
            raise RetryError(f"{fn.__name__} failed after {retries} attempts") from last_exc
        return wrapper
    return decorator
