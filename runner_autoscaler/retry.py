"""
Timeout and retry helpers for provider and substrate calls.

Every blocking call into a collaborator goes through TimeoutCaller so a hung
call surfaces as a transient failure; retry_call then backs off with jitter,
honours retry-after hints and stops early when the cancel event is set.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, Tuple, Type
import random

from .clock import Clock
from .config import RetryPolicy
from .errors import TransientProviderError, RetryError, OperationCancelled

logger = logging.getLogger(__name__)


class TimeoutCaller:
    """Runs collaborator calls on a private thread pool with a deadline"""

    def __init__(self, default_timeout: float = 10.0, max_workers: int = 8,
                 thread_name_prefix: str = "provider-call"):
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix=thread_name_prefix)

    def call(self, func: Callable[..., Any], *args: Any,
             timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """
        Call func and wait at most timeout seconds for its result.

        Raises:
            TransientProviderError: If the call does not finish in time
        """
        limit = self.default_timeout if timeout is None else timeout
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=limit)
        except FutureTimeoutError:
            future.cancel()
            name = getattr(func, "__name__", repr(func))
            raise TransientProviderError(f"{name} timed out after {limit:.1f}s")

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


def _extract_retry_after(exc: BaseException) -> Optional[float]:
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except (ValueError, TypeError):
        return None


def retry_call(func: Callable[..., Any], *args: Any,
               policy: RetryPolicy,
               clock: Clock,
               cancel: Optional[threading.Event] = None,
               retry_exceptions: Tuple[Type[BaseException], ...] = (TransientProviderError,),
               on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
               rng: Optional[random.Random] = None,
               description: str = "",
               **kwargs: Any) -> Any:
    """
    Execute func with retry semantics.

    Exceptions outside retry_exceptions propagate unchanged on the first
    occurrence.

    Raises:
        RetryError: When policy.max_attempts attempts all failed
        OperationCancelled: When the cancel event is set between attempts
    """
    label = description or getattr(func, "__name__", "call")
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{label} cancelled before attempt {attempt + 1}")

        attempt += 1
        try:
            return func(*args, **kwargs)
        except retry_exceptions as exc:
            if attempt >= policy.max_attempts:
                logger.warning(f"{label} failed after {attempt} attempts: {exc}")
                raise RetryError(f"{label} failed after {attempt} attempts: {exc}",
                                 attempts=attempt, last_exception=exc) from exc

            delay = policy.compute_delay(attempt, rng)
            retry_after = _extract_retry_after(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)

            logger.debug(f"{label} attempt {attempt} failed ({exc}); retrying in {delay:.2f}s")
            if on_retry:
                on_retry(attempt, exc, delay)

            if not clock.sleep(delay, cancel):
                raise OperationCancelled(f"{label} cancelled while backing off")
