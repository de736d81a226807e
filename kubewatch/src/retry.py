from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes.client import ApiException
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from urllib3.exceptions import HTTPError as Urllib3HTTPError

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying: throttling, 5xx and network errors."""
    if isinstance(exc, ApiException):
        return not exc.status or exc.status in TRANSIENT_STATUS_CODES
    return isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError))


class RetryPolicy:
    """Bounded retry with exponential backoff for one-shot API calls.

    Only request/response calls go through a policy; long-lived watch streams
    recover by reconnecting instead.  The last exception is re-raised once
    ``max_attempts`` is exhausted or when ``retry_on`` rejects it.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay_seconds: float = 0.5,
        max_delay_seconds: float = 8.0,
        retry_on: Callable[[BaseException], bool] = is_transient_error,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if max_delay_seconds < initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        self.max_attempts = max_attempts
        self.initial_delay_seconds = initial_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.retry_on = retry_on
        self.logger = logger or logging.getLogger(__name__)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_delay_seconds,
                max=self.max_delay_seconds,
            ),
            retry=retry_if_exception(self.retry_on),
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self._retrying()(fn, *args, **kwargs)


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay_seconds=0, max_delay_seconds=0)


class RetryingApi:
    """Wrap a Kubernetes API client so every public method call is retried.

    ``RetryingApi(CoordinationV1Api(), policy).read_namespaced_lease(...)``
    behaves like the plain client, except transient failures are retried
    according to ``policy``.
    """

    def __init__(self, api: Any, policy: RetryPolicy) -> None:
        self._api = api
        self._policy = policy

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._api, name)
        if name.startswith("_") or not callable(attr):
            return attr

        @functools.wraps(attr)
        def _call(*args: Any, **kwargs: Any) -> Any:
            return self._policy.call(attr, *args, **kwargs)

        return _call
