from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from kubewatch.src.retry import NO_RETRY, RetryingApi, RetryPolicy, is_transient_error


def _policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, initial_delay_seconds=0, max_delay_seconds=0)


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504, 0, None])
def test_transient_api_statuses(status: int | None) -> None:
    assert is_transient_error(ApiException(status=status, reason="x")) is True


@pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 410, 422])
def test_non_transient_api_statuses(status: int) -> None:
    assert is_transient_error(ApiException(status=status, reason="x")) is False


def test_network_errors_are_transient() -> None:
    assert is_transient_error(ProtocolError("reset"))
    assert is_transient_error(MaxRetryError(None, "/api", "refused"))  # type: ignore[arg-type]
    assert is_transient_error(ConnectionResetError())
    assert is_transient_error(TimeoutError())
    assert not is_transient_error(ValueError("bad"))


def test_call_retries_until_success() -> None:
    fn = MagicMock(
        side_effect=[ApiException(status=503), ApiException(status=429), "ok"]
    )

    assert _policy().call(fn, 1, key="v") == "ok"
    assert fn.call_count == 3
    fn.assert_called_with(1, key="v")


def test_call_reraises_last_error_after_max_attempts() -> None:
    fn = MagicMock(side_effect=ApiException(status=500, reason="still down"))

    with pytest.raises(ApiException, match="still down"):
        _policy(max_attempts=2).call(fn)

    assert fn.call_count == 2


def test_call_does_not_retry_permanent_errors() -> None:
    fn = MagicMock(side_effect=ApiException(status=404, reason="Not Found"))

    with pytest.raises(ApiException):
        _policy().call(fn)

    assert fn.call_count == 1


def test_no_retry_policy_calls_once() -> None:
    fn = MagicMock(side_effect=ApiException(status=503))

    with pytest.raises(ApiException):
        NO_RETRY.call(fn)

    assert fn.call_count == 1


def test_custom_predicate_controls_retries() -> None:
    fn = MagicMock(side_effect=[KeyError("a"), "done"])
    policy = RetryPolicy(
        max_attempts=2,
        initial_delay_seconds=0,
        max_delay_seconds=0,
        retry_on=lambda exc: isinstance(exc, KeyError),
    )

    assert policy.call(fn) == "done"


def test_retries_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    fn = MagicMock(side_effect=[ApiException(status=503, reason="busy"), "ok"])
    fn.__name__ = "read_namespaced_lease"
    policy = RetryPolicy(
        max_attempts=2,
        initial_delay_seconds=0,
        max_delay_seconds=0,
        logger=logging.getLogger("retry-test"),
    )

    with caplog.at_level(logging.WARNING, logger="retry-test"):
        policy.call(fn)

    assert "Retrying" in caplog.text


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_attempts": 0}, "max_attempts must be >= 1"),
        ({"initial_delay_seconds": -1}, "initial_delay_seconds must be >= 0"),
        ({"initial_delay_seconds": 5, "max_delay_seconds": 1}, "max_delay_seconds"),
    ],
)
def test_policy_validates_arguments(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)  # type: ignore[arg-type]


def test_retrying_api_wraps_public_methods() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [ApiException(status=502), "lease"]
    api.api_client = "client"

    wrapped = RetryingApi(api, _policy())

    assert wrapped.read_namespaced_lease(name="l", namespace="ns") == "lease"
    assert api.read_namespaced_lease.call_count == 2
    assert wrapped.api_client == "client"
