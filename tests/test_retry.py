import pytest
from botocore.exceptions import EndpointConnectionError

from playstream.core.retry import client_error_code, compute_backoff, is_transient, retry_transient
from tests.conftest import client_error


def test_compute_backoff_grows():
    assert 1.5 <= compute_backoff(1) <= 2.0
    assert 2.25 <= compute_backoff(2) <= 2.75


def test_transient_classification():
    assert is_transient(client_error("RequestLimitExceeded"))
    assert is_transient(EndpointConnectionError(endpoint_url="https://ec2.us-west-2.amazonaws.com"))
    assert not is_transient(client_error("InvalidInstanceID.NotFound"))
    assert not is_transient(ValueError("nope"))


def test_retry_until_success():
    delays = []
    attempts = []

    @retry_transient(max_attempts=3, sleep=delays.append)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise client_error("Throttling")
        return "ok"

    assert flaky() == "ok"
    assert len(delays) == 2


def test_retry_gives_up_after_max_attempts():
    @retry_transient(max_attempts=2, sleep=lambda seconds: None)
    def always_throttled():
        raise client_error("Throttling")

    with pytest.raises(Exception) as excinfo:
        always_throttled()
    assert client_error_code(excinfo.value) == "Throttling"


def test_permanent_errors_are_not_retried():
    attempts = []

    @retry_transient(sleep=lambda seconds: None)
    def broken():
        attempts.append(1)
        raise client_error("UnauthorizedOperation")

    with pytest.raises(Exception):
        broken()
    assert len(attempts) == 1
