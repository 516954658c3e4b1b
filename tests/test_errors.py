import pytest

from scalper.errors import (
    AmbiguousWriteOutcome,
    ConfigError,
    ErrorClass,
    ErrorPolicy,
    FatalExchangeError,
    RateLimitError,
    TransientNetworkError,
    classify_failure,
    error_from_failure,
)

POLICY = ErrorPolicy.build(
    codes=[502, 503, 504],
    messages=["Connection refused", "Connection reset", "Remote host closed connection during handshake"],
)


@pytest.mark.parametrize("code", [502, 503, 504])
def test_allow_listed_status_codes_are_transient(code):
    assert classify_failure(code, "Bad gateway", POLICY) is ErrorClass.TRANSIENT


def test_allow_listed_message_substring_is_transient():
    message = "java.net.SocketException: Connection reset by peer"
    assert classify_failure(None, message, POLICY) is ErrorClass.TRANSIENT


def test_message_match_is_case_sensitive():
    assert classify_failure(None, "connection reset", POLICY) is ErrorClass.FATAL


def test_everything_else_is_fatal():
    assert classify_failure(400, "Insufficient funds", POLICY) is ErrorClass.FATAL
    assert classify_failure(401, "Invalid API Key", POLICY) is ErrorClass.FATAL
    assert classify_failure(None, "", POLICY) is ErrorClass.FATAL


def test_empty_policy_classifies_everything_fatal():
    assert classify_failure(503, "Connection refused", ErrorPolicy()) is ErrorClass.FATAL


def test_policy_build_drops_empty_messages():
    policy = ErrorPolicy.build(codes=["502"], messages=["", "timeout"])
    assert policy.non_fatal_codes == frozenset({502})
    assert policy.non_fatal_messages == ("timeout",)
    assert classify_failure(None, "anything", policy) is ErrorClass.FATAL


def test_error_from_failure_builds_matching_exception():
    transient = error_from_failure(503, "503: unavailable", POLICY)
    fatal = error_from_failure(400, "400: bad request", POLICY)
    assert isinstance(transient, TransientNetworkError)
    assert transient.status_code == 503
    assert isinstance(fatal, FatalExchangeError)
    assert fatal.error_class is ErrorClass.FATAL


def test_hierarchy():
    assert issubclass(RateLimitError, TransientNetworkError)
    assert issubclass(AmbiguousWriteOutcome, FatalExchangeError)
    assert issubclass(ConfigError, ValueError)
