"""
Tests for HTTP status classification.
"""

import pytest

from relaychat.errors import (
    BadRequest,
    ChatError,
    HttpError,
    InsufficientBalance,
    InvalidCredential,
    RateLimited,
    TransportError,
    classify_status,
)


@pytest.mark.parametrize("status, cls, text", [
    (400, BadRequest, "check your model selection"),
    (401, InvalidCredential, "Invalid API key"),
    (402, InsufficientBalance, "Insufficient credits"),
    (429, RateLimited, "Rate limit exceeded"),
])
def test_classify_known_statuses(status, cls, text):
    err = classify_status(status, "body")
    assert type(err) is cls
    assert err.status_code == status
    assert err.detail == "body"
    assert text in err.user_message


@pytest.mark.parametrize("status", [403, 404, 500, 502])
def test_classify_other_statuses(status):
    err = classify_status(status, "upstream said no")
    assert type(err) is HttpError
    assert err.user_message == f"Error: HTTP error! status: {status} - upstream said no"


def test_all_are_chat_errors():
    for cls in (BadRequest, InvalidCredential, InsufficientBalance, RateLimited, HttpError, TransportError):
        assert issubclass(cls, ChatError)
        assert cls.kind != ChatError.kind


def test_transport_error_message():
    err = TransportError("connection refused")
    assert err.status_code is None
    assert str(err) == "connection refused"
    assert err.user_message.startswith("Error: Failed to get response")
