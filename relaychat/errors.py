"""
Error taxonomy for a chat turn.

Every HTTP or network failure is terminal for the current stream and is
turned into one of the classes below. Each carries the sentence that ends up
as the assistant message when the turn fails.

Malformed frames are NOT errors (see relaychat.sse.Delta) and neither is a
user cancel (see relaychat.stream.StreamStatus).
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for terminal stream failures."""

    kind = "error"
    user_message = (
        "Error: Failed to get response from OpenRouter API. "
        "Please check your API key and try again."
    )

    def __init__(self, detail: str = "", status_code: int | None = None):
        super().__init__(detail or self.kind)
        self.detail = detail
        self.status_code = status_code


class InvalidCredential(ChatError):
    kind = "invalid_credential"
    user_message = "Error: Invalid API key. Please check your OpenRouter API key."


class InsufficientBalance(ChatError):
    kind = "insufficient_balance"
    user_message = (
        "Error: Insufficient credits. Please add more credits to your "
        "OpenRouter account or reduce the max_tokens limit."
    )


class RateLimited(ChatError):
    kind = "rate_limited"
    user_message = "Error: Rate limit exceeded. Please try again later."


class BadRequest(ChatError):
    kind = "bad_request"
    user_message = "Error: Invalid request. Please check your model selection."


class HttpError(ChatError):
    """Any other 4xx/5xx. The message carries status and body text."""

    kind = "http_error"

    def __init__(self, detail: str = "", status_code: int | None = None):
        super().__init__(detail, status_code)
        self.user_message = f"Error: HTTP error! status: {status_code} - {detail}"


class TransportError(ChatError):
    """No response at all, or the connection dropped mid-stream."""

    kind = "transport_error"


class ConfigError(ValueError):
    """Missing or invalid Config."""


class SubmissionRejected(RuntimeError):
    """The orchestrator refused to start a turn."""


class ConversationNotFound(KeyError):
    """No conversation with the given id."""


# Status code → error class. Anything else >= 400 becomes HttpError.
_STATUS_ERRORS: dict[int, type[ChatError]] = {
    400: BadRequest,
    401: InvalidCredential,
    402: InsufficientBalance,
    429: RateLimited,
}


def classify_status(status_code: int, body: str = "") -> ChatError:
    """Map an HTTP failure status to its ChatError."""
    cls = _STATUS_ERRORS.get(status_code, HttpError)
    return cls(body, status_code=status_code)
