"""Error taxonomy and classification helpers.

Vendor and transport failures are collapsed into :class:`ErrorType`; only
the coarse ``user_message`` ever reaches the client.
"""

from __future__ import annotations

import enum

from tradechat.types import ErrorType

_USER_MESSAGES: dict[ErrorType, str] = {
    ErrorType.AUTH: "Authentication error. Please contact support.",
    ErrorType.RATE_LIMIT: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorType.QUOTA: "API quota exceeded or insufficient balance. Please contact support.",
    ErrorType.BAD_REQUEST: "Invalid request. Please check your input and try again.",
    ErrorType.SERVER_ERROR: "Service temporarily unavailable. Please try again in a moment.",
    ErrorType.TOOL_FAILURE: "A data tool failed. Please try again.",
    ErrorType.UNKNOWN: "Sorry, I encountered an error. Please try again.",
}

MESSAGE_TOO_LONG = (
    "Message too long. Please shorten your message or start a new conversation."
)

_QUOTA_HINTS = ("insufficient balance", "quota", "credit")

_VENDOR_ERROR_TYPES: dict[str, ErrorType] = {
    "authentication_error": ErrorType.AUTH,
    "permission_error": ErrorType.AUTH,
    "rate_limit_error": ErrorType.RATE_LIMIT,
    "overloaded_error": ErrorType.SERVER_ERROR,
    "api_error": ErrorType.SERVER_ERROR,
    "invalid_request_error": ErrorType.BAD_REQUEST,
    "not_found_error": ErrorType.BAD_REQUEST,
}


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""


class ChatError(Exception):
    """A request-terminating failure.

    Parameters
    ----------
    error_type:
        Classification sent to the client as ``errorType``.
    detail:
        Internal detail, logged but never sent to the client.
    user_message:
        Override for the client-facing text.  Only explicit, safe
        messages (e.g. "message too long") should be passed here.
    """

    def __init__(
        self,
        error_type: ErrorType,
        detail: str = "",
        user_message: str | None = None,
    ) -> None:
        super().__init__(detail or error_type.value)
        self.error_type = error_type
        self.detail = detail
        self._user_message = user_message

    @property
    def user_message(self) -> str:
        if self._user_message:
            return self._user_message
        return user_message_for(self.error_type)


class ToolErrorKind(enum.Enum):
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    GENERIC = "generic"

    @property
    def transient(self) -> bool:
        return self is not ToolErrorKind.GENERIC


class ToolError(Exception):
    """Failure of a single tool invocation."""

    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def user_message_for(error_type: ErrorType) -> str:
    return _USER_MESSAGES.get(error_type, _USER_MESSAGES[ErrorType.UNKNOWN])


def classify_status(status_code: int, body: str = "") -> ErrorType:
    """Map an HTTP status (and optional body text) to an :class:`ErrorType`."""
    if status_code in (401, 403):
        return ErrorType.AUTH
    if status_code >= 500:
        return ErrorType.SERVER_ERROR
    if status_code in (413, 422):
        return ErrorType.BAD_REQUEST
    # Billing hints only refine 400/402/429 and unmapped statuses
    if any(hint in body.lower() for hint in _QUOTA_HINTS):
        return ErrorType.QUOTA
    if status_code == 402:
        return ErrorType.QUOTA
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code == 400:
        return ErrorType.BAD_REQUEST
    return ErrorType.UNKNOWN


def classify_vendor_error(error_kind: str, message: str = "") -> ErrorType:
    """Map a vendor ``error.type`` string from an in-stream error frame."""
    lower = message.lower()
    if any(hint in lower for hint in _QUOTA_HINTS):
        return ErrorType.QUOTA
    return _VENDOR_ERROR_TYPES.get(error_kind, ErrorType.UNKNOWN)


def classify_tool_exception(exc: BaseException) -> ToolErrorKind:
    """Best-effort classification of an arbitrary runtime exception."""
    if isinstance(exc, ToolError):
        return exc.kind
    text = str(exc).lower()
    if "rate limit" in text or "429" in text or "too many requests" in text:
        return ToolErrorKind.RATE_LIMITED
    if isinstance(exc, TimeoutError):
        return ToolErrorKind.SERVER_ERROR
    for marker in ("500", "502", "503", "504", "timeout", "timed out", "unavailable"):
        if marker in text:
            return ToolErrorKind.SERVER_ERROR
    return ToolErrorKind.GENERIC
