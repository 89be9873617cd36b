"""
Error types and classification for mail provider drivers.

Every provider failure is classified as fatal (the stored credentials are
unusable and the connection must be removed), transient (worth retrying by
the caller) or not-found (the driver itself found the requested item missing).
"""

import dataclasses
import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substrings of context keys whose values must never be logged or propagated
SENSITIVE_KEY_PARTS = (
    "token",
    "secret",
    "password",
    "authorization",
    "credential",
    "cookie",
)

# Exact context keys that carry credentials without a telling name
SENSITIVE_KEYS = frozenset({"code", "auth"})


class ErrorKind(str, Enum):
    """Classification of a provider failure."""
    FATAL = "fatal"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"


# Structured error codes that mean the connection can no longer be used.
# Keyed by provider id so each vendor's vocabulary stays separate.
FATAL_ERROR_CODES: Mapping[str, FrozenSet[str]] = {
    "google": frozenset({
        "invalid_grant",
        "invalid_client",
        "unauthorized_client",
        "authError",
        "insufficientPermissions",
        "ACCESS_TOKEN_SCOPE_INSUFFICIENT",
        "failedPrecondition",
    }),
    "microsoft": frozenset({
        "invalid_grant",
        "invalid_client",
        "unauthorized_client",
        "interaction_required",
        "InvalidAuthenticationToken",
        "AuthenticationError",
        "ErrorAccessDenied",
        "MailboxNotEnabledForRESTAPI",
        "MailboxNotSupportedForRESTAPI",
    }),
}

# Messages providers return without a usable code
FATAL_ERROR_MESSAGES = frozenset({
    "invalid_grant",
    "Invalid Credentials",
    "Failed to get access token",
    "Token has been expired or revoked.",
    "Mail service not enabled",
    "Request had insufficient authentication scopes.",
})


class MailDriverError(Exception):
    """Base class for all driver layer errors."""


class ProviderHTTPError(MailDriverError):
    """A provider returned a non-success HTTP response."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class NotFoundError(MailDriverError):
    """The requested message, attachment, draft or label does not exist."""


class TokenRefreshError(MailDriverError):
    """A usable access token could not be obtained for a connection."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class UnsupportedProviderError(MailDriverError, ValueError):
    """The provider id is not one of the supported providers."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider not supported: {provider}")


class DriverError(MailDriverError):
    """
    Standardized error raised by every driver operation.

    Carries the underlying message, the operation name and the call context
    with credentials already redacted, so callers can render one failure
    surface regardless of provider.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.operation = operation
        self.context = context or {}
        self.kind = kind
        self.provider = provider
        self.status_code = status_code
        self.code = code
        super().__init__(f"{operation}: {message}")

    @property
    def is_fatal(self) -> bool:
        return self.kind is ErrorKind.FATAL

    @property
    def reconnect_required(self) -> bool:
        """True when the user has to authorize the connection again."""
        return self.is_fatal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'operation': self.operation,
            'context': self.context,
            'kind': self.kind.value,
            'provider': self.provider,
            'status_code': self.status_code,
            'code': self.code,
        }


def get_status_code(exc: BaseException) -> Optional[int]:
    """Extract an HTTP status from any of the exception shapes the drivers see."""
    status = getattr(exc, 'status_code', None)
    if status is None:
        # googleapiclient.errors.HttpError keeps the httplib2 response
        resp = getattr(exc, 'resp', None)
        status = getattr(resp, 'status', None)
    if status is None:
        # httpx.HTTPStatusError
        response = getattr(exc, 'response', None)
        status = getattr(response, 'status_code', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def get_error_code(exc: BaseException) -> Optional[str]:
    """Extract a structured provider error code, if any."""
    code = getattr(exc, 'code', None)
    if isinstance(code, str) and code:
        return code

    # googleapiclient.errors.HttpError exposes error_details as a list of dicts
    details = getattr(exc, 'error_details', None)
    if isinstance(details, list):
        for detail in details:
            if isinstance(detail, dict) and detail.get('reason'):
                return detail['reason']

    # google.auth.exceptions.RefreshError is raised as (message, response_body)
    args = getattr(exc, 'args', ())
    if len(args) > 1 and isinstance(args[1], dict) and args[1].get('error'):
        return str(args[1]['error'])
    return None


def get_error_message(exc: BaseException) -> str:
    message = getattr(exc, 'message', None)
    if isinstance(message, str) and message:
        return message
    reason = getattr(exc, 'reason', None)
    if isinstance(reason, str) and reason:
        return reason
    return str(exc) or exc.__class__.__name__


def classify_error(exc: BaseException, provider: Optional[str] = None) -> ErrorKind:
    """
    Decide whether a provider failure is fatal, transient or not-found.

    Args:
        exc: The exception raised by the provider call
        provider: Provider id used to select the structured fatal-code table

    Returns:
        ErrorKind for the failure
    """
    if isinstance(exc, NotFoundError):
        return ErrorKind.NOT_FOUND

    code = get_error_code(exc)
    if code:
        fatal_codes = FATAL_ERROR_CODES.get(provider or '', frozenset())
        if code in fatal_codes:
            return ErrorKind.FATAL

    if get_error_message(exc) in FATAL_ERROR_MESSAGES:
        return ErrorKind.FATAL

    # A provider 404 is fatal like any other 4xx; operations that expect
    # missing items handle them before the error reaches this point
    status = get_status_code(exc)
    if status is not None:
        if status == 429:
            return ErrorKind.TRANSIENT
        if 400 <= status < 500:
            return ErrorKind.FATAL

    return ErrorKind.TRANSIENT


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in SENSITIVE_KEYS or any(part in lowered for part in SENSITIVE_KEY_PARTS)


def sanitize_context(value: Any) -> Any:
    """
    Return a copy of an operation context that is safe to log.

    Credential-like keys are replaced with a marker at any depth, raw bytes
    are replaced with their length and dataclasses are converted to dicts.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}

    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_sensitive(str(key)) else sanitize_context(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_context(item) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    return value
