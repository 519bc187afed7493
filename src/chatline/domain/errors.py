from __future__ import annotations

"""Error taxonomy shared by the HTTP routers, the realtime engine and the proxy."""

from typing import Any, Dict, Optional


class ChatlineError(Exception):
    """Base class for all application errors."""


class ClientInputError(ChatlineError):
    """Missing or invalid request fields. Never retried."""


class AuthorizationError(ChatlineError):
    """Absent, unknown or expired session, or bad credentials."""


class ConfigurationError(ChatlineError):
    """A server-side credential or setting required for the request is missing."""


class PersistenceError(ChatlineError):
    """A storage write failed on a best-effort path."""


class EncodingError(ChatlineError):
    """Compact encode/decode failed; callers fall back to JSON or raw text."""


class UpstreamTransientError(ChatlineError):
    """The generation API returned a non-success status or no usable content."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamExhaustedError(UpstreamTransientError):
    """Every attempt against the generation API failed."""

    def __init__(self, message: str, *, attempts: int, token_report: Dict[str, Any]) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.token_report = token_report
