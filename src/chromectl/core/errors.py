"""
chromectl Error Taxonomy - Exception classes for CDP-driven browser control.

Every failure surfaced by the core is one of these exceptions. Each carries a
category that maps to a stable process exit code, so a caller can turn any
error into one structured JSON object without inspecting its type.
"""
import json
from enum import IntEnum
from typing import Any, Dict, Optional


class ErrorCategory(IntEnum):
    """Error categories and the exit code each maps to."""
    GENERAL = 1
    CONNECTION = 2
    TARGET = 3
    TIMEOUT = 4
    PROTOCOL = 5

    def __str__(self) -> str:
        return f"{self.name.lower()} error"


class ChromectlError(Exception):
    """Base exception for all chromectl errors."""

    category = ErrorCategory.GENERAL

    def __init__(self, message: str, session_id: Optional[str] = None,
                 target_id: Optional[str] = None, method: Optional[str] = None,
                 **context):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.target_id = target_id
        self.method = method
        self.context = context

    @property
    def exit_code(self) -> int:
        return int(self.category)

    def __str__(self):
        parts = [self.message]
        if self.session_id:
            parts.append(f"session_id={self.session_id}")
        if self.target_id:
            parts.append(f"target_id={self.target_id}")
        if self.method:
            parts.append(f"method={self.method}")
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"context=({context_str})")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Structured form: the message plus the category's exit code."""
        return {"error": self.message, "code": self.exit_code}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class GeneralError(ChromectlError):
    """Raised on caller misuse or conditions outside the other categories."""
    pass


class InvalidResponseError(GeneralError):
    """Raised when a CDP or discovery payload lacks a required field."""
    pass


class NavigationError(GeneralError):
    """Raised when Page.navigate reports an errorText."""
    pass


class LastTabError(GeneralError):
    """Raised when a close request would leave the browser with no page."""
    pass


class StateStoreError(GeneralError):
    """Raised when a persisted state file cannot be read or written."""
    pass


class ChromeNotFoundError(GeneralError):
    """Raised when no Chrome executable can be located."""
    pass


class CDPConnectionError(ChromectlError):
    """Raised when connection to Chrome/CDP fails or is lost."""

    category = ErrorCategory.CONNECTION


class ConnectionClosedError(CDPConnectionError):
    """Raised for requests still outstanding when the WebSocket closes."""
    pass


class ReconnectFailedError(CDPConnectionError):
    """Raised once the transport has given up re-establishing the socket."""

    def __init__(self, message: str, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class ChromeLaunchError(CDPConnectionError):
    """Raised when a launched Chrome process exits or fails to start."""
    pass


class StaleSessionError(CDPConnectionError):
    """Raised when the persisted endpoint no longer answers."""
    pass


class CDPTargetError(ChromectlError):
    """Raised when a tab, node, UID or selector cannot be found."""

    category = ErrorCategory.TARGET


class CDPTimeoutError(ChromectlError):
    """Raised when a CDP operation or wait strategy times out."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class CDPProtocolError(ChromectlError):
    """Raised when CDP returns an error response."""

    category = ErrorCategory.PROTOCOL

    def __init__(self, message: str, code: Optional[int] = None,
                 cdp_error: Optional[dict] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code
        self.cdp_error = cdp_error
