"""
Core Module - Error taxonomy shared by every chromectl component.
"""
from chromectl.core.errors import (
    CDPConnectionError,
    CDPProtocolError,
    CDPTargetError,
    CDPTimeoutError,
    ChromectlError,
    ErrorCategory,
    GeneralError,
)

__all__ = [
    "ErrorCategory",
    "ChromectlError",
    "GeneralError",
    "CDPConnectionError",
    "CDPTargetError",
    "CDPTimeoutError",
    "CDPProtocolError",
]
