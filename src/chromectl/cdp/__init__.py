"""
CDP Module - Chrome DevTools Protocol transport and session management.
"""
from chromectl.cdp.protocol import CDPCommand, CDPEvent, CDPResponse, parse_message
from chromectl.cdp.session import CDPSession, SessionInfo, SessionManager, SessionStatus
from chromectl.cdp.transport import EventSubscription, PendingRequest, Transport

__all__ = [
    "CDPCommand",
    "CDPEvent",
    "CDPResponse",
    "parse_message",
    "CDPSession",
    "SessionInfo",
    "SessionManager",
    "SessionStatus",
    "EventSubscription",
    "PendingRequest",
    "Transport",
]
