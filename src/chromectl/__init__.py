"""
chromectl - Drive a running Chrome from short-lived invocations over CDP.

Usage:
    from chromectl import Browser, Settings

    async with Browser(Settings.from_env()) as browser:
        result = await browser.navigate_and_wait("https://example.com", wait_until="load")
        snapshot = await browser.snapshot()
        backend_id = await browser.resolve("s1")

Lower-level pieces:
    from chromectl import Transport, SessionManager, TargetLifecycle
"""
from chromectl.browser import Browser
from chromectl.cdp import CDPSession, EventSubscription, PendingRequest, SessionManager, Transport
from chromectl.config import CDPConfig, LaunchConfig, ReconnectConfig, Settings
from chromectl.connection import Connection, connect, resolve_connection, resolve_target, select_target
from chromectl.core.errors import (
    CDPConnectionError,
    CDPProtocolError,
    CDPTargetError,
    CDPTimeoutError,
    ChromectlError,
    ConnectionClosedError,
    ErrorCategory,
    GeneralError,
)
from chromectl.snapshot import BuildResult, SnapshotNode, build_tree, format_text, resolve_node, search_tree, take_snapshot
from chromectl.state import EmulationOverrides, SnapshotState, StateRecord, StateStore
from chromectl.targets import CloseResult, PollOutcome, TargetLifecycle, poll_until
from chromectl.wait import NavigationResult, NetworkIdleMachine, WaitUntil, navigate_and_wait

__version__ = "0.1.0"

__all__ = [
    # Main API
    "Browser",
    "Settings",
    "CDPConfig",
    "LaunchConfig",
    "ReconnectConfig",
    # Transport and sessions
    "Transport",
    "PendingRequest",
    "EventSubscription",
    "SessionManager",
    "CDPSession",
    # Connection
    "Connection",
    "connect",
    "resolve_connection",
    "resolve_target",
    "select_target",
    # State
    "StateStore",
    "StateRecord",
    "SnapshotState",
    "EmulationOverrides",
    # Waits
    "WaitUntil",
    "NavigationResult",
    "NetworkIdleMachine",
    "navigate_and_wait",
    # Targets
    "TargetLifecycle",
    "CloseResult",
    "PollOutcome",
    "poll_until",
    # Snapshots
    "BuildResult",
    "SnapshotNode",
    "build_tree",
    "search_tree",
    "format_text",
    "take_snapshot",
    "resolve_node",
    # Errors
    "ErrorCategory",
    "ChromectlError",
    "GeneralError",
    "CDPConnectionError",
    "ConnectionClosedError",
    "CDPTargetError",
    "CDPTimeoutError",
    "CDPProtocolError",
]
