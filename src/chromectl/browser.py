"""
Browser - The facade command modules build on.

Wraps connection resolution, the transport, session management, wait
strategies, propagation-safe tab operations and accessibility snapshots behind
one async context manager. Target mutations go through ``TargetLifecycle`` and
UID resolution goes through the snapshot engine; callers should not bypass
either.

Usage:
    async with Browser(Settings.from_env()) as browser:
        session = await browser.attach_session()
        await browser.navigate_and_wait("https://example.com", wait_until="networkidle")
        result = await browser.snapshot()
        backend_id = await browser.resolve("s1")
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Union

from chromectl.cdp.session import CDPSession, SessionManager
from chromectl.cdp.transport import Transport
from chromectl.chrome.discovery import DiscoveryClient, TargetInfo
from chromectl.config import Settings
from chromectl.connection import Connection, connect, resolve_target
from chromectl.core.errors import ChromectlError, GeneralError
from chromectl.snapshot import BuildResult, resolve_node, take_snapshot
from chromectl.state import StateStore, apply_overrides
from chromectl.targets import CloseResult, TabInfo, TargetLifecycle
from chromectl.wait import (
    DEFAULT_NAVIGATE_TIMEOUT,
    NavigationResult,
    WaitUntil,
    history_navigate,
    navigate_and_wait,
    reload_and_wait,
)

logger = logging.getLogger("chromectl")


class Browser:
    """
    One invocation's view of Chrome.

    Resolves (or launches) Chrome on ``start()``, keeps a single transport for
    the life of the object, and persists the endpoint and active tab to the
    state store.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 store: Optional[StateStore] = None, launch: bool = True):
        self.settings = settings or Settings()
        self.store = store if store is not None else StateStore.from_settings(self.settings)
        self.launch = launch
        self.connection: Optional[Connection] = None
        self._transport: Optional[Transport] = None
        self._sessions: Optional[SessionManager] = None
        self._discovery: Optional[DiscoveryClient] = None
        self._lifecycle: Optional[TargetLifecycle] = None
        self._target: Optional[TargetInfo] = None

    async def __aenter__(self) -> Browser:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self):
        """Resolve Chrome and open the WebSocket."""
        self.connection = await connect(self.settings, self.store, launch=self.launch)
        try:
            self._transport = await self.connection.open_transport(self.settings)
        except ChromectlError:
            self.connection.close()
            self.connection = None
            raise
        self._sessions = SessionManager(self._transport)
        self._discovery = self.connection.discovery()
        self._lifecycle = TargetLifecycle(self._sessions, self._discovery, self.store)
        logger.info(f"Connected to Chrome at {self.connection.host}:{self.connection.port}")

    async def stop(self, keep_chrome: bool = False):
        """
        Close the transport. A Chrome launched by ``start()`` is killed unless
        ``keep_chrome`` is set, in which case it is left running for later
        invocations.
        """
        if self._sessions is not None:
            await self._sessions.close()
            self._sessions = None
        if self._transport is not None:
            await self._transport.close()
            self._transport = None
        if self._discovery is not None:
            await self._discovery.aclose()
            self._discovery = None
        if self.connection is not None:
            if keep_chrome:
                self.connection.detach()
            else:
                self.connection.close()
            self.connection = None
        self._lifecycle = None
        self._target = None
        logger.info("Browser session stopped")

    def _ensure_started(self) -> TargetLifecycle:
        if self._lifecycle is None or self.connection is None:
            raise GeneralError(
                "Browser not connected. Call start() or use async context manager.",
                method="_ensure_started",
            )
        return self._lifecycle

    @property
    def transport(self) -> Transport:
        self._ensure_started()
        return self._transport

    @property
    def sessions(self) -> SessionManager:
        self._ensure_started()
        return self._sessions

    # =========================================================================
    # Targets and sessions
    # =========================================================================

    async def resolve_target(self, tab: Optional[str] = None) -> TargetInfo:
        """Resolve ``tab`` (or the configured/persisted tab) to a page target."""
        self._ensure_started()
        tab = tab if tab is not None else self.settings.tab
        self._target = await resolve_target(self.connection, tab, self.store)
        return self._target

    async def attach_session(self, tab: Optional[str] = None) -> CDPSession:
        """Attach to the resolved tab and re-apply persisted emulation overrides."""
        sessions = self.sessions
        if tab is not None or self._target is None:
            await self.resolve_target(tab)

        # tab listing and activation attach too, so replay on first use here
        session = await sessions.attach(self._target.id)
        if not session.info.overrides_applied:
            record = self.store.load()
            if record is not None and not record.overrides.is_empty():
                await apply_overrides(session, record.overrides)
            session.info.overrides_applied = True
        return session

    # =========================================================================
    # Navigation
    # =========================================================================

    async def navigate_and_wait(self, url: str,
                                wait_until: Union[str, WaitUntil] = WaitUntil.LOAD,
                                timeout: float = DEFAULT_NAVIGATE_TIMEOUT,
                                ignore_cache: bool = False) -> NavigationResult:
        session = await self.attach_session()
        return await navigate_and_wait(session, url, wait_until, timeout, ignore_cache=ignore_cache)

    async def reload(self, ignore_cache: bool = False,
                     timeout: float = DEFAULT_NAVIGATE_TIMEOUT) -> NavigationResult:
        session = await self.attach_session()
        return await reload_and_wait(session, ignore_cache=ignore_cache, timeout=timeout)

    async def go_back(self) -> NavigationResult:
        return await history_navigate(await self.attach_session(), -1)

    async def go_forward(self) -> NavigationResult:
        return await history_navigate(await self.attach_session(), 1)

    # =========================================================================
    # Tabs
    # =========================================================================

    async def list_tabs(self, include_internal: bool = False) -> List[TabInfo]:
        return await self._ensure_started().list_tabs(include_internal)

    async def create_target(self, url: str = "about:blank", background: bool = False) -> TargetInfo:
        return await self._ensure_started().create_target(url, background)

    async def close_targets(self, tab_refs: Sequence[str]) -> CloseResult:
        result = await self._ensure_started().close_targets(tab_refs)
        if self._target is not None and self._target.id in result.closed:
            self._target = None
        return result

    async def activate_target(self, tab_ref: str) -> TargetInfo:
        self._target = await self._ensure_started().activate_target(tab_ref)
        return self._target

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def snapshot(self, verbose: bool = False) -> BuildResult:
        """Take an accessibility snapshot of the current tab and persist its UIDs."""
        session = await self.attach_session()
        return await take_snapshot(session, self.store, self._target.id, verbose=verbose)

    async def resolve(self, target: str) -> int:
        """Resolve a UID, backend node id or ``css:`` selector to a backend node id."""
        session = await self.attach_session()
        return await resolve_node(session, self.store, target, self._target.id)
