"""
Connection Resolver - Find (or launch) the Chrome this invocation talks to.

Resolution order:

1. an explicit WebSocket URL
2. an explicit port (only that port is tried)
3. the persisted session record, after a health check
4. auto-discovery (DevToolsActivePort, then the default port)

When nothing answers, ``connect()`` can launch a new Chrome and persist the
endpoint for the next invocation.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

from chromectl.cdp.transport import Transport
from chromectl.chrome.discovery import (
    DiscoveryClient,
    TargetInfo,
    discover_chrome,
    query_version,
)
from chromectl.chrome.launcher import ChromeProcess, launch_chrome
from chromectl.config import DEFAULT_CDP_PORT, Settings
from chromectl.core.errors import (
    CDPConnectionError,
    CDPTargetError,
    InvalidResponseError,
    StaleSessionError,
    StateStoreError,
)
from chromectl.state import StateRecord, StateStore

logger = logging.getLogger("chromectl")

_INDEX_RE = re.compile(r"^\d+$")


@dataclass
class Connection:
    """A resolved Chrome endpoint, optionally backed by a process we launched."""
    host: str
    port: int
    ws_url: str
    process: Optional[ChromeProcess] = None

    @property
    def launched(self) -> bool:
        return self.process is not None

    def discovery(self) -> DiscoveryClient:
        return DiscoveryClient(self.host, self.port)

    async def open_transport(self, settings: Optional[Settings] = None) -> Transport:
        settings = settings or Settings()
        return await Transport.connect(self.ws_url, settings.cdp, debug=settings.debug)

    def close(self):
        """Kill Chrome if this invocation launched it and did not detach it."""
        if self.process is not None:
            self.process.kill()
            self.process = None

    def detach(self) -> Optional[int]:
        """Keep a launched Chrome alive past this invocation; returns its pid."""
        if self.process is None:
            return None
        pid = self.process.detach()
        self.process = None
        return pid


def extract_port_from_ws_url(url: str) -> Optional[int]:
    """Port of a ``ws://host:port/path`` URL, if it has one."""
    parts = urlsplit(url)
    if parts.scheme not in ("ws", "wss"):
        return None
    try:
        return parts.port
    except ValueError:
        return None


async def health_check(host: str, port: int):
    """
    Raises:
        StaleSessionError: if Chrome no longer answers on ``host:port``.
    """
    try:
        await query_version(host, port)
    except (CDPConnectionError, CDPTargetError, InvalidResponseError) as e:
        raise StaleSessionError(
            f"Session is stale: Chrome at {host}:{port} is not responding. "
            "Run 'chromectl disconnect' and connect again",
            method="health_check",
        ) from e


async def resolve_connection(settings: Settings, store: Optional[StateStore] = None) -> Connection:
    """
    Resolve a Chrome endpoint without launching anything.

    Raises:
        CDPConnectionError: nothing answers.
        StaleSessionError: the persisted session points at a dead Chrome.
    """
    host = settings.host

    if settings.ws_url:
        port = extract_port_from_ws_url(settings.ws_url) or settings.port or DEFAULT_CDP_PORT
        return Connection(host=host, port=port, ws_url=settings.ws_url)

    if settings.port is not None:
        try:
            version = await query_version(host, settings.port)
        except (CDPConnectionError, CDPTargetError, InvalidResponseError) as e:
            raise CDPConnectionError(
                f"no running Chrome instance found with remote debugging on {host}:{settings.port}",
                method="resolve_connection",
            ) from e
        return Connection(host=host, port=settings.port, ws_url=version.ws_debugger_url)

    record = store.load() if store is not None else None
    if record is not None:
        await health_check(host, record.port)
        logger.debug(f"Reusing persisted session on port {record.port}")
        return Connection(host=host, port=record.port, ws_url=record.ws_url)

    ws_url, port = await discover_chrome(host, DEFAULT_CDP_PORT)
    return Connection(host=host, port=port, ws_url=ws_url)


async def connect(settings: Settings, store: Optional[StateStore] = None,
                  launch: bool = True) -> Connection:
    """
    Resolve a running Chrome, or launch one when none answers.

    A stale persisted session is never papered over by launching; the caller
    has to disconnect first. The resolved endpoint is written to ``store``.
    """
    try:
        connection = await resolve_connection(settings, store)
    except StaleSessionError:
        raise
    except CDPConnectionError:
        explicit = settings.ws_url is not None or settings.port is not None
        if not launch or explicit:
            raise
        logger.info("No running Chrome found, launching a new instance")
        process = await launch_chrome(settings.launch)
        version = await query_version("127.0.0.1", process.port)
        connection = Connection(
            host="127.0.0.1",
            port=process.port,
            ws_url=version.ws_debugger_url,
            process=process,
        )

    if store is not None:
        persist_connection(store, connection)
    return connection


def persist_connection(store: StateStore, connection: Connection):
    """Write the endpoint, keeping tab and overrides when the endpoint is unchanged."""
    previous = _load_or_none(store)
    record = StateRecord(
        ws_url=connection.ws_url,
        port=connection.port,
        pid=connection.process.pid if connection.process else None,
    )
    if previous is not None and previous.ws_url == connection.ws_url:
        record.active_tab = previous.active_tab
        record.overrides = previous.overrides
        record.pid = record.pid or previous.pid
    store.save(record)


def _load_or_none(store: StateStore) -> Optional[StateRecord]:
    try:
        return store.load()
    except StateStoreError as e:
        logger.debug(f"Ignoring unreadable session state: {e}")
        return None


def select_target(targets: List[TargetInfo], tab: Optional[str] = None) -> TargetInfo:
    """
    Pick a page target.

    ``tab`` may be a numeric index into the page targets or a target id;
    with no ``tab`` the first page wins.

    Raises:
        CDPTargetError: no page targets, or ``tab`` matches nothing.
    """
    pages = [t for t in targets if t.is_page]
    if tab is None:
        if not pages:
            raise CDPTargetError("No page targets found in Chrome")
        return pages[0]

    if _INDEX_RE.match(tab):
        index = int(tab)
        if index < len(pages):
            return pages[index]
    for target in pages:
        if target.id == tab:
            return target
    raise CDPTargetError(f"Tab '{tab}' not found", target_id=tab)


async def resolve_target(connection: Connection, tab: Optional[str] = None,
                         store: Optional[StateStore] = None) -> TargetInfo:
    """
    Resolve ``tab`` against the live target list.

    Without an explicit ``tab`` the persisted active tab is preferred while it
    still exists.
    """
    async with connection.discovery() as client:
        targets = await client.list_targets()

    if tab is None and store is not None:
        record = _load_or_none(store)
        if record is not None and record.active_tab:
            for target in targets:
                if target.is_page and target.id == record.active_tab:
                    return target
    return select_target(targets, tab)
