"""
Target Lifecycle - Create, close and activate tabs so the result is observable.

``Target.*`` commands go over the WebSocket, but Chrome's HTTP discovery
endpoint is a separately maintained view that can lag behind it. Each mutation
here issues its command and then polls for the expected post-condition. Running
out of attempts is not an error: the command already succeeded, only the
observation is late, so the last observed value is returned.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from chromectl.cdp.session import SessionManager
from chromectl.chrome.discovery import DiscoveryClient, TargetInfo
from chromectl.connection import select_target
from chromectl.core.errors import ChromectlError, GeneralError, InvalidResponseError, LastTabError
from chromectl.state import StateStore

logger = logging.getLogger("chromectl")

T = TypeVar("T")

POLL_ATTEMPTS = 10
POLL_INTERVAL = 0.01


@dataclass
class PollOutcome(Generic[T]):
    value: T
    matched: bool
    attempts: int


async def poll_until(probe: Callable[[], Awaitable[T]], predicate: Callable[[T], bool],
                     attempts: int = POLL_ATTEMPTS,
                     interval: float = POLL_INTERVAL) -> PollOutcome[T]:
    """
    Call ``probe`` until ``predicate`` accepts its value, at most ``attempts`` times.

    Never raises on exhaustion; the last observed value comes back with
    ``matched=False``. Errors raised by ``probe`` itself propagate.
    """
    if attempts < 1:
        raise GeneralError("poll_until needs at least one attempt")
    for attempt in range(1, attempts + 1):
        value = await probe()
        if predicate(value):
            return PollOutcome(value=value, matched=True, attempts=attempt)
        if attempt < attempts:
            await asyncio.sleep(interval)
    logger.debug(f"Post-condition not observed after {attempts} polls")
    return PollOutcome(value=value, matched=False, attempts=attempts)


@dataclass
class TabInfo:
    id: str
    url: str
    title: str
    active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "url": self.url, "title": self.title, "active": self.active}


@dataclass
class CloseResult:
    closed: List[str] = field(default_factory=list)
    remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"closed": list(self.closed), "remaining": self.remaining}


def is_internal_page(target: TargetInfo) -> bool:
    url = target.url
    if url.startswith("chrome://newtab"):
        return False
    return url.startswith("chrome://") or url.startswith("chrome-extension://")


class TargetLifecycle:
    """Propagation-safe tab operations over one connection."""

    def __init__(self, sessions: SessionManager, discovery: DiscoveryClient,
                 store: Optional[StateStore] = None,
                 attempts: int = POLL_ATTEMPTS, interval: float = POLL_INTERVAL):
        self.sessions = sessions
        self.discovery = discovery
        self.store = store
        self.attempts = attempts
        self.interval = interval

    async def _page_targets(self) -> List[TargetInfo]:
        return [t for t in await self.discovery.list_targets() if t.is_page]

    async def _page_count(self) -> int:
        return len(await self._page_targets())

    async def is_visible(self, target_id: str) -> bool:
        """True when the page reports ``document.visibilityState == "visible"``."""
        try:
            session = await self.sessions.attach(target_id)
            state = await session.evaluate("document.visibilityState")
        except ChromectlError as e:
            logger.debug(f"Visibility check failed for {target_id}: {e}")
            return False
        return state == "visible"

    async def visible_target_id(self, pages: Sequence[TargetInfo]) -> Optional[str]:
        for page in pages:
            if await self.is_visible(page.id):
                return page.id
        return None

    async def list_tabs(self, include_internal: bool = False) -> List[TabInfo]:
        """Page targets, with ``active`` taken from the page's own visibility state."""
        pages = await self._page_targets()
        if not include_internal:
            pages = [p for p in pages if not is_internal_page(p)]

        visible_id = await self.visible_target_id(pages)
        tabs = []
        for index, page in enumerate(pages):
            active = page.id == visible_id if visible_id is not None else index == 0
            tabs.append(TabInfo(id=page.id, url=page.url, title=page.title, active=active))
        return tabs

    async def create_target(self, url: str = "about:blank", background: bool = False) -> TargetInfo:
        """
        Open a tab and return once the discovery endpoint lists it.

        With ``background`` the previously visible tab is re-activated.
        """
        previous_id = None
        if background:
            pages = await self._page_targets()
            previous_id = await self.visible_target_id(pages)
            if previous_id is None and pages:
                previous_id = pages[0].id

        params: Dict[str, Any] = {"url": url}
        if background:
            params["background"] = True
        result = await self.sessions.transport.execute("Target.createTarget", params)
        target_id = result.get("targetId")
        if not isinstance(target_id, str) or not target_id:
            raise InvalidResponseError("Target.createTarget response missing targetId",
                                       method="Target.createTarget")

        listed = await poll_until(
            self.discovery.list_targets,
            lambda targets: any(t.id == target_id for t in targets),
            self.attempts, self.interval,
        )

        if previous_id is not None:
            await self._restore_visible(previous_id)
        elif self.store is not None:
            self.store.set_active_tab(target_id)

        logger.info(f"Created target {target_id}", extra={"target_id": target_id, "background": background})
        for target in listed.value:
            if target.id == target_id:
                return target
        return TargetInfo(id=target_id, type="page", url=url)

    async def _restore_visible(self, target_id: str):
        # page-load events of the new tab can steal focus back once
        for _ in range(2):
            await self.discovery.activate(target_id)
            outcome = await poll_until(
                lambda: self.is_visible(target_id), bool, self.attempts, self.interval,
            )
            if outcome.matched:
                return
        logger.warning(f"Tab {target_id} did not report visible after re-activation")

    async def close_targets(self, tab_refs: Sequence[str]) -> CloseResult:
        """
        Close tabs by index or id and wait until the endpoint reflects it.

        Raises:
            LastTabError: the request would close every page.
            CDPTargetError: a reference matches no tab.
        """
        targets = await self.discovery.list_targets()

        # resolve every reference before closing anything so indexes do not shift
        to_close: List[TargetInfo] = []
        for ref in tab_refs:
            target = select_target(targets, ref)
            if target not in to_close:
                to_close.append(target)

        page_count = sum(1 for t in targets if t.is_page)
        if len(to_close) >= page_count:
            raise LastTabError(
                "Cannot close the last tab. Chrome requires at least one open tab"
            )

        closed = []
        for target in to_close:
            await self.sessions.transport.execute("Target.closeTarget", {"targetId": target.id})
            closed.append(target.id)

        expected = page_count - len(closed)
        outcome = await poll_until(
            self._page_count, lambda count: count == expected, self.attempts, self.interval,
        )

        if self.store is not None:
            record = self.store.load()
            if record is not None and record.active_tab in closed:
                self.store.set_active_tab(None)
        return CloseResult(closed=closed, remaining=outcome.value)

    async def activate_target(self, tab_ref: str) -> TargetInfo:
        """Bring a tab to the foreground, confirmed by its visibility state."""
        targets = await self.discovery.list_targets()
        target = select_target(targets, tab_ref)

        await self.sessions.transport.execute("Target.activateTarget", {"targetId": target.id})
        outcome = await poll_until(
            lambda: self.is_visible(target.id), bool, self.attempts, self.interval,
        )
        if not outcome.matched:
            logger.warning(f"Tab {target.id} not yet reporting visible", extra={"target_id": target.id})

        if self.store is not None:
            self.store.set_active_tab(target.id)
        return target
