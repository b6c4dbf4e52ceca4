"""
Wait Strategies - Event-driven completion detection for navigations.

Every strategy subscribes before the triggering command is sent and races the
completion signal against one overall deadline. The deadline always wins when
it expires first.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from chromectl.cdp.protocol import CDPEvent
from chromectl.cdp.session import CDPSession
from chromectl.cdp.transport import EventSubscription
from chromectl.core.errors import CDPTimeoutError, GeneralError, NavigationError

logger = logging.getLogger("chromectl")

DEFAULT_NAVIGATE_TIMEOUT = 30.0
NETWORK_IDLE_WINDOW = 0.5

LOAD_EVENT = "Page.loadEventFired"
DOM_CONTENT_EVENT = "Page.domContentEventFired"
FRAME_NAVIGATED_EVENT = "Page.frameNavigated"
RESPONSE_RECEIVED_EVENT = "Network.responseReceived"
REQUEST_STARTED_EVENT = "Network.requestWillBeSent"
REQUEST_FINISHED_EVENTS = ("Network.loadingFinished", "Network.loadingFailed")


class WaitUntil(str, Enum):
    LOAD = "load"
    DOMCONTENTLOADED = "domcontentloaded"
    NETWORKIDLE = "networkidle"
    NONE = "none"

    @classmethod
    def parse(cls, value: Union[str, WaitUntil]) -> WaitUntil:
        try:
            return cls(value)
        except ValueError as e:
            choices = ", ".join(m.value for m in cls)
            raise GeneralError(f"Unknown wait strategy '{value}' (expected one of: {choices})") from e


@dataclass
class NavigationResult:
    url: str
    title: str
    status: Optional[int] = None
    frame_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "title": self.title}
        if self.status is not None:
            data["status"] = self.status
        return data


# =============================================================================
# Network-idle state machine
# =============================================================================

class IdleState(Enum):
    LOADING = "loading"
    IDLE = "idle"


class NetworkIdleMachine:
    """
    Tracks in-flight requests and decides when the network has gone quiet.

    Time is passed in explicitly so the machine can be driven by any clock.
    The quiescence timer is armed on construction, so a navigation that makes
    no requests is idle after one window.
    """

    def __init__(self, now: float, window: float = NETWORK_IDLE_WINDOW):
        self.window = window
        self.state = IdleState.LOADING
        self.in_flight = 0
        self.idle_at: Optional[float] = now + window

    @property
    def is_idle(self) -> bool:
        return self.state is IdleState.IDLE

    def request_started(self, now: float):
        if self.is_idle:
            return
        self.in_flight += 1
        self.idle_at = None

    def request_finished(self, now: float):
        if self.is_idle:
            return
        self.in_flight = max(0, self.in_flight - 1)
        if self.in_flight == 0:
            self.idle_at = now + self.window

    def on_event(self, method: str, now: float):
        if method == REQUEST_STARTED_EVENT:
            self.request_started(now)
        elif method in REQUEST_FINISHED_EVENTS:
            self.request_finished(now)

    def advance(self, now: float) -> bool:
        """Move the clock to ``now``; True only on the transition to IDLE."""
        if self.is_idle:
            return False
        if self.in_flight == 0 and self.idle_at is not None and now >= self.idle_at:
            self.state = IdleState.IDLE
            return True
        return False


# =============================================================================
# Strategies
# =============================================================================

def _timeout_error(timeout: float, strategy: str, session_id: Optional[str] = None) -> CDPTimeoutError:
    return CDPTimeoutError(
        f"Navigation timed out after {int(timeout * 1000)}ms waiting for {strategy}",
        timeout=timeout,
        session_id=session_id,
        method=strategy,
    )


async def wait_for_event(subscription: EventSubscription, timeout: float,
                         strategy: str) -> CDPEvent:
    """
    Wait for the next event on ``subscription``.

    Raises:
        CDPTimeoutError: nothing arrived within ``timeout`` seconds.
        ConnectionClosedError: the connection went away first.
    """
    event = await subscription.get(timeout=timeout)
    if event is None:
        raise _timeout_error(timeout, strategy, subscription.session_id)
    return event


async def wait_for_network_idle(subscription: EventSubscription, timeout: float,
                                window: float = NETWORK_IDLE_WINDOW):
    """
    Drive a NetworkIdleMachine from request start/finish/fail events.

    ``subscription`` must cover the request started and finished/failed events.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    machine = NetworkIdleMachine(loop.time(), window)

    while True:
        now = loop.time()
        # evaluate the idle timer no later than the deadline so the deadline wins ties
        if machine.advance(min(now, deadline)):
            logger.debug("Network idle", extra={"session_id": subscription.session_id})
            return
        if now >= deadline:
            raise _timeout_error(timeout, WaitUntil.NETWORKIDLE.value, subscription.session_id)

        wake_at = deadline if machine.idle_at is None else min(deadline, machine.idle_at)
        event = await subscription.get(timeout=max(0.0, wake_at - now))
        if event is not None:
            machine.on_event(event.method, loop.time())


def _subscribe_for(session: CDPSession, wait_until: WaitUntil) -> Optional[EventSubscription]:
    if wait_until is WaitUntil.LOAD:
        return session.subscribe(LOAD_EVENT)
    if wait_until is WaitUntil.DOMCONTENTLOADED:
        return session.subscribe(DOM_CONTENT_EVENT)
    if wait_until is WaitUntil.NETWORKIDLE:
        return session.subscribe(REQUEST_STARTED_EVENT, *REQUEST_FINISHED_EVENTS)
    return None


async def _wait(subscription: Optional[EventSubscription], wait_until: WaitUntil, timeout: float):
    if subscription is None:
        return
    if wait_until is WaitUntil.NETWORKIDLE:
        await wait_for_network_idle(subscription, timeout)
    else:
        await wait_for_event(subscription, timeout, wait_until.value)


async def page_info(session: CDPSession):
    """Current (url, title) of the page."""
    url = await session.evaluate("location.href")
    title = await session.evaluate("document.title")
    return (url if isinstance(url, str) else ""), (title if isinstance(title, str) else "")


def _drain_status(subscription: EventSubscription, frame_id: str) -> Optional[int]:
    status = None
    for event in subscription.drain():
        params = event.params
        if params.get("frameId") == frame_id and params.get("type") == "Document":
            response = params.get("response")
            response_status = response.get("status") if isinstance(response, dict) else None
            if isinstance(response_status, (int, float)):
                status = int(response_status)
    return status


async def navigate_and_wait(session: CDPSession, url: str,
                            wait_until: Union[str, WaitUntil] = WaitUntil.LOAD,
                            timeout: float = DEFAULT_NAVIGATE_TIMEOUT,
                            ignore_cache: bool = False) -> NavigationResult:
    """
    Navigate ``session``'s page to ``url`` and wait per ``wait_until``.

    Raises:
        NavigationError: Chrome reported an errorText (DNS failure etc.).
        CDPTimeoutError: the wait strategy did not complete in time.
    """
    wait_until = WaitUntil.parse(wait_until)
    await session.ensure_domain("Page")
    await session.ensure_domain("Network")

    responses = session.subscribe(RESPONSE_RECEIVED_EVENT)
    waiter = _subscribe_for(session, wait_until)
    try:
        if ignore_cache:
            await session.send("Network.setCacheDisabled", {"cacheDisabled": True})

        logger.info(f"Navigating to {url}", extra={"session_id": session.session_id, "wait_until": wait_until.value})
        result = await session.send("Page.navigate", {"url": url})

        error_text = result.get("errorText")
        if error_text:
            raise NavigationError(
                f"Navigation failed: {error_text}",
                session_id=session.session_id,
                method="Page.navigate",
            )
        frame_id = str(result.get("frameId", ""))

        await _wait(waiter, wait_until, timeout)
        status = _drain_status(responses, frame_id)
    finally:
        responses.close()
        if waiter is not None:
            waiter.close()

    current_url, title = await page_info(session)
    return NavigationResult(url=current_url, title=title, status=status, frame_id=frame_id)


async def reload_and_wait(session: CDPSession, ignore_cache: bool = False,
                          timeout: float = DEFAULT_NAVIGATE_TIMEOUT) -> NavigationResult:
    """Reload the page and wait for its load event."""
    await session.ensure_domain("Page")
    with session.subscribe(LOAD_EVENT) as waiter:
        await session.send("Page.reload", {"ignoreCache": ignore_cache})
        await wait_for_event(waiter, timeout, WaitUntil.LOAD.value)
    url, title = await page_info(session)
    return NavigationResult(url=url, title=title)


async def history_navigate(session: CDPSession, delta: int,
                           timeout: float = DEFAULT_NAVIGATE_TIMEOUT) -> NavigationResult:
    """
    Go ``delta`` entries through the session history (-1 back, 1 forward).

    Raises:
        GeneralError: there is no entry in that direction.
    """
    await session.ensure_domain("Page")
    history = await session.send("Page.getNavigationHistory")
    entries = history.get("entries")
    if not isinstance(entries, list):
        raise GeneralError("Invalid navigation history response", session_id=session.session_id)

    current_index = int(history.get("currentIndex", 0))
    index = current_index + delta
    if delta == 0 or index < 0 or index >= len(entries):
        direction = "back" if delta < 0 else "forward"
        edge = "beginning" if delta < 0 else "end"
        raise GeneralError(f"Cannot go {direction}: already at the {edge} of history.")

    # frameNavigated fires reliably for cross-origin history entries
    with session.subscribe(FRAME_NAVIGATED_EVENT) as waiter:
        await session.send("Page.navigateToHistoryEntry", {"entryId": entries[index]["id"]})
        await wait_for_event(waiter, timeout, "navigation")

    url, title = await page_info(session)
    return NavigationResult(url=url, title=title)


# =============================================================================
# Long-lived invocations
# =============================================================================

EventHandler = Callable[[CDPEvent], Optional[Awaitable[None]]]


async def follow_events(session: CDPSession, methods: Iterable[str], handler: EventHandler,
                        timeout: Optional[float] = None,
                        stop: Optional[asyncio.Event] = None,
                        handle_sigint: bool = True) -> int:
    """
    Stream events to ``handler`` until SIGINT, ``stop`` or ``timeout``.

    Keeps the transport (and therefore any session-scoped state in Chrome)
    alive for the whole call. Returns the number of events handled.
    """
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    sigint_installed = False
    if handle_sigint:
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
            sigint_installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported on this event loop")

    count = 0
    stop_task = asyncio.ensure_future(stop.wait())
    try:
        with session.subscribe(*methods) as subscription:
            while not stop.is_set():
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    break
                get_task = asyncio.ensure_future(subscription.get())
                done, _ = await asyncio.wait(
                    {get_task, stop_task}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if get_task not in done:
                    get_task.cancel()
                    continue
                outcome = handler(get_task.result())
                if asyncio.iscoroutine(outcome):
                    await outcome
                count += 1
    finally:
        stop_task.cancel()
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return count
