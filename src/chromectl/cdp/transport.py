"""
CDP Transport - One WebSocket, one reader task, id-correlated requests and event fan-out.

The reader task is the only code that touches the socket, the pending-request
table and the subscriber list. Callers talk to it through a command queue:
``send()`` and ``subscribe()`` enqueue a message and return immediately, so
everything a caller enqueues is applied in the order it was enqueued.
"""
from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Union

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from chromectl.cdp.protocol import CDPCommand, CDPEvent, CDPResponse, parse_message
from chromectl.config import CDPConfig
from chromectl.core.errors import (
    CDPConnectionError,
    CDPProtocolError,
    CDPTimeoutError,
    ChromectlError,
    ConnectionClosedError,
    GeneralError,
    InvalidResponseError,
    ReconnectFailedError,
)

logger = logging.getLogger("chromectl")

_CLOSED = object()


@dataclass(eq=False)
class PendingRequest:
    """An in-flight command. Awaiting it yields the result or raises."""
    id: int
    method: str
    deadline: float
    future: asyncio.Future
    session_id: Optional[str] = None
    timeout: Optional[float] = None

    def __await__(self):
        return self.future.__await__()

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, result: Dict[str, Any]) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


class EventSubscription:
    """
    A private queue of events matching a method set and an optional session.

    A subscription without a session scope receives matching events from every
    session as well as browser-level events.
    """

    def __init__(self, transport: Transport, methods: FrozenSet[str],
                 session_id: Optional[str] = None):
        self.methods = methods
        self.session_id = session_id
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminated = False
        self._closed_by_owner = False

    def matches(self, event: CDPEvent) -> bool:
        if event.method not in self.methods:
            return False
        return self.session_id is None or event.session_id == self.session_id

    @property
    def terminated(self) -> bool:
        return self._terminated

    def _deliver(self, event: CDPEvent):
        if not self._terminated:
            self._queue.put_nowait(event)

    def _terminate(self):
        if not self._terminated:
            self._terminated = True
            self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> Optional[CDPEvent]:
        """
        Return the next event, or None if ``timeout`` seconds pass first.

        Raises:
            ConnectionClosedError: if the stream ended because the connection
                went away (or the subscription was closed) and no queued event
                remains.
        """
        if not self._queue.empty():
            item = self._queue.get_nowait()
        elif timeout is not None and timeout <= 0:
            return None
        else:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                return None

        if item is _CLOSED:
            # keep the end marker for later readers
            self._queue.put_nowait(_CLOSED)
            reason = "closed" if self._closed_by_owner else "connection closed"
            raise ConnectionClosedError(
                f"Event stream {reason} while waiting for {', '.join(sorted(self.methods))}",
                session_id=self.session_id,
            )
        return item

    def drain(self) -> List[CDPEvent]:
        """Return every event already queued, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    def close(self):
        """Stop receiving events."""
        if self._terminated:
            return
        self._closed_by_owner = True
        self._transport._unsubscribe(self)
        self._terminate()

    def __enter__(self) -> EventSubscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> CDPEvent:
        try:
            event = await self.get()
        except ConnectionClosedError:
            raise StopAsyncIteration
        return event


@dataclass
class _Send:
    pending: PendingRequest
    command: CDPCommand


@dataclass
class _Subscribe:
    subscription: EventSubscription


@dataclass
class _Unsubscribe:
    subscription: EventSubscription


@dataclass
class _Shutdown:
    pass


_TransportMessage = Union[_Send, _Subscribe, _Unsubscribe, _Shutdown]


class Transport:
    """Chrome DevTools Protocol WebSocket transport."""

    def __init__(self, url: str, config: Optional[CDPConfig] = None, debug: bool = False):
        self.url = url
        self.config = config or CDPConfig()
        self.debug = debug
        self._ws = None
        self._ids = itertools.count(1)
        self._commands: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Dict[int, PendingRequest] = {}
        self._subscriptions: List[EventSubscription] = []
        self._connected = False
        self._failure: Optional[ChromectlError] = None
        self._closing: Optional[asyncio.Event] = None

    @classmethod
    async def connect(cls, url: str, config: Optional[CDPConfig] = None,
                      debug: bool = False) -> Transport:
        transport = cls(url, config, debug=debug)
        await transport.open()
        return transport

    async def __aenter__(self) -> Transport:
        if self._task is None:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def open(self):
        """Open the WebSocket and start the reader task."""
        logger.info(f"Connecting to Chrome via WebSocket: {self.url}")
        self._ws = await self._connect_ws()
        self._connected = True
        self._commands = asyncio.Queue()
        self._closing = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"cdp-transport:{self.url}")
        logger.info("WebSocket connection established")

    async def _connect_ws(self):
        timeout = self.config.connect_timeout
        try:
            return await asyncio.wait_for(
                connect(self.url, max_size=None, ping_interval=None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise CDPTimeoutError(
                "CDP connection timed out",
                timeout=timeout,
                method="connect",
            ) from e
        except (OSError, WebSocketException) as e:
            raise CDPConnectionError(
                f"CDP connection error: {e}",
                method="connect",
            ) from e

    def send(self, method: str, params: Optional[Dict[str, Any]] = None,
             session_id: Optional[str] = None,
             timeout: Optional[float] = None) -> PendingRequest:
        """Queue a command and return its PendingRequest (await it for the result)."""
        loop = asyncio.get_running_loop()
        if timeout is None:
            timeout = self.config.command_timeout
        pending = PendingRequest(
            id=next(self._ids),
            method=method,
            deadline=loop.time() + timeout,
            future=loop.create_future(),
            session_id=session_id,
            timeout=timeout,
        )

        failure = self._current_failure()
        if failure is not None:
            pending.reject(self._copy_failure(failure, method, session_id))
            return pending

        command = CDPCommand(id=pending.id, method=method, params=params, session_id=session_id)
        self._commands.put_nowait(_Send(pending, command))
        return pending

    async def execute(self, method: str, params: Optional[Dict[str, Any]] = None,
                      session_id: Optional[str] = None,
                      timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a CDP command and wait for its result."""
        pending = self.send(method, params, session_id=session_id, timeout=timeout)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        if self.debug:
            logger.debug(
                f"CDP command: {method}",
                extra={"method": method, "session_id": session_id, "message_id": pending.id},
            )

        try:
            result = await pending
        except CDPTimeoutError:
            logger.warning(
                f"CDP command timeout: {method} after {loop.time() - start_time:.3f}s",
                extra={"method": method, "session_id": session_id, "message_id": pending.id},
            )
            raise
        except ChromectlError as e:
            logger.debug(
                f"CDP command error: {method} - {e}",
                extra={"method": method, "session_id": session_id, "message_id": pending.id,
                       "error_type": type(e).__name__},
            )
            raise

        if self.debug:
            duration = loop.time() - start_time
            logger.debug(
                f"CDP response: {method} (duration={duration:.3f}s)",
                extra={"method": method, "session_id": session_id, "message_id": pending.id,
                       "duration_ms": duration * 1000},
            )
        return result

    def subscribe(self, *methods: str, session_id: Optional[str] = None) -> EventSubscription:
        """
        Register a subscription for one or more event methods.

        Events that arrive after this call returns are delivered, so subscribe
        before sending the command whose events you want to observe.
        """
        if not methods:
            raise GeneralError("subscribe() needs at least one event method")
        subscription = EventSubscription(self, frozenset(methods), session_id)
        if self._current_failure() is not None:
            subscription._terminate()
            return subscription
        self._commands.put_nowait(_Subscribe(subscription))
        return subscription

    def _unsubscribe(self, subscription: EventSubscription):
        if self._current_failure() is None:
            self._commands.put_nowait(_Unsubscribe(subscription))

    async def close(self):
        """Shut down the reader task and close the socket."""
        if self._task is None:
            return
        if not self._task.done():
            # wakes a reader that is sleeping between reconnect attempts
            self._closing.set()
            self._commands.put_nowait(_Shutdown())
            await asyncio.gather(self._task, return_exceptions=True)
        logger.debug("Transport closed", extra={"url": self.url})

    def _current_failure(self) -> Optional[ChromectlError]:
        if self._failure is not None:
            return self._failure
        if self._task is None:
            return CDPConnectionError("WebSocket connection not established")
        if self._task.done():
            return ConnectionClosedError("CDP connection closed")
        return None

    @staticmethod
    def _copy_failure(failure: ChromectlError, method: str,
                      session_id: Optional[str]) -> ChromectlError:
        error = copy.copy(failure)
        error.method = method
        error.session_id = session_id
        return error

    # ------------------------------------------------------------------
    # Reader task
    # ------------------------------------------------------------------

    async def _run(self):
        recv_task: Optional[asyncio.Future] = None
        command_task: Optional[asyncio.Future] = None
        try:
            while True:
                if recv_task is None:
                    recv_task = asyncio.ensure_future(self._ws.recv())
                if command_task is None:
                    command_task = asyncio.ensure_future(self._commands.get())

                done, _ = await asyncio.wait(
                    {recv_task, command_task},
                    timeout=self._time_to_next_deadline(),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if recv_task in done:
                    finished, recv_task = recv_task, None
                    try:
                        raw = finished.result()
                    except (ConnectionClosed, OSError) as e:
                        if not await self._handle_disconnect(e):
                            return
                    else:
                        self._handle_frame(raw)

                if command_task in done:
                    finished, command_task = command_task, None
                    if not await self._handle_command(finished.result()):
                        return

                self._sweep_timeouts()
        finally:
            self._connected = False
            if self._failure is None:
                self._failure = ConnectionClosedError("CDP connection closed")
            if recv_task is not None:
                recv_task.cancel()
            if command_task is not None:
                if command_task.done() and not command_task.cancelled():
                    self._reject_message(command_task.result())
                else:
                    command_task.cancel()
            self._drain(self._failure)

    def _handle_frame(self, raw: Union[str, bytes]):
        try:
            message = parse_message(raw)
        except InvalidResponseError as e:
            logger.debug(f"Ignoring malformed CDP frame: {e}")
            return

        if isinstance(message, CDPResponse):
            pending = self._pending.pop(message.id, None)
            if pending is None:
                logger.debug(f"Response for unknown message id {message.id}")
                return
            if message.error is not None:
                error = message.error
                pending.reject(CDPProtocolError(
                    f"CDP protocol error ({error.code}): {error.message}",
                    code=error.code,
                    cdp_error={"code": error.code, "message": error.message, "data": error.data},
                    session_id=pending.session_id,
                    method=pending.method,
                ))
            else:
                pending.resolve(message.result or {})
            return

        if self.debug:
            logger.debug(
                f"CDP event: {message.method}",
                extra={"method": message.method, "session_id": message.session_id},
            )
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(message):
                if delivered:
                    subscription._deliver(replace(message, params=copy.deepcopy(message.params)))
                else:
                    subscription._deliver(message)
                delivered += 1

    async def _handle_command(self, message: _TransportMessage) -> bool:
        if isinstance(message, _Send):
            pending = message.pending
            if pending.done:
                return True
            try:
                await self._ws.send(message.command.to_json())
            except (ConnectionClosed, OSError) as e:
                pending.reject(CDPConnectionError(
                    f"WebSocket write error: {e}",
                    session_id=pending.session_id,
                    method=pending.method,
                ))
                return True
            self._pending[pending.id] = pending
        elif isinstance(message, _Subscribe):
            self._subscriptions.append(message.subscription)
        elif isinstance(message, _Unsubscribe):
            if message.subscription in self._subscriptions:
                self._subscriptions.remove(message.subscription)
        elif isinstance(message, _Shutdown):
            self._failure = ConnectionClosedError("CDP connection closed")
            try:
                await self._ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error while closing WebSocket: {e}")
            return False
        return True

    def _time_to_next_deadline(self) -> Optional[float]:
        if not self._pending:
            return None
        earliest = min(p.deadline for p in self._pending.values())
        return max(0.0, earliest - asyncio.get_running_loop().time())

    def _sweep_timeouts(self):
        now = asyncio.get_running_loop().time()
        expired = [msg_id for msg_id, p in self._pending.items() if p.deadline <= now]
        for msg_id in expired:
            pending = self._pending.pop(msg_id)
            pending.reject(CDPTimeoutError(
                f"CDP command timed out: {pending.method}",
                timeout=pending.timeout,
                session_id=pending.session_id,
                method=pending.method,
            ))

    def _fail_pending(self, error: ChromectlError):
        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.reject(self._copy_failure(error, request.method, request.session_id))

    def _terminate_subscriptions(self):
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._terminate()

    def _reject_message(self, message: _TransportMessage):
        if isinstance(message, _Send):
            message.pending.reject(
                self._copy_failure(self._failure, message.pending.method, message.pending.session_id)
            )
        elif isinstance(message, _Subscribe):
            message.subscription._terminate()

    def _drain(self, error: ChromectlError):
        self._fail_pending(error)
        self._terminate_subscriptions()
        while not self._commands.empty():
            self._reject_message(self._commands.get_nowait())

    async def _closed_during(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds. Returns True as soon as close() is called."""
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _handle_disconnect(self, exc: BaseException) -> bool:
        """Fail everything in flight, then try to reconnect. Returns True on success."""
        self._connected = False
        logger.warning(f"CDP WebSocket closed: {exc}", extra={"url": self.url})
        self._fail_pending(ConnectionClosedError("CDP connection closed"))
        self._terminate_subscriptions()

        reconnect = self.config.reconnect
        backoff = reconnect.initial_backoff
        last_error = "no retries configured"

        for attempt in range(1, reconnect.max_retries + 1):
            if await self._closed_during(backoff):
                logger.debug("Transport closed during reconnect backoff", extra={"url": self.url})
                self._failure = ConnectionClosedError("CDP connection closed")
                return False
            try:
                self._ws = await self._connect_ws()
            except ChromectlError as e:
                last_error = e.message
                logger.warning(
                    f"Reconnect attempt {attempt}/{reconnect.max_retries} failed: {e.message}",
                    extra={"url": self.url},
                )
                backoff = min(backoff * 2, reconnect.max_backoff)
                continue
            self._connected = True
            logger.info(f"Reconnected to Chrome after {attempt} attempt(s)")
            return True

        if reconnect.max_retries == 0:
            self._failure = ConnectionClosedError("CDP connection closed")
        else:
            self._failure = ReconnectFailedError(
                f"CDP reconnection failed after {reconnect.max_retries} attempts: {last_error}",
                attempts=reconnect.max_retries,
            )
        return False
