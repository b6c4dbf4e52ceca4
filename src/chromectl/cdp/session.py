"""
CDP Session Management - Per-target sessions multiplexed over one Transport.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from chromectl.cdp.transport import EventSubscription, Transport
from chromectl.core.errors import (
    CDPConnectionError,
    CDPProtocolError,
    CDPTargetError,
    ChromectlError,
    InvalidResponseError,
)

logger = logging.getLogger("chromectl")


class SessionStatus(Enum):
    ACTIVE = "active"
    DETACHED = "detached"


@dataclass
class SessionInfo:
    """Information about a CDP session."""
    session_id: str
    target_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    domains_enabled: Set[str] = field(default_factory=set)
    overrides_applied: bool = False
    created_at: float = field(default_factory=time.time)


class CDPSession:
    """A handle for sending session-scoped commands to one target."""

    def __init__(self, transport: Transport, info: SessionInfo):
        self.transport = transport
        self.info = info

    @property
    def session_id(self) -> str:
        return self.info.session_id

    @property
    def target_id(self) -> str:
        return self.info.target_id

    @property
    def enabled_domains(self) -> Set[str]:
        return self.info.domains_enabled

    def _check_attached(self, method: str):
        if self.info.status is SessionStatus.DETACHED:
            raise CDPTargetError(
                "Session is detached from its target",
                session_id=self.session_id,
                target_id=self.target_id,
                method=method,
            )

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a command scoped to this session and wait for the result."""
        self._check_attached(method)
        return await self.transport.execute(method, params, session_id=self.session_id, timeout=timeout)

    def subscribe(self, *methods: str) -> EventSubscription:
        """Subscribe to events emitted by this session only."""
        return self.transport.subscribe(*methods, session_id=self.session_id)

    async def ensure_domain(self, domain: str, timeout: Optional[float] = None):
        """Enable a domain once for this session; later calls are no-ops."""
        if domain in self.info.domains_enabled:
            return
        await self.send(f"{domain}.enable", timeout=timeout)
        self.info.domains_enabled.add(domain)
        logger.debug(
            f"Enabled domain: {domain}",
            extra={"session_id": self.session_id, "domain": domain},
        )

    async def ensure_domains(self, domains: Iterable[str]):
        for domain in domains:
            await self.ensure_domain(domain)

    async def evaluate(self, expression: str) -> Any:
        """Evaluate a JavaScript expression and return its value."""
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True},
        )
        return result.get("result", {}).get("value")

    def __repr__(self):
        return f"CDPSession(session_id={self.session_id!r}, target_id={self.target_id!r})"


class SessionManager:
    """Creates and caches one CDPSession per target for this process."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self._sessions: Dict[str, CDPSession] = {}
        self._attaching: Dict[str, asyncio.Future] = {}
        self._detach_watcher: Optional[asyncio.Task] = None

    def sessions(self) -> List[CDPSession]:
        return list(self._sessions.values())

    def get(self, target_id: str) -> Optional[CDPSession]:
        session = self._sessions.get(target_id)
        if session and session.info.status is SessionStatus.DETACHED:
            return None
        return session

    def get_by_session_id(self, session_id: str) -> Optional[CDPSession]:
        for session in self._sessions.values():
            if session.session_id == session_id:
                return session
        return None

    async def attach(self, target_id: str) -> CDPSession:
        """Attach to a target, reusing the session created earlier in this process."""
        existing = self.get(target_id)
        if existing is not None:
            return existing

        # concurrent callers share one Target.attachToTarget
        in_flight = self._attaching.get(target_id)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        future = asyncio.get_running_loop().create_future()
        self._attaching[target_id] = future
        try:
            session = await self._attach(target_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # mark retrieved for callers that never awaited it
            future.exception()
            raise
        else:
            future.set_result(session)
            return session
        finally:
            self._attaching.pop(target_id, None)

    async def _attach(self, target_id: str) -> CDPSession:
        self._ensure_detach_watcher()
        try:
            result = await self.transport.execute(
                "Target.attachToTarget",
                {"targetId": target_id, "flatten": True},
            )
        except CDPProtocolError as e:
            raise CDPTargetError(
                f"Failed to attach to target {target_id}: {e.message}",
                target_id=target_id,
                method="Target.attachToTarget",
            ) from e

        session_id = result.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise InvalidResponseError(
                "Target.attachToTarget response missing sessionId",
                target_id=target_id,
                method="Target.attachToTarget",
            )

        session = CDPSession(self.transport, SessionInfo(session_id=session_id, target_id=target_id))
        self._sessions[target_id] = session
        logger.info(
            "Attached to target",
            extra={"session_id": session_id, "target_id": target_id},
        )
        return session

    async def ensure_domain(self, session: CDPSession, domain: str):
        await session.ensure_domain(domain)

    async def detach(self, target_id: str):
        """Detach from a target if this process attached to it."""
        session = self._sessions.pop(target_id, None)
        if session is None or session.info.status is SessionStatus.DETACHED:
            return
        session.info.status = SessionStatus.DETACHED
        try:
            await self.transport.execute(
                "Target.detachFromTarget", {"sessionId": session.session_id}
            )
        except (CDPProtocolError, CDPConnectionError) as e:
            logger.debug(f"Detach from {target_id} failed: {e}")

    def mark_detached(self, session_id: str):
        """Mark a session as detached after Chrome reports it gone."""
        session = self.get_by_session_id(session_id)
        if session is None:
            return
        session.info.status = SessionStatus.DETACHED
        self._sessions.pop(session.target_id, None)
        logger.info(
            "Target detached from session",
            extra={"session_id": session_id, "target_id": session.target_id},
        )

    def _ensure_detach_watcher(self):
        if self._detach_watcher is None or self._detach_watcher.done():
            subscription = self.transport.subscribe("Target.detachedFromTarget")
            self._detach_watcher = asyncio.create_task(self._watch_detached(subscription))

    async def _watch_detached(self, subscription: EventSubscription):
        with subscription:
            async for event in subscription:
                session_id = event.params.get("sessionId")
                if session_id:
                    self.mark_detached(session_id)
        # the stream only ends with the socket, and no session outlives its socket
        self._invalidate_all()

    def _invalidate_all(self):
        if not self._sessions:
            return
        logger.info(
            f"Transport stream ended, dropping {len(self._sessions)} cached session(s)",
            extra={"target_ids": list(self._sessions)},
        )
        for session in self._sessions.values():
            session.info.status = SessionStatus.DETACHED
        self._sessions.clear()

    async def close(self):
        """Stop tracking; sessions end with the transport."""
        if self._detach_watcher is not None:
            self._detach_watcher.cancel()
            try:
                await self._detach_watcher
            except (asyncio.CancelledError, ChromectlError):
                pass
            self._detach_watcher = None
        for session in self._sessions.values():
            session.info.status = SessionStatus.DETACHED
        self._sessions.clear()
