"""
Tests for SessionManager and CDPSession.

Run with: pytest tests/test_session.py -v
"""
import asyncio

import pytest

from chromectl.cdp.session import SessionManager, SessionStatus
from chromectl.cdp.transport import Transport
from chromectl.config import CDPConfig, ReconnectConfig
from chromectl.core.errors import CDPTargetError, CDPTimeoutError, InvalidResponseError

from conftest import NO_REPLY, FakeCDPError, wait_until


@pytest.fixture
def attach_ok(fake_chrome):
    """Answer Target.attachToTarget with a session id derived from the target."""
    fake_chrome.on(
        "Target.attachToTarget",
        lambda msg: {"sessionId": f"session-{msg['params']['targetId']}"},
    )
    return fake_chrome


@pytest.fixture
async def manager(transport):
    sessions = SessionManager(transport)
    yield sessions
    await sessions.close()


# =============================================================================
# Attach
# =============================================================================

class TestAttach:
    """Test attaching to targets."""

    @pytest.mark.asyncio
    async def test_attach_uses_flat_mode(self, attach_ok, manager):
        session = await manager.attach("T1")

        assert session.session_id == "session-T1"
        assert session.target_id == "T1"
        request = [m for m in attach_ok.received if m["method"] == "Target.attachToTarget"][0]
        assert request["params"] == {"targetId": "T1", "flatten": True}

    @pytest.mark.asyncio
    async def test_attach_is_cached(self, attach_ok, manager):
        first = await manager.attach("T1")
        second = await manager.attach("T1")

        assert first is second
        assert attach_ok.count("Target.attachToTarget") == 1

    @pytest.mark.asyncio
    async def test_concurrent_attaches_share_one_request(self, fake_chrome, manager):
        async def slow_attach(msg):
            await asyncio.sleep(0.05)
            return {"sessionId": "S-shared"}

        fake_chrome.on("Target.attachToTarget", slow_attach)

        sessions = await asyncio.gather(*(manager.attach("T1") for _ in range(5)))

        assert all(s is sessions[0] for s in sessions)
        assert fake_chrome.count("Target.attachToTarget") == 1

    @pytest.mark.asyncio
    async def test_different_targets_get_different_sessions(self, attach_ok, manager):
        one = await manager.attach("T1")
        two = await manager.attach("T2")

        assert one.session_id != two.session_id
        assert manager.get_by_session_id("session-T2") is two

    @pytest.mark.asyncio
    async def test_attach_protocol_error_is_target_error(self, fake_chrome, manager):
        def fail(msg):
            raise FakeCDPError(-32602, "No target with given id found")

        fake_chrome.on("Target.attachToTarget", fail)

        with pytest.raises(CDPTargetError) as exc_info:
            await manager.attach("missing")
        assert exc_info.value.exit_code == 3
        assert exc_info.value.target_id == "missing"

    @pytest.mark.asyncio
    async def test_attach_without_session_id(self, fake_chrome, manager):
        fake_chrome.on("Target.attachToTarget", {})

        with pytest.raises(InvalidResponseError):
            await manager.attach("T1")
        assert manager.get("T1") is None


# =============================================================================
# Session commands
# =============================================================================

class TestSessionCommands:
    """Test session-scoped commands and domains."""

    @pytest.mark.asyncio
    async def test_send_carries_session_id(self, attach_ok, manager):
        session = await manager.attach("T1")
        await session.send("DOM.getDocument", {"depth": 0})

        last = attach_ok.received[-1]
        assert last["method"] == "DOM.getDocument"
        assert last["sessionId"] == "session-T1"

    @pytest.mark.asyncio
    async def test_ensure_domain_enables_once(self, attach_ok, manager):
        session = await manager.attach("T1")

        await session.ensure_domain("Page")
        await session.ensure_domain("Page")
        await session.ensure_domains(["Page", "Network"])

        assert attach_ok.count("Page.enable") == 1
        assert attach_ok.count("Network.enable") == 1
        assert session.enabled_domains == {"Page", "Network"}

    @pytest.mark.asyncio
    async def test_ensure_domain_timeout(self, attach_ok, manager):
        attach_ok.on("Accessibility.enable", lambda msg: NO_REPLY)
        session = await manager.attach("T1")

        with pytest.raises(CDPTimeoutError):
            await session.ensure_domain("Accessibility", timeout=0.1)
        assert "Accessibility" not in session.enabled_domains

    @pytest.mark.asyncio
    async def test_evaluate_returns_value(self, attach_ok, manager):
        attach_ok.on("Runtime.evaluate", {"result": {"type": "string", "value": "visible"}})
        session = await manager.attach("T1")

        assert await session.evaluate("document.visibilityState") == "visible"
        assert attach_ok.received[-1]["params"]["returnByValue"] is True

    @pytest.mark.asyncio
    async def test_session_events_are_scoped(self, attach_ok, manager):
        async def fire(msg):
            await attach_ok.emit("Page.loadEventFired", {"who": "other"}, session_id="session-T2")
            await attach_ok.emit("Page.loadEventFired", {"who": "mine"}, session_id="session-T1")
            return {}

        attach_ok.on("Test.fire", fire)
        session = await manager.attach("T1")
        sub = session.subscribe("Page.loadEventFired")

        await session.send("Test.fire")

        event = await sub.get(timeout=1)
        assert event.params == {"who": "mine"}
        assert await sub.get(timeout=0.1) is None


# =============================================================================
# Detach
# =============================================================================

class TestDetach:
    """Test session invalidation."""

    @pytest.mark.asyncio
    async def test_detached_event_invalidates_session(self, attach_ok, manager):
        async def fire(msg):
            await attach_ok.emit("Target.detachedFromTarget",
                                 {"sessionId": "session-T1", "targetId": "T1"})
            return {}

        attach_ok.on("Test.fire", fire)
        session = await manager.attach("T1")

        await manager.transport.execute("Test.fire")
        await wait_until(lambda: manager.get("T1") is None)

        assert session.info.status is SessionStatus.DETACHED
        with pytest.raises(CDPTargetError):
            await session.send("Page.enable")

    @pytest.mark.asyncio
    async def test_reattach_after_detach(self, attach_ok, manager):
        first = await manager.attach("T1")
        await manager.detach("T1")

        second = await manager.attach("T1")

        assert first is not second
        assert attach_ok.count("Target.detachFromTarget") == 1
        assert attach_ok.count("Target.attachToTarget") == 2

    @pytest.mark.asyncio
    async def test_close_marks_sessions_detached(self, attach_ok, transport):
        manager = SessionManager(transport)
        session = await manager.attach("T1")

        await manager.close()

        assert session.info.status is SessionStatus.DETACHED
        assert manager.sessions() == []

    @pytest.mark.asyncio
    async def test_reconnect_drops_cached_sessions(self, fake_chrome):
        """Sessions belong to the old socket; after a reconnect attach starts over."""
        attached = []

        def attach(msg):
            attached.append(msg["params"]["targetId"])
            return {"sessionId": f"S{len(attached)}"}

        fake_chrome.on("Target.attachToTarget", attach)
        config = CDPConfig(
            connect_timeout=2.0,
            command_timeout=2.0,
            reconnect=ReconnectConfig(max_retries=3, initial_backoff=0.01, max_backoff=0.05),
        )
        async with Transport(fake_chrome.url, config) as transport:
            manager = SessionManager(transport)
            old = await manager.attach("T1")
            first = next(iter(fake_chrome.connections))

            await fake_chrome.close_connections()
            await wait_until(lambda: first not in fake_chrome.connections
                             and len(fake_chrome.connections) == 1
                             and transport.is_connected)
            await wait_until(lambda: manager.get("T1") is None)

            new = await manager.attach("T1")
            await manager.close()

        assert old.info.status is SessionStatus.DETACHED
        assert new is not old
        assert new.session_id == "S2"
        assert attached == ["T1", "T1"]
