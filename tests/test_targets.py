"""
Tests for target lifecycle operations and post-condition polling.

Run with: pytest tests/test_targets.py -v
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from chromectl.chrome.discovery import TargetInfo
from chromectl.core.errors import CDPTargetError, GeneralError, LastTabError
from chromectl.state import StateRecord, StateStore
from chromectl.targets import TargetLifecycle, is_internal_page, poll_until


def page(target_id, url=None):
    return TargetInfo(id=target_id, type="page", title=target_id.upper(),
                      url=url or f"https://{target_id}.example/")


class FakeDiscovery:
    """Returns scripted /json/list results in order, repeating the last one."""

    def __init__(self, *listings):
        self.listings = list(listings)
        self.calls = 0
        self.activate = AsyncMock()

    async def list_targets(self):
        index = min(self.calls, len(self.listings) - 1)
        self.calls += 1
        return list(self.listings[index])


def make_sessions(visibility):
    """
    SessionManager stand-in. ``visibility`` maps target id to a list of
    visibilityState values returned by successive evaluations.
    """
    sessions = MagicMock()
    sessions.transport.execute = AsyncMock(return_value={})
    evaluations = {target_id: list(states) for target_id, states in visibility.items()}

    async def attach(target_id):
        session = MagicMock(target_id=target_id)

        async def evaluate(expression):
            states = evaluations.get(target_id) or ["hidden"]
            return states.pop(0) if len(states) > 1 else states[0]

        session.evaluate = evaluate
        return session

    sessions.attach = attach
    return sessions


@pytest.fixture
def store():
    store = StateStore.in_memory()
    store.save(StateRecord(ws_url="ws://127.0.0.1:9222/devtools/browser/b", port=9222))
    return store


# =============================================================================
# poll_until
# =============================================================================

class TestPollUntil:
    """Test bounded post-condition polling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [1, 4, 10])
    async def test_matches_within_budget(self, k):
        calls = []

        async def probe():
            calls.append(None)
            return len(calls)

        outcome = await poll_until(probe, lambda n: n >= k, attempts=10, interval=0)

        assert outcome.matched
        assert outcome.value == k
        assert outcome.attempts == k

    @pytest.mark.asyncio
    async def test_exhaustion_returns_last_value(self):
        calls = []

        async def probe():
            calls.append(None)
            return len(calls)

        outcome = await poll_until(probe, lambda n: n >= 11, attempts=10, interval=0)

        assert not outcome.matched
        assert outcome.value == 10
        assert outcome.attempts == 10
        assert len(calls) == 10

    @pytest.mark.asyncio
    async def test_lookup_errors_propagate(self):
        async def probe():
            raise CDPTargetError("gone")

        with pytest.raises(CDPTargetError):
            await poll_until(probe, bool)

    @pytest.mark.asyncio
    async def test_needs_an_attempt(self):
        with pytest.raises(GeneralError):
            await poll_until(AsyncMock(), bool, attempts=0)


# =============================================================================
# Close
# =============================================================================

class TestCloseTargets:
    """Test closing tabs with a lagging discovery endpoint."""

    @pytest.mark.asyncio
    async def test_close_waits_for_endpoint(self, store):
        four = [page("a"), page("b"), page("c"), page("d")]
        three = [page("a"), page("c"), page("d")]
        # initial listing, then the endpoint lags for two polls
        discovery = FakeDiscovery(four, four, four, three)
        sessions = make_sessions({})
        lifecycle = TargetLifecycle(sessions, discovery, store, attempts=10, interval=0)

        result = await lifecycle.close_targets(["1"])

        assert result.to_dict() == {"closed": ["b"], "remaining": 3}
        sessions.transport.execute.assert_awaited_once_with("Target.closeTarget", {"targetId": "b"})
        assert discovery.calls == 4

    @pytest.mark.asyncio
    async def test_endpoint_never_catches_up(self, store):
        four = [page("a"), page("b"), page("c"), page("d")]
        lifecycle = TargetLifecycle(make_sessions({}), FakeDiscovery(four), store,
                                    attempts=3, interval=0)

        result = await lifecycle.close_targets(["b"])

        assert result.closed == ["b"]
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_indexes_resolved_before_closing(self, store):
        pages = [page("a"), page("b"), page("c"), page("d")]
        sessions = make_sessions({})
        lifecycle = TargetLifecycle(sessions, FakeDiscovery(pages, [page("a"), page("c")]),
                                    store, interval=0)

        result = await lifecycle.close_targets(["1", "3", "d"])

        assert result.closed == ["b", "d"]
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_refuses_to_close_last_tab(self, store):
        sessions = make_sessions({})
        lifecycle = TargetLifecycle(sessions, FakeDiscovery([page("a"), page("b")]), store)

        with pytest.raises(LastTabError) as exc_info:
            await lifecycle.close_targets(["0", "b"])

        assert exc_info.value.exit_code == 1
        sessions.transport.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_ref(self, store):
        lifecycle = TargetLifecycle(make_sessions({}), FakeDiscovery([page("a"), page("b")]), store)
        with pytest.raises(CDPTargetError):
            await lifecycle.close_targets(["zzz"])

    @pytest.mark.asyncio
    async def test_closing_active_tab_clears_it(self, store):
        store.set_active_tab("b")
        lifecycle = TargetLifecycle(make_sessions({}),
                                    FakeDiscovery([page("a"), page("b")], [page("a")]),
                                    store, interval=0)

        await lifecycle.close_targets(["b"])

        assert store.load().active_tab is None


# =============================================================================
# Activate, list, create
# =============================================================================

class TestActivate:
    """Test activation confirmed by visibility state."""

    @pytest.mark.asyncio
    async def test_activate_polls_visibility(self, store):
        sessions = make_sessions({"b": ["hidden", "hidden", "visible"]})
        lifecycle = TargetLifecycle(sessions, FakeDiscovery([page("a"), page("b")]),
                                    store, interval=0)

        target = await lifecycle.activate_target("1")

        assert target.id == "b"
        sessions.transport.execute.assert_awaited_once_with("Target.activateTarget", {"targetId": "b"})
        assert store.load().active_tab == "b"

    @pytest.mark.asyncio
    async def test_activate_not_yet_visible_still_succeeds(self, store):
        lifecycle = TargetLifecycle(make_sessions({}), FakeDiscovery([page("a"), page("b")]),
                                    store, attempts=2, interval=0)

        target = await lifecycle.activate_target("b")

        assert target.id == "b"
        assert store.load().active_tab == "b"


class TestListTabs:
    """Test listing with visibility-based active flag."""

    @pytest.mark.asyncio
    async def test_active_comes_from_visibility(self):
        pages = [page("a"), page("b"), page("c")]
        lifecycle = TargetLifecycle(make_sessions({"b": ["visible"]}), FakeDiscovery(pages))

        tabs = await lifecycle.list_tabs()

        assert [(t.id, t.active) for t in tabs] == [("a", False), ("b", True), ("c", False)]

    @pytest.mark.asyncio
    async def test_first_tab_active_when_none_visible(self):
        lifecycle = TargetLifecycle(make_sessions({}), FakeDiscovery([page("a"), page("b")]))

        tabs = await lifecycle.list_tabs()

        assert [t.active for t in tabs] == [True, False]

    @pytest.mark.asyncio
    async def test_internal_pages_hidden(self):
        pages = [page("a"), page("s", "chrome://settings/"), page("n", "chrome://newtab/")]
        lifecycle = TargetLifecycle(make_sessions({}), FakeDiscovery(pages))

        assert [t.id for t in await lifecycle.list_tabs()] == ["a", "n"]
        assert len(await lifecycle.list_tabs(include_internal=True)) == 3

    def test_is_internal_page(self):
        assert is_internal_page(page("x", "chrome-extension://abc/popup.html"))
        assert not is_internal_page(page("x", "about:blank"))


class TestCreate:
    """Test creating tabs."""

    @pytest.mark.asyncio
    async def test_foreground_create_becomes_active(self, store):
        discovery = FakeDiscovery([page("a")], [page("a")], [page("a"), page("new")])
        sessions = make_sessions({})
        sessions.transport.execute = AsyncMock(return_value={"targetId": "new"})
        lifecycle = TargetLifecycle(sessions, discovery, store, interval=0)

        target = await lifecycle.create_target("https://new.example/")

        assert target.id == "new"
        sessions.transport.execute.assert_awaited_once_with(
            "Target.createTarget", {"url": "https://new.example/"})
        assert store.load().active_tab == "new"
        discovery.activate.assert_not_called()

    @pytest.mark.asyncio
    async def test_background_create_restores_visible_tab(self, store):
        discovery = FakeDiscovery([page("a"), page("b")], [page("a"), page("b"), page("new")])
        sessions = make_sessions({"b": ["visible", "hidden", "visible"]})
        sessions.transport.execute = AsyncMock(return_value={"targetId": "new"})
        lifecycle = TargetLifecycle(sessions, discovery, store, interval=0)

        target = await lifecycle.create_target("https://new.example/", background=True)

        assert target.id == "new"
        sessions.transport.execute.assert_awaited_once_with(
            "Target.createTarget", {"url": "https://new.example/", "background": True})
        discovery.activate.assert_awaited_with("b")
        assert store.load().active_tab is None
