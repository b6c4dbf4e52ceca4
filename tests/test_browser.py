"""
Tests for the Browser facade against the fake Chrome endpoint.

Run with: pytest tests/test_browser.py -v
"""
import httpx
import pytest

from chromectl import Browser, Settings
from chromectl.chrome.discovery import DiscoveryClient
from chromectl.connection import Connection
from chromectl.core.errors import GeneralError
from chromectl.state import EmulationOverrides, StateStore

PAGES = [
    {"id": "T1", "type": "page", "title": "Example", "url": "https://example.com/"},
    {"id": "T2", "type": "page", "title": "Other", "url": "https://other.example/"},
]

AX_NODES = [
    {"nodeId": "1", "role": {"value": "RootWebArea"}, "name": {"value": "Example"}, "childIds": ["2"]},
    {"nodeId": "2", "role": {"value": "button"}, "name": {"value": "Submit"}, "parentId": "1",
     "backendDOMNodeId": 77},
]


@pytest.fixture
def chrome(fake_chrome, monkeypatch):
    """fake_chrome with page handlers and a mocked discovery endpoint."""
    fake_chrome.on("Target.attachToTarget",
                   lambda msg: {"sessionId": f"S-{msg['params']['targetId']}"})
    fake_chrome.on("Accessibility.getFullAXTree", {"nodes": AX_NODES})

    def evaluate(msg):
        values = {"location.href": "https://example.com/", "document.title": "Example"}
        return {"result": {"value": values.get(msg["params"]["expression"])}}

    fake_chrome.on("Runtime.evaluate", evaluate)

    async def navigate(msg):
        await fake_chrome.emit("Page.loadEventFired", {}, session_id=msg["sessionId"])
        return {"frameId": "F1"}

    fake_chrome.on("Page.navigate", navigate)

    def handler(request):
        return httpx.Response(200, json=PAGES)

    monkeypatch.setattr(
        Connection, "discovery",
        lambda self: DiscoveryClient(self.host, self.port, transport=httpx.MockTransport(handler)),
    )
    return fake_chrome


@pytest.fixture
def settings(chrome, tmp_path):
    return Settings(ws_url=chrome.url, state_dir=tmp_path)


class TestBrowser:
    """Test the facade end to end."""

    @pytest.mark.asyncio
    async def test_requires_start(self, settings):
        browser = Browser(settings, StateStore.in_memory())
        with pytest.raises(GeneralError, match="not connected"):
            await browser.list_tabs()

    @pytest.mark.asyncio
    async def test_navigate_snapshot_resolve(self, chrome, settings):
        store = StateStore.in_memory()

        async with Browser(settings, store) as browser:
            result = await browser.navigate_and_wait("https://example.com/", wait_until="load", timeout=2.0)
            snapshot = await browser.snapshot()
            backend_id = await browser.resolve("s1")

        assert result.to_dict() == {"url": "https://example.com/", "title": "Example"}
        assert snapshot.uid_map == {"s1": 77}
        assert backend_id == 77
        assert store.load().ws_url == chrome.url
        assert store.load_snapshot().tab_id == "T1"
        assert chrome.count("Target.attachToTarget") == 1

    @pytest.mark.asyncio
    async def test_persisted_active_tab_is_used(self, chrome, settings):
        store = StateStore.in_memory()
        async with Browser(settings, store) as browser:
            store.set_active_tab("T2")
            target = await browser.resolve_target()

        assert target.id == "T2"

    @pytest.mark.asyncio
    async def test_overrides_applied_on_attach(self, chrome, settings):
        store = StateStore.in_memory()
        async with Browser(settings, store) as browser:
            store.set_overrides(EmulationOverrides(user_agent="Custom UA", cpu=2.0))
            await browser.attach_session()

        ua = [m for m in chrome.received if m["method"] == "Emulation.setUserAgentOverride"]
        assert ua[0]["params"] == {"userAgent": "Custom UA"}
        assert ua[0]["sessionId"] == "S-T1"
        assert chrome.count("Emulation.setCPUThrottlingRate") == 1

    @pytest.mark.asyncio
    async def test_overrides_applied_after_list_tabs_attached(self, chrome, settings):
        """list_tabs attaches to every page; the overrides still reach the session once."""
        store = StateStore.in_memory()
        async with Browser(settings, store) as browser:
            store.set_overrides(EmulationOverrides(user_agent="Custom UA"))
            await browser.list_tabs()
            assert chrome.count("Target.attachToTarget") == 2

            await browser.attach_session()
            await browser.attach_session()

        ua = [m for m in chrome.received if m["method"] == "Emulation.setUserAgentOverride"]
        assert len(ua) == 1
        assert ua[0]["sessionId"] == "S-T1"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, settings):
        browser = Browser(settings, StateStore.in_memory())
        await browser.start()
        await browser.stop()
        await browser.stop()
        assert browser.connection is None
