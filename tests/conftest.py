"""
Pytest configuration and shared fixtures.

``fake_chrome`` is an in-process WebSocket server that speaks just enough CDP
for transport, session and wait-strategy tests: each method gets a handler,
and the server can push events or raw frames to every connected client.
"""
import asyncio
import inspect
import json

import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from chromectl.cdp.transport import Transport
from chromectl.config import CDPConfig, ReconnectConfig

NO_REPLY = object()


class FakeCDPError(Exception):
    """Raise from a handler to answer with a CDP error payload."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeChrome:
    """Minimal CDP endpoint; unknown methods answer with an empty result."""

    def __init__(self):
        self.handlers = {}
        self.received = []
        self.connections = set()
        self.server = None
        self.url = None

    def on(self, method, handler):
        """
        Register a handler for ``method``.

        A handler receives the decoded request and returns the result dict,
        ``NO_REPLY`` to stay silent, or raises FakeCDPError. It may be async.
        A plain dict is used as a constant result.
        """
        self.handlers[method] = handler

    def methods(self):
        return [msg["method"] for msg in self.received]

    def count(self, method):
        return self.methods().count(method)

    async def send_raw(self, frame):
        data = frame if isinstance(frame, str) else json.dumps(frame)
        for ws in list(self.connections):
            await ws.send(data)

    async def emit(self, method, params=None, session_id=None):
        frame = {"method": method, "params": params or {}}
        if session_id is not None:
            frame["sessionId"] = session_id
        await self.send_raw(frame)

    async def close_connections(self):
        for ws in list(self.connections):
            await ws.close()

    async def _respond(self, msg):
        handler = self.handlers.get(msg.get("method"), {})
        try:
            if callable(handler):
                result = handler(msg)
                if inspect.isawaitable(result):
                    result = await result
            else:
                result = handler
        except FakeCDPError as e:
            return {"id": msg["id"], "error": {"code": e.code, "message": e.message}}
        if result is NO_REPLY:
            return None
        reply = {"id": msg["id"], "result": result}
        if "sessionId" in msg:
            reply["sessionId"] = msg["sessionId"]
        return reply

    async def handle(self, ws):
        self.connections.add(ws)
        try:
            async for raw in ws:
                msg = json.loads(raw)
                self.received.append(msg)
                reply = await self._respond(msg)
                if reply is not None:
                    await ws.send(json.dumps(reply))
        except ConnectionClosed:
            pass
        finally:
            self.connections.discard(ws)


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Poll ``condition`` until it is truthy or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
async def fake_chrome():
    """A fake Chrome WebSocket endpoint on a free local port."""
    fake = FakeChrome()
    async with serve(fake.handle, "127.0.0.1", 0) as server:
        fake.server = server
        port = next(iter(server.sockets)).getsockname()[1]
        fake.url = f"ws://127.0.0.1:{port}/devtools/browser/fake"
        yield fake


@pytest.fixture
def cdp_config():
    """Short timeouts and no reconnection, so failures surface immediately."""
    return CDPConfig(
        connect_timeout=2.0,
        command_timeout=2.0,
        reconnect=ReconnectConfig(max_retries=0),
    )


@pytest.fixture
async def transport(fake_chrome, cdp_config):
    """A Transport connected to ``fake_chrome``."""
    t = await Transport.connect(fake_chrome.url, cdp_config)
    yield t
    await t.close()


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires Chrome)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection."""
    for item in items:
        if "integration" in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)
        if "slow" in item.nodeid.lower():
            item.add_marker(pytest.mark.slow)
