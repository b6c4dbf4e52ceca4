"""
Chrome Discovery - The HTTP /json/* endpoint and DevToolsActivePort lookup.

The discovery endpoint is a separate view of Chrome's targets from the
WebSocket ``Target.*`` domain and may lag behind it.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from chromectl.core.errors import (
    CDPConnectionError,
    CDPTargetError,
    InvalidResponseError,
)

logger = logging.getLogger("chromectl")

DEFAULT_HTTP_TIMEOUT = 5.0


@dataclass
class BrowserVersion:
    """Response of /json/version."""
    browser: str
    protocol_version: str
    ws_debugger_url: str
    user_agent: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BrowserVersion:
        ws_url = data.get("webSocketDebuggerUrl")
        if not isinstance(ws_url, str) or not ws_url:
            raise InvalidResponseError("/json/version response missing webSocketDebuggerUrl")
        return cls(
            browser=str(data.get("Browser", "")),
            protocol_version=str(data.get("Protocol-Version", "")),
            ws_debugger_url=ws_url,
            user_agent=str(data.get("User-Agent", "")),
        )


@dataclass
class TargetInfo:
    """One entry of /json/list."""
    id: str
    type: str
    title: str = ""
    url: str = ""
    ws_debugger_url: Optional[str] = None

    @property
    def is_page(self) -> bool:
        return self.type == "page"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TargetInfo:
        target_id = data.get("id")
        target_type = data.get("type")
        if not isinstance(target_id, str) or not isinstance(target_type, str):
            raise InvalidResponseError(f"target entry missing id/type: {data!r}")
        return cls(
            id=target_id,
            type=target_type,
            title=str(data.get("title", "")),
            url=str(data.get("url", "")),
            ws_debugger_url=data.get("webSocketDebuggerUrl"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "title": self.title, "url": self.url}


class DiscoveryClient:
    """Async client for Chrome's HTTP discovery endpoint."""

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_HTTP_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.host = host
        self.port = port
        self._client = httpx.AsyncClient(
            base_url=f"http://{host}:{port}",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> DiscoveryClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str) -> httpx.Response:
        try:
            response = await self._client.request(method, path)
        except httpx.RequestError as e:
            raise CDPConnectionError(
                f"Chrome HTTP error: connection failed to {self.host}:{self.port}: {e}",
                method=path,
            ) from e

        if response.status_code == 404:
            raise CDPTargetError(
                f"Chrome HTTP error: {response.text.strip() or 'not found'}",
                method=path,
            )
        if response.status_code != 200:
            raise CDPConnectionError(
                f"Chrome HTTP error: unexpected HTTP status {response.status_code}",
                method=path,
            )
        return response

    async def _get_json(self, method: str, path: str) -> Any:
        response = await self._request(method, path)
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Chrome parse error: {e}", method=path) from e

    async def version(self) -> BrowserVersion:
        data = await self._get_json("GET", "/json/version")
        if not isinstance(data, dict):
            raise InvalidResponseError("/json/version did not return an object")
        return BrowserVersion.from_dict(data)

    async def list_targets(self) -> List[TargetInfo]:
        data = await self._get_json("GET", "/json/list")
        if not isinstance(data, list):
            raise InvalidResponseError("/json/list did not return an array")
        return [TargetInfo.from_dict(entry) for entry in data if isinstance(entry, dict)]

    async def activate(self, target_id: str) -> None:
        await self._request("GET", f"/json/activate/{target_id}")
        logger.debug("Activated target via discovery endpoint", extra={"target_id": target_id})


async def query_version(host: str, port: int, timeout: float = DEFAULT_HTTP_TIMEOUT) -> BrowserVersion:
    async with DiscoveryClient(host, port, timeout=timeout) as client:
        return await client.version()


def default_user_data_dir() -> Optional[Path]:
    """Chrome's default profile directory on this platform."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Google" / "Chrome"
    if sys.platform.startswith("linux"):
        return Path.home() / ".config" / "google-chrome"
    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        return Path(local) / "Google" / "Chrome" / "User Data" if local else None
    return None


def parse_devtools_active_port(contents: str) -> Tuple[int, str]:
    """Parse a DevToolsActivePort file: first line port, second line ws path."""
    lines = contents.splitlines()
    if len(lines) < 2:
        raise InvalidResponseError("DevToolsActivePort file is incomplete")
    try:
        port = int(lines[0].strip())
    except ValueError as e:
        raise InvalidResponseError(f"invalid port in DevToolsActivePort: {lines[0]}") from e
    return port, lines[1].strip()


def read_devtools_active_port(data_dir: Optional[Path] = None) -> Optional[Tuple[int, str]]:
    """Return (port, ws_path) from a profile's DevToolsActivePort, if present."""
    data_dir = data_dir or default_user_data_dir()
    if data_dir is None:
        return None
    try:
        contents = (data_dir / "DevToolsActivePort").read_text()
    except OSError:
        return None
    try:
        return parse_devtools_active_port(contents)
    except InvalidResponseError as e:
        logger.debug(f"Ignoring DevToolsActivePort: {e}")
        return None


async def discover_chrome(host: str, port: int,
                          data_dir: Optional[Path] = None) -> Tuple[str, int]:
    """
    Find a running Chrome with remote debugging enabled.

    Tries the port recorded in DevToolsActivePort first, then ``host:port``.

    Returns:
        (webSocketDebuggerUrl, port)
    """
    active = read_devtools_active_port(data_dir)
    if active is not None:
        file_port, _ = active
        try:
            version = await query_version("127.0.0.1", file_port)
            return version.ws_debugger_url, file_port
        except (CDPConnectionError, CDPTargetError, InvalidResponseError) as e:
            logger.debug(f"DevToolsActivePort port {file_port} not answering: {e}")

    try:
        version = await query_version(host, port)
    except (CDPConnectionError, CDPTargetError, InvalidResponseError) as e:
        raise CDPConnectionError(
            f"no running Chrome instance found with remote debugging: discovery failed on {host}:{port}: {e.message}",
            method="discover_chrome",
        ) from e
    return version.ws_debugger_url, port
