"""
State Store - The small durable record that survives between invocations.

Two JSON documents are persisted: the session record (endpoint, active tab,
emulation overrides) and the snapshot state (UID map of the last accessibility
snapshot). Both are read whole and replaced whole; nothing tied to a live
WebSocket session is ever written.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from chromectl.core.errors import StateStoreError

if TYPE_CHECKING:
    from chromectl.cdp.session import CDPSession
    from chromectl.config import Settings

logger = logging.getLogger("chromectl")


def now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# Persistence port
# =============================================================================

class BlobStore(ABC):
    """Read-all/replace-all persistence for one JSON object."""

    @abstractmethod
    def read(self) -> Optional[Dict[str, Any]]:
        """Return the stored object, or None when nothing is stored."""

    @abstractmethod
    def replace(self, data: Dict[str, Any]) -> None:
        """Replace the stored object."""

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored object; clearing an empty store is a no-op."""


class MemoryStore(BlobStore):
    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = json.loads(json.dumps(data)) if data is not None else None

    def read(self) -> Optional[Dict[str, Any]]:
        # hand out copies so callers never mutate the stored object in place
        return json.loads(json.dumps(self._data)) if self._data is not None else None

    def replace(self, data: Dict[str, Any]) -> None:
        self._data = json.loads(json.dumps(data))

    def clear(self) -> None:
        self._data = None


class JsonFileStore(BlobStore):
    """
    A JSON file written atomically.

    The file is written to a temporary sibling and renamed over the target, so
    a concurrent reader sees either the old or the new document. The file is
    created with mode 0600 inside a 0700 directory.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            contents = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self.path}: {e}") from e

        try:
            data = json.loads(contents)
        except ValueError as e:
            raise StateStoreError(f"Invalid state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError(f"Invalid state file {self.path}: expected a JSON object")
        return data

    def replace(self, data: Dict[str, Any]) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            if os.name == "posix":
                os.chmod(directory, 0o700)

            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                if os.name == "posix":
                    os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StateStoreError(f"Failed to remove state file {self.path}: {e}") from e


# =============================================================================
# Records
# =============================================================================

@dataclass
class NetworkProfile:
    offline: bool
    latency: float
    download: float
    upload: float

    def to_params(self) -> Dict[str, Any]:
        return {
            "offline": self.offline,
            "latency": self.latency,
            "downloadThroughput": self.download,
            "uploadThroughput": self.upload,
        }


NETWORK_PROFILES: Dict[str, NetworkProfile] = {
    "offline": NetworkProfile(offline=True, latency=0, download=0, upload=0),
    "slow-4g": NetworkProfile(offline=False, latency=150, download=1.6 * 1024 * 1024 / 8, upload=750 * 1024 / 8),
    "4g": NetworkProfile(offline=False, latency=20, download=4 * 1024 * 1024 / 8, upload=3 * 1024 * 1024 / 8),
    "3g": NetworkProfile(offline=False, latency=100, download=750 * 1024 / 8, upload=250 * 1024 / 8),
    "none": NetworkProfile(offline=False, latency=0, download=-1, upload=-1),
}


@dataclass
class Viewport:
    width: int
    height: int
    device_scale_factor: float = 1.0


@dataclass
class EmulationOverrides:
    """Emulation settings re-applied to every new session on the active tab."""
    mobile: bool = False
    viewport: Optional[Viewport] = None
    user_agent: Optional[str] = None
    network: Optional[str] = None
    cpu: Optional[float] = None

    def is_empty(self) -> bool:
        return not self.mobile and self.viewport is None and self.user_agent is None \
            and self.network is None and self.cpu is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"mobile": self.mobile}
        if self.viewport is not None:
            data["viewport"] = {
                "width": self.viewport.width,
                "height": self.viewport.height,
                "deviceScaleFactor": self.viewport.device_scale_factor,
            }
        if self.user_agent is not None:
            data["userAgent"] = self.user_agent
        if self.network is not None:
            data["network"] = self.network
        if self.cpu is not None:
            data["cpu"] = self.cpu
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> EmulationOverrides:
        data = data or {}
        viewport = None
        raw_viewport = data.get("viewport")
        if isinstance(raw_viewport, dict) and "width" in raw_viewport and "height" in raw_viewport:
            viewport = Viewport(
                width=int(raw_viewport["width"]),
                height=int(raw_viewport["height"]),
                device_scale_factor=float(raw_viewport.get("deviceScaleFactor", 1.0)),
            )
        cpu = data.get("cpu")
        return cls(
            mobile=bool(data.get("mobile", False)),
            viewport=viewport,
            user_agent=data.get("userAgent"),
            network=data.get("network"),
            cpu=float(cpu) if cpu is not None else None,
        )


async def apply_overrides(session: CDPSession, overrides: EmulationOverrides):
    """Re-apply persisted emulation overrides to a freshly attached session."""
    if overrides.viewport is not None or overrides.mobile:
        viewport = overrides.viewport or Viewport(width=0, height=0)
        await session.send("Emulation.setDeviceMetricsOverride", {
            "width": viewport.width,
            "height": viewport.height,
            "deviceScaleFactor": viewport.device_scale_factor,
            "mobile": overrides.mobile,
        })
        if overrides.mobile:
            await session.send("Emulation.setTouchEmulationEnabled", {"enabled": True})

    if overrides.user_agent is not None:
        await session.send("Emulation.setUserAgentOverride", {"userAgent": overrides.user_agent})

    if overrides.network is not None:
        profile = NETWORK_PROFILES.get(overrides.network)
        if profile is None:
            logger.warning(f"Unknown network profile in state: {overrides.network}")
        else:
            await session.ensure_domain("Network")
            await session.send("Network.emulateNetworkConditions", profile.to_params())

    if overrides.cpu is not None:
        await session.send("Emulation.setCPUThrottlingRate", {"rate": overrides.cpu})


@dataclass
class StateRecord:
    """Connection endpoint, active tab and overrides for the next invocation."""
    ws_url: str
    port: int
    pid: Optional[int] = None
    active_tab: Optional[str] = None
    overrides: EmulationOverrides = field(default_factory=EmulationOverrides)
    timestamp: str = field(default_factory=now_iso8601)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ws_url": self.ws_url, "port": self.port}
        if self.pid is not None:
            data["pid"] = self.pid
        if self.active_tab is not None:
            data["active_tab"] = self.active_tab
        if not self.overrides.is_empty():
            data["overrides"] = self.overrides.to_dict()
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StateRecord:
        ws_url = data.get("ws_url")
        port = data.get("port")
        if not isinstance(ws_url, str) or not isinstance(port, int):
            raise StateStoreError("Invalid session state: missing ws_url or port")
        return cls(
            ws_url=ws_url,
            port=port,
            pid=data.get("pid"),
            active_tab=data.get("active_tab"),
            overrides=EmulationOverrides.from_dict(data.get("overrides")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class SnapshotState:
    """UID map of the last snapshot, owned by one tab."""
    tab_id: Optional[str]
    generation: int
    url: str = ""
    timestamp: str = field(default_factory=now_iso8601)
    uid_map: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tab_id": self.tab_id,
            "generation": self.generation,
            "url": self.url,
            "timestamp": self.timestamp,
            "uid_map": dict(self.uid_map),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SnapshotState:
        raw_map = data.get("uid_map")
        if not isinstance(raw_map, dict):
            raise StateStoreError("Invalid snapshot state: missing uid_map")
        try:
            return cls(
                tab_id=data.get("tab_id"),
                generation=int(data.get("generation", 0)),
                url=str(data.get("url", "")),
                timestamp=str(data.get("timestamp", "")),
                uid_map={str(uid): int(backend_id) for uid, backend_id in raw_map.items()},
            )
        except (TypeError, ValueError) as e:
            raise StateStoreError(f"Invalid snapshot state: {e}") from e

    def backend_ids(self):
        return set(self.uid_map.values())


# =============================================================================
# Store
# =============================================================================

class StateStore:
    """Typed access to the session record and the snapshot state."""

    def __init__(self, session: BlobStore, snapshot: BlobStore):
        self._session = session
        self._snapshot = snapshot

    @classmethod
    def from_settings(cls, settings: Settings) -> StateStore:
        return cls(JsonFileStore(settings.session_file), JsonFileStore(settings.snapshot_file))

    @classmethod
    def in_memory(cls) -> StateStore:
        return cls(MemoryStore(), MemoryStore())

    # --- session record ---

    def load(self) -> Optional[StateRecord]:
        data = self._session.read()
        return StateRecord.from_dict(data) if data is not None else None

    def save(self, record: StateRecord):
        record.timestamp = now_iso8601()
        self._session.replace(record.to_dict())
        logger.debug("Saved session state", extra={"port": record.port, "active_tab": record.active_tab})

    def clear(self):
        self._session.clear()

    def set_active_tab(self, tab_id: Optional[str]):
        """Record the active tab; a no-op when no session record exists."""
        record = self.load()
        if record is None:
            return
        record.active_tab = tab_id
        self.save(record)

    def set_overrides(self, overrides: EmulationOverrides):
        record = self.load()
        if record is None:
            raise StateStoreError("No session state to store emulation overrides in")
        record.overrides = overrides
        self.save(record)

    # --- snapshot state ---

    def load_snapshot(self) -> Optional[SnapshotState]:
        data = self._snapshot.read()
        return SnapshotState.from_dict(data) if data is not None else None

    def replace_snapshot(self, tab_id: Optional[str], uid_map: Dict[str, int],
                         url: str = "") -> SnapshotState:
        """Replace the snapshot state wholesale; the generation always moves forward."""
        generation = self._previous_generation() + 1
        snapshot = SnapshotState(tab_id=tab_id, generation=generation, url=url, uid_map=dict(uid_map))
        self._snapshot.replace(snapshot.to_dict())
        return snapshot

    def _previous_generation(self) -> int:
        # an unreadable snapshot file must not block writing a fresh one
        try:
            previous = self._snapshot.read()
            return int(previous.get("generation", 0)) if previous else 0
        except (StateStoreError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring unreadable snapshot state: {e}")
            return 0

    def clear_snapshot(self):
        self._snapshot.clear()
