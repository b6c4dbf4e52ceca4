"""
Configuration - Dataclasses holding connection, transport and launch options.

Defaults can be overridden field by field or read from the environment with
``Settings.from_env()``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_CDP_PORT = 9222
STATE_DIR_NAME = ".chromectl"


@dataclass
class ReconnectConfig:
    """Backoff policy used after the WebSocket drops unexpectedly."""

    max_retries: int = 5
    initial_backoff: float = 0.1
    max_backoff: float = 5.0


@dataclass
class CDPConfig:
    """Transport-level timeouts (seconds)."""

    connect_timeout: float = 10.0
    command_timeout: float = 30.0
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class LaunchConfig:
    """Options for launching a Chrome process we own."""

    executable: Optional[str] = None
    port: int = 0
    headless: bool = False
    extra_args: List[str] = field(default_factory=list)
    user_data_dir: Optional[str] = None
    startup_timeout: float = 30.0


def default_state_dir() -> Path:
    return Path.home() / STATE_DIR_NAME


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Everything one invocation needs to reach (or start) Chrome."""

    host: str = DEFAULT_HOST
    port: Optional[int] = None
    ws_url: Optional[str] = None
    tab: Optional[str] = None
    state_dir: Path = field(default_factory=default_state_dir)
    cdp: CDPConfig = field(default_factory=CDPConfig)
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    debug: bool = False

    @property
    def session_file(self) -> Path:
        return self.state_dir / "session.json"

    @property
    def snapshot_file(self) -> Path:
        return self.state_dir / "snapshot.json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """Build settings from CHROMECTL_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        settings = cls()

        if env.get("CHROMECTL_HOST"):
            settings.host = env["CHROMECTL_HOST"]
        if env.get("CHROMECTL_PORT"):
            settings.port = int(env["CHROMECTL_PORT"])
        if env.get("CHROMECTL_WS_URL"):
            settings.ws_url = env["CHROMECTL_WS_URL"]
        if env.get("CHROMECTL_TAB"):
            settings.tab = env["CHROMECTL_TAB"]
        if env.get("CHROMECTL_TIMEOUT"):
            settings.cdp.command_timeout = int(env["CHROMECTL_TIMEOUT"]) / 1000.0
        if env.get("CHROMECTL_HOME"):
            settings.state_dir = Path(env["CHROMECTL_HOME"])
        if env.get("CHROME_PATH"):
            settings.launch.executable = env["CHROME_PATH"]
        settings.launch.headless = _env_bool(env.get("CHROMECTL_HEADLESS"))
        settings.debug = _env_bool(env.get("CHROMECTL_DEBUG"))
        return settings
