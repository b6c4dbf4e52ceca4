"""
Chrome Launcher - Locate a Chrome executable and start it with remote debugging.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
import uuid
from pathlib import Path
from typing import List, Optional

from chromectl.chrome.discovery import BrowserVersion, query_version
from chromectl.config import LaunchConfig
from chromectl.core.errors import (
    CDPConnectionError,
    CDPTimeoutError,
    ChromeLaunchError,
    ChromeNotFoundError,
    ChromectlError,
    InvalidResponseError,
)

logger = logging.getLogger("chromectl")

LINUX_EXECUTABLES = [
    "google-chrome",
    "google-chrome-stable",
    "chromium-browser",
    "chromium",
]

LINUX_PATHS = [
    "/usr/bin/google-chrome",
    "/usr/bin/chromium-browser",
    "/usr/bin/chromium",
    "/snap/bin/chromium",
    "/opt/google/chrome/chrome",
]

MACOS_PATHS = [
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
]


def _windows_paths() -> List[str]:
    paths = []
    for var in ("ProgramFiles", "ProgramFiles(x86)", "LOCALAPPDATA"):
        base = os.environ.get(var)
        if base:
            paths.append(os.path.join(base, "Google", "Chrome", "Application", "chrome.exe"))
    return paths


def chrome_candidates() -> List[str]:
    """Candidate executables for this platform, most preferred first."""
    if sys.platform == "darwin":
        return list(MACOS_PATHS)
    if sys.platform == "win32":
        return _windows_paths()
    candidates = []
    for name in LINUX_EXECUTABLES:
        found = shutil.which(name)
        if found:
            candidates.append(found)
    candidates.extend(LINUX_PATHS)
    return candidates


def find_chrome_executable(override: Optional[str] = None) -> str:
    """
    Find a Chrome/Chromium executable.

    An explicit ``override`` (or CHROME_PATH) wins when it exists.

    Raises:
        ChromeNotFoundError: if nothing usable is found.
    """
    override = override or os.environ.get("CHROME_PATH")
    if override and os.path.exists(override):
        return override

    for candidate in chrome_candidates():
        if os.path.exists(candidate):
            return candidate

    raise ChromeNotFoundError(
        "Chrome not found: could not find Chrome. Set CHROME_PATH to the executable"
    )


def find_available_port() -> int:
    """Ask the OS for a free TCP port on the loopback interface."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]
    except OSError as e:
        raise ChromeLaunchError(f"Chrome launch failed: could not bind to find a free port: {e}") from e


def build_chrome_args(executable: str, port: int, user_data_dir: str,
                      headless: bool = False, extra_args: Optional[List[str]] = None) -> List[str]:
    args = [
        executable,
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
    ]
    if headless:
        args.append("--headless=new")
    args.extend(extra_args or [])
    return args


class ChromeProcess:
    """A Chrome process started by this invocation."""

    def __init__(self, process: subprocess.Popen, port: int, temp_dir: Optional[str] = None):
        self.process: Optional[subprocess.Popen] = process
        self.port = port
        self._temp_dir = temp_dir

    @property
    def pid(self) -> int:
        return self.process.pid if self.process else 0

    def kill(self):
        """Terminate Chrome and remove its temporary profile."""
        if self.process is not None:
            if self.process.poll() is None:
                self.process.terminate()
                try:
                    self.process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    self.process.kill()
                    self.process.wait()
            self.process = None
        if self._temp_dir:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None

    def detach(self) -> int:
        """Leave Chrome running after this process exits; returns its pid."""
        pid = self.pid
        self.process = None
        self._temp_dir = None
        return pid


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def kill_pid(pid: int, grace: float = 2.0) -> bool:
    """
    Terminate a Chrome left running by an earlier invocation.

    Sends SIGTERM, waits up to ``grace`` seconds, then SIGKILL. Returns False
    if the process was already gone.
    """
    if sys.platform == "win32":
        result = subprocess.run(["taskkill", "/T", "/F", "/PID", str(pid)], capture_output=True)
        return result.returncode == 0

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False

    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if not _pid_exists(pid):
            return True
        time.sleep(0.1)

    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


async def launch_chrome(config: LaunchConfig) -> ChromeProcess:
    """
    Launch Chrome and wait until its discovery endpoint answers.

    Raises:
        ChromeNotFoundError: no executable.
        ChromeLaunchError: Chrome failed to spawn or exited early.
        CDPTimeoutError: Chrome did not become ready within ``startup_timeout``.
    """
    executable = find_chrome_executable(config.executable)
    port = config.port or find_available_port()

    temp_dir = None
    user_data_dir = config.user_data_dir
    if user_data_dir is None:
        temp_dir = os.path.join(tempfile.gettempdir(), f"chromectl-{uuid.uuid4().hex[:16]}")
        Path(temp_dir).mkdir(parents=True, exist_ok=True)
        user_data_dir = temp_dir

    args = build_chrome_args(executable, port, user_data_dir, config.headless, config.extra_args)
    logger.info(f"Launching Chrome: {executable} (port {port})")

    try:
        popen = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as e:
        if temp_dir:
            shutil.rmtree(temp_dir, ignore_errors=True)
        raise ChromeLaunchError(f"Chrome launch failed: failed to spawn {executable}: {e}") from e

    chrome = ChromeProcess(popen, port, temp_dir)
    try:
        await wait_until_ready(chrome, config.startup_timeout)
    except ChromectlError:
        chrome.kill()
        raise
    return chrome


async def wait_until_ready(chrome: ChromeProcess, timeout: float,
                           poll_interval: float = 0.1) -> BrowserVersion:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if chrome.process is not None and chrome.process.poll() is not None:
            raise ChromeLaunchError(
                f"Chrome launch failed: Chrome exited with status {chrome.process.returncode} before becoming ready"
            )
        try:
            return await query_version("127.0.0.1", chrome.port)
        except (CDPConnectionError, InvalidResponseError) as e:
            logger.debug(f"Chrome not ready yet on port {chrome.port}: {e.message}")
        if loop.time() >= deadline:
            raise CDPTimeoutError(
                f"Chrome startup timed out on port {chrome.port}",
                timeout=timeout,
                method="launch_chrome",
            )
        await asyncio.sleep(poll_interval)
