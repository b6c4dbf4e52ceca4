"""
Chrome Module - Discovery endpoint client and process launcher.
"""
from chromectl.chrome.discovery import (
    BrowserVersion,
    DiscoveryClient,
    TargetInfo,
    discover_chrome,
    query_version,
    read_devtools_active_port,
)
from chromectl.chrome.launcher import ChromeProcess, find_chrome_executable, launch_chrome

__all__ = [
    "BrowserVersion",
    "DiscoveryClient",
    "TargetInfo",
    "discover_chrome",
    "query_version",
    "read_devtools_active_port",
    "ChromeProcess",
    "find_chrome_executable",
    "launch_chrome",
]
