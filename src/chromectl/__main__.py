#!/usr/bin/env python3
"""
Manage the Chrome instance chromectl talks to.

    python -m chromectl connect [--launch] [--headless] [--port N]
    python -m chromectl status
    python -m chromectl disconnect

Every command prints one JSON object on stdout. Failures print
``{"error": ..., "code": ...}`` on stderr and exit with the error's code.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from chromectl.chrome.discovery import query_version
from chromectl.chrome.launcher import kill_pid, launch_chrome
from chromectl.config import Settings
from chromectl.connection import Connection, connect, persist_connection
from chromectl.core.errors import ChromectlError, CDPConnectionError, InvalidResponseError
from chromectl.logging_utils import setup_logging
from chromectl.state import StateStore


def _print_json(value: Dict[str, Any]):
    print(json.dumps(value))


async def cmd_connect(settings: Settings, store: StateStore, launch: bool) -> Dict[str, Any]:
    if launch:
        process = await launch_chrome(settings.launch)
        version = await query_version("127.0.0.1", process.port)
        connection = Connection(host="127.0.0.1", port=process.port,
                                ws_url=version.ws_debugger_url, process=process)
        persist_connection(store, connection)
    else:
        connection = await connect(settings, store)

    pid = connection.detach()
    info: Dict[str, Any] = {"ws_url": connection.ws_url, "port": connection.port}
    if pid is not None:
        info["pid"] = pid
    return info


async def cmd_status(settings: Settings, store: StateStore) -> Dict[str, Any]:
    record = store.load()
    if record is None:
        return {"connected": False}

    status: Dict[str, Any] = record.to_dict()
    try:
        version = await query_version(settings.host, record.port)
    except (CDPConnectionError, InvalidResponseError) as e:
        logging.getLogger("chromectl").debug(f"Status check failed: {e}")
        status["reachable"] = False
    else:
        status["reachable"] = True
        status["browser"] = version.browser
    status["connected"] = True
    return status


def cmd_disconnect(store: StateStore) -> Dict[str, Any]:
    record = store.load()
    killed_pid: Optional[int] = None
    if record is not None and record.pid:
        if kill_pid(record.pid):
            killed_pid = record.pid
    store.clear()
    store.clear_snapshot()
    return {"disconnected": True, "killed_pid": killed_pid}


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chromectl", description="Manage the Chrome instance chromectl controls.")
    parser.add_argument("--host", help="Chrome debugging host (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, help="Chrome debugging port.")
    parser.add_argument("--ws-url", help="Connect straight to this browser WebSocket URL.")
    parser.add_argument("--debug", action="store_true", help="Log every CDP command and event.")

    sub = parser.add_subparsers(dest="command", required=True)
    connect_parser = sub.add_parser("connect", help="Connect to Chrome, launching it if none is running.")
    connect_parser.add_argument("--launch", action="store_true", help="Always launch a new Chrome.")
    connect_parser.add_argument("--headless", action="store_true", help="Launch Chrome without a window.")
    sub.add_parser("status", help="Show the persisted connection.")
    sub.add_parser("disconnect", help="Forget the connection and stop a Chrome we launched.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    settings = Settings.from_env()
    if args.host:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
        settings.launch.port = args.port
    if args.ws_url:
        settings.ws_url = args.ws_url
    settings.debug = settings.debug or args.debug
    store = StateStore.from_settings(settings)

    if args.command == "connect":
        settings.launch.headless = settings.launch.headless or args.headless
        return await cmd_connect(settings, store, args.launch)
    if args.command == "status":
        return await cmd_status(settings, store)
    return cmd_disconnect(store)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(level=logging.WARNING, debug=args.debug)
    try:
        result = asyncio.run(_run(args))
    except ChromectlError as e:
        print(e.to_json(), file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130
    _print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
