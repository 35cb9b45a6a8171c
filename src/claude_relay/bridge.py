#!/usr/bin/env python3
"""
claude-relay - WebSocket bridge for Claude Code sessions

Each `claude-command` from a client starts one Claude unit (CLI subprocess or
Agent SDK query, see CLAUDE_RELAY_BACKEND). Its messages are streamed back on
the same socket until a `session-complete` envelope closes the run.
"""

from __future__ import annotations

import asyncio
import logging

from claude_relay.config import RelayConfig, get_relay_config, load_env
from claude_relay.core.session_runtime import SessionRegistry
from claude_relay.server import start_relay_server

log = logging.getLogger("bridge")


async def serve(config: RelayConfig) -> None:
    registry = SessionRegistry()

    runner, host, port = await start_relay_server(config, registry=registry)
    log.info(f"Relay listening on ws://{host}:{port}/ws (backend={config.backend})")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()


def main() -> None:
    load_env()
    config = get_relay_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("Shutting down...")


if __name__ == "__main__":
    main()
