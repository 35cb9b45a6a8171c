"""WebSocket channel adapter.

Exposes:
  GET /ws      - client channel (claude-command / abort-session in, envelopes out)
  GET /health  - liveness + number of live sessions
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable

from aiohttp import WSMsgType, web

from claude_relay.attachments import AttachmentSandbox
from claude_relay.config import RelayConfig
from claude_relay.core.session_runtime import SessionRegistry, SessionUnit
from claude_relay.core.session_runtime.api import (
    Envelope,
    ErrorMessage,
    SessionAborted,
    StartOptions,
)
from claude_relay.runners import Runner, create_runner

log = logging.getLogger("relay.server")

RunnerFactory = Callable[[], Runner]

REGISTRY_KEY = web.AppKey("registry", SessionRegistry)
TASKS_KEY = web.AppKey("unit_tasks", set)


class WebSocketChannel:
    """Channel port over one aiohttp WebSocket."""

    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws

    async def send(self, envelope: Envelope) -> None:
        if self._ws.closed:
            log.debug(f"Dropping {type(envelope).__name__}: socket closed")
            return
        try:
            await self._ws.send_json(envelope.to_dict())
        except ConnectionResetError as e:
            log.warning(f"WebSocket send failed: {e}")


def create_app(
    config: RelayConfig,
    *,
    registry: SessionRegistry | None = None,
    runner_factory: RunnerFactory | None = None,
) -> web.Application:
    registry = registry if registry is not None else SessionRegistry()
    if runner_factory is None:
        runner_factory = lambda: create_runner(config.backend, config=config)  # noqa: E731

    sandbox = AttachmentSandbox(config.sandbox_dir)

    app = web.Application()
    app[REGISTRY_KEY] = registry
    app[TASKS_KEY] = set()

    def _start_unit(
        command: str,
        options: StartOptions,
        channel: WebSocketChannel,
        units: set[SessionUnit],
    ) -> SessionUnit:
        unit = SessionUnit(
            command,
            options,
            channel=channel,
            registry=registry,
            runner=runner_factory(),
            sandbox=sandbox,
            mcp_config_path=config.claude_config_path,
        )
        # Registered now, not when the task first runs, so an abort that
        # arrives right behind the command still finds the unit.
        unit.start()
        units.add(unit)
        task = asyncio.create_task(unit.run())
        app[TASKS_KEY].add(task)
        task.add_done_callback(app[TASKS_KEY].discard)
        task.add_done_callback(lambda _t: units.discard(unit))
        return unit

    async def _dispatch(raw: str, channel: WebSocketChannel, units: set[SessionUnit]) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            await channel.send(ErrorMessage("Invalid JSON message"))
            return
        if not isinstance(data, dict):
            await channel.send(ErrorMessage("Message must be a JSON object"))
            return

        msg_type = data.get("type")
        if msg_type == "claude-command":
            command = data.get("command")
            _start_unit(
                command if isinstance(command, str) else "",
                StartOptions.from_payload(data.get("options")),
                channel,
                units,
            )
        elif msg_type == "abort-session":
            session_id = data.get("sessionId")
            session_id = session_id if isinstance(session_id, str) else ""
            success = registry.abort(session_id) if session_id else False
            await channel.send(SessionAborted(session_id, success))
        else:
            await channel.send(ErrorMessage(f"Unknown message type: {msg_type!r}"))

    async def handle_ws(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        channel = WebSocketChannel(ws)
        units: set[SessionUnit] = set()
        log.info(f"Client connected: {request.remote}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await _dispatch(msg.data, channel, units)
                elif msg.type == WSMsgType.ERROR:
                    log.warning(f"WebSocket error: {ws.exception()}")
        finally:
            # Nobody is left to relay to.
            for unit in list(units):
                unit.abort("disconnect")
            log.info(f"Client disconnected: {request.remote}")

        return ws

    async def handle_health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "sessions": len(registry)})

    async def on_shutdown(app: web.Application) -> None:
        aborted = registry.abort_all()
        if aborted:
            log.info(f"Aborted {aborted} live session(s)")
        tasks = list(app[TASKS_KEY])
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    app.router.add_get("/ws", handle_ws)
    app.router.add_get("/health", handle_health)
    app.on_shutdown.append(on_shutdown)
    return app


async def start_relay_server(
    config: RelayConfig,
    *,
    registry: SessionRegistry | None = None,
) -> tuple[web.AppRunner, str, int]:
    """Start the WebSocket relay server."""
    app = create_app(config, registry=registry)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=config.host, port=config.port)
    await site.start()
    return runner, config.host, config.port
