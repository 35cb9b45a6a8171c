from __future__ import annotations

import asyncio
import gc
import weakref
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeRunner, assistant_message, init_message, make_config, result_message

from claude_relay import server
from claude_relay.core.session_runtime import SessionRegistry
from claude_relay.server import REGISTRY_KEY, create_app


def make_app(tmp_path: Path, runners: list[FakeRunner], registry: SessionRegistry | None = None):
    pending = list(runners)
    return create_app(
        make_config(tmp_path),
        registry=registry,
        runner_factory=lambda: pending.pop(0),
    )


async def receive_until(ws, msg_type: str, timeout: float = 5.0) -> list[dict]:
    received = []
    while True:
        msg = await ws.receive_json(timeout=timeout)
        received.append(msg)
        if msg["type"] == msg_type:
            return received


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_command_roundtrip(tmp_path: Path):
    runner = FakeRunner([init_message("abc"), assistant_message("a.txt", "abc"), result_message("abc")])
    app = make_app(tmp_path, [runner])

    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json(
            {
                "type": "claude-command",
                "command": "list files",
                "options": {"cwd": str(tmp_path), "projectPath": str(tmp_path)},
            }
        )
        received = await receive_until(ws, "session-complete")
        await ws.close()

    assert [m["type"] for m in received] == [
        "session-created",
        "claude-response",
        "claude-response",
        "claude-response",
        "session-complete",
    ]
    assert received[0]["sessionId"] == "abc"
    assert received[-1] == {"type": "session-complete", "exitCode": 0, "isNewSession": True}
    assert runner.invocations[0].working_dir == str(tmp_path)


@pytest.mark.asyncio
async def test_abort_unknown_session(tmp_path: Path):
    async with TestClient(TestServer(make_app(tmp_path, []))) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "abort-session", "sessionId": "nope"})
        msg = await ws.receive_json(timeout=5)
        await ws.close()

    assert msg == {"type": "session-aborted", "sessionId": "nope", "success": False}


@pytest.mark.asyncio
async def test_abort_live_session(tmp_path: Path):
    gate = asyncio.Event()
    runner = FakeRunner([init_message("live"), assistant_message("working", "live")], gate=gate)
    registry = SessionRegistry()

    async with TestClient(TestServer(make_app(tmp_path, [runner], registry))) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "claude-command", "command": "long task", "options": {}})
        await receive_until(ws, "claude-response")

        await ws.send_json({"type": "abort-session", "sessionId": "live"})
        received = await receive_until(ws, "session-complete")
        await ws.close()

    assert {"type": "session-aborted", "sessionId": "live", "success": True} in received
    assert [m["type"] for m in received].count("session-complete") == 1
    assert runner.cleaned_up
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_invalid_messages_get_errors(tmp_path: Path):
    async with TestClient(TestServer(make_app(tmp_path, []))) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_str("{not json")
        invalid = await ws.receive_json(timeout=5)
        await ws.send_str("[1, 2]")
        non_object = await ws.receive_json(timeout=5)
        await ws.send_json({"type": "launch-missiles"})
        unknown = await ws.receive_json(timeout=5)
        await ws.close()

    assert invalid == {"type": "error", "error": "Invalid JSON message"}
    assert non_object == {"type": "error", "error": "Message must be a JSON object"}
    assert unknown["type"] == "error"
    assert "launch-missiles" in unknown["error"]


@pytest.mark.asyncio
async def test_disconnect_aborts_connection_units(tmp_path: Path):
    runner = FakeRunner([init_message("bye"), assistant_message("working", "bye")], gate=asyncio.Event())
    app = make_app(tmp_path, [runner])

    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "claude-command", "command": "long task"})
        await receive_until(ws, "claude-response")
        assert "bye" in app[REGISTRY_KEY]

        await ws.close()
        await wait_until(lambda: runner.cleaned_up and len(app[REGISTRY_KEY]) == 0)


@pytest.mark.asyncio
async def test_health_reports_live_sessions(tmp_path: Path):
    gate = asyncio.Event()
    runner = FakeRunner([init_message("h1"), assistant_message("working", "h1")], gate=gate)

    async with TestClient(TestServer(make_app(tmp_path, [runner]))) as client:
        resp = await client.get("/health")
        assert await resp.json() == {"status": "ok", "sessions": 0}

        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "claude-command", "command": "work"})
        await receive_until(ws, "claude-response")

        resp = await client.get("/health")
        assert await resp.json() == {"status": "ok", "sessions": 1}

        gate.set()
        await receive_until(ws, "session-complete")
        await ws.close()


@pytest.mark.asyncio
async def test_shutdown_aborts_live_sessions(tmp_path: Path):
    runner = FakeRunner([init_message("s"), assistant_message("working", "s")], gate=asyncio.Event())
    registry = SessionRegistry()
    app = make_app(tmp_path, [runner], registry)

    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "claude-command", "command": "work"})
        await receive_until(ws, "claude-response")

        await app.shutdown()

        assert runner.cleaned_up
        assert len(registry) == 0
        await ws.close()


@pytest.mark.asyncio
async def test_abort_right_behind_command_cancels_it(tmp_path: Path):
    runner = FakeRunner([init_message("s1"), assistant_message("working", "s1")], gate=asyncio.Event())
    registry = SessionRegistry()

    async with TestClient(TestServer(make_app(tmp_path, [runner], registry))) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json(
            {"type": "claude-command", "command": "work", "options": {"sessionId": "s1", "resume": True}}
        )
        await ws.send_json({"type": "abort-session", "sessionId": "s1"})
        received = await receive_until(ws, "session-complete")
        if not any(m["type"] == "session-aborted" for m in received):
            received += await receive_until(ws, "session-aborted")
        await ws.close()

    assert {"type": "session-aborted", "sessionId": "s1", "success": True} in received
    assert [m["type"] for m in received].count("session-complete") == 1
    assert "s1" not in registry


@pytest.mark.asyncio
async def test_finished_units_are_released_while_socket_stays_open(tmp_path: Path, monkeypatch):
    live = weakref.WeakSet()

    class TrackedUnit(server.SessionUnit):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            live.add(self)

    monkeypatch.setattr(server, "SessionUnit", TrackedUnit)
    runners = [FakeRunner([init_message(f"r{i}"), result_message(f"r{i}")]) for i in range(5)]

    async with TestClient(TestServer(make_app(tmp_path, runners))) as client:
        ws = await client.ws_connect("/ws")
        for _ in range(5):
            await ws.send_json({"type": "claude-command", "command": "work"})
            await receive_until(ws, "session-complete")

        await wait_until(lambda: gc.collect() >= 0 and len(live) == 0)
        assert not ws.closed
        await ws.close()
