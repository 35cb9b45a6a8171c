"""Runners for the Claude backends."""

from claude_relay.runners.base import CancelToken, InvocationSpec, RunState
from claude_relay.runners.claude import ClaudeRunner, ClaudeSdkRunner
from claude_relay.runners.pipeline import JsonLineDecoder, JSONLineStats
from claude_relay.runners.ports import Runner, RunnerEvent
from claude_relay.runners.registry import create_runner

__all__ = [
    "CancelToken",
    "ClaudeRunner",
    "ClaudeSdkRunner",
    "InvocationSpec",
    "JSONLineStats",
    "JsonLineDecoder",
    "RunState",
    "Runner",
    "RunnerEvent",
    "create_runner",
]
