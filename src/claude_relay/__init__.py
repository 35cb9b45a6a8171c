"""Relay Claude Code sessions to a WebSocket client."""

__version__ = "0.1.0"
