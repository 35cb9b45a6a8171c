"""Relay configuration from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BACKENDS = ("cli", "sdk")


@dataclass(frozen=True)
class RelayConfig:
    host: str
    port: int
    backend: str
    claude_bin: str
    claude_config_path: Path
    sandbox_dir: Path | None
    kill_timeout_s: float
    stdout_limit: int
    log_level: str


def load_env(env_path: Path | None = None) -> None:
    """Load .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path.cwd() / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


def _default_claude_config() -> Path:
    raw = (os.getenv("CLAUDE_RELAY_CLAUDE_CONFIG") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".claude.json"


def _sandbox_dir() -> Path | None:
    # Unset means "inside the unit's working directory" so the CLI can read it.
    raw = (os.getenv("CLAUDE_RELAY_SANDBOX_DIR") or "").strip()
    return Path(raw).expanduser() if raw else None


def get_relay_config() -> RelayConfig:
    """Get relay configuration from environment (call load_env() first)."""
    backend = (os.getenv("CLAUDE_RELAY_BACKEND") or "cli").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(
            f"CLAUDE_RELAY_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}"
        )

    host = (os.getenv("CLAUDE_RELAY_HOST") or "127.0.0.1").strip() or "127.0.0.1"

    return RelayConfig(
        host=host,
        port=int(os.getenv("CLAUDE_RELAY_PORT", "3001")),
        backend=backend,
        claude_bin=(os.getenv("CLAUDE_RELAY_CLAUDE_BIN") or "claude").strip() or "claude",
        claude_config_path=_default_claude_config(),
        sandbox_dir=_sandbox_dir(),
        kill_timeout_s=float(os.getenv("CLAUDE_RELAY_KILL_TIMEOUT_S", "5")),
        stdout_limit=int(os.getenv("CLAUDE_RELAY_STDOUT_LIMIT", str(10 * 1024 * 1024))),
        log_level=(os.getenv("CLAUDE_RELAY_LOG_LEVEL") or "INFO").strip().upper(),
    )
