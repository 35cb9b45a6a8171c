"""Subprocess transport helpers for runners."""

from __future__ import annotations

import asyncio
import logging
import os

from claude_relay.errors import LaunchFailure

log = logging.getLogger(__name__)


class SubprocessTransport:
    def __init__(self):
        self.process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    async def start(
        self,
        cmd: list[str],
        *,
        cwd: str,
        stdout_limit: int,
        keep_stdin_open: bool = False,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamReader]:
        """Spawn the command, returning its (stdout, stderr) readers."""
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if keep_stdin_open else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ},
                limit=stdout_limit,
            )
        except FileNotFoundError as e:
            # Raised both for a missing executable and a missing cwd.
            missing_cwd = not os.path.isdir(cwd)
            detail = f"Working directory not found: {cwd}" if missing_cwd else str(e)
            raise LaunchFailure(detail, not_found=not missing_cwd) from e
        except OSError as e:
            raise LaunchFailure(f"Failed to start {cmd[0]}: {e}") from e

        if self.process.stdout is None or self.process.stderr is None:
            raise LaunchFailure("Subprocess pipes missing")

        return self.process.stdout, self.process.stderr

    async def wait(self) -> int:
        if not self.process:
            return 0
        await self.process.wait()
        return int(self.process.returncode or 0)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    async def cancel_and_kill(self, timeout: float = 5.0) -> None:
        """Terminate the process, wait, then force-kill if still alive."""
        proc = self.process
        if not proc or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except (asyncio.TimeoutError, ProcessLookupError):
            log.warning("Process %s did not exit after SIGTERM, sending SIGKILL", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
