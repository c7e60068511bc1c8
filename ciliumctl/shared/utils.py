"""Subprocess helpers with cancellation support."""

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class CommandResult:
    """Captured outcome of one command line invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr when present, stdout otherwise; used for error messages."""
        return (self.stderr or self.stdout).strip()


async def run_subprocess_with_cancellation(
    cmd: List[str],
    stdin_data: Optional[bytes] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a subprocess and terminate it if the awaiting task is cancelled.

    Args:
        cmd: Command to execute as a list of strings
        stdin_data: Optional data to send to stdin
        env: Extra environment variables layered over the current environment

    Returns:
        CommandResult with returncode, stdout and stderr. A missing binary is
        reported as returncode 127 rather than raised.

    Raises:
        asyncio.CancelledError: If the task is cancelled
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin_data else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as exc:
        return CommandResult(returncode=127, stderr=f"{cmd[0]}: {exc}")

    try:
        stdout, stderr = await process.communicate(input=stdin_data)
        return CommandResult(
            returncode=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode() if stdout else "",
            stderr=stderr.decode() if stderr else "",
        )
    except asyncio.CancelledError:
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except (ProcessLookupError, OSError):
            # Already exited.
            pass
        raise
