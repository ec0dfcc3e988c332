from __future__ import annotations
import asyncio
import logging

from llmrepl.core.errors import ShellError
from llmrepl.log_utils import log_event

logger = logging.getLogger(__name__)


async def run_shell(command: str) -> str:
    """
    Run one command line through the platform shell (`sh -c` / `cmd /C`) and return stdout.
    Non-zero exit raises ShellError carrying the exit code and stderr.
    """
    command = command.strip()
    if not command:
        raise ShellError("Shell command cannot be empty.")
    log_event(logger, "shell.start", level=logging.DEBUG, command=command)
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ShellError(f"Failed to execute shell command: {e}") from e
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        code = proc.returncode if proc.returncode is not None and proc.returncode >= 0 else "signal"
        err = stderr.decode("utf-8", errors="replace").strip()
        raise ShellError(f"Shell command failed (exit code {code}):\n{err}".rstrip())
    return stdout.decode("utf-8", errors="replace")
