"""Async subprocess helper."""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 500) -> str:
        text = self.stderr or self.stdout
        return text[-limit:]


async def run_command(
    cmd: list[str] | str,
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 300,
) -> CommandResult:
    """Run a command and capture its output.

    A string runs through the shell, a list is executed directly.

    Raises:
        asyncio.TimeoutError: If the command does not finish in time
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    if isinstance(cmd, str):
        process = await asyncio.create_subprocess_shell(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error("process.timeout", cmd=cmd if isinstance(cmd, str) else cmd[0], timeout=timeout)
        raise

    result = CommandResult(
        returncode=process.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )
    logger.debug(
        "process.completed",
        returncode=result.returncode,
        stdout_len=len(result.stdout),
        stderr_len=len(result.stderr),
    )
    return result
