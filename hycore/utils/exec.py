"""
Command execution utilities for the docker CLI and the server executable.
"""

import asyncio
import os
import shlex
from pathlib import Path

from ..errors import BackendExecutionError


def format_command(command: str, *args: str) -> str:
    return shlex.join([command, *args])


async def exec_command(
    command: str,
    *args: str,
    env: dict[str, str] | None = None,
    cwd: str | Path | None = None,
) -> tuple[str, str]:
    """
    Execute command with arguments asynchronously.

    Args:
        command: Command to execute
        *args: Command arguments
        env: Extra environment variables, merged over the current environment
        cwd: Working directory

    Returns:
        (stdout, stderr) decoded as text

    Raises:
        BackendExecutionError: If the command cannot be spawned or exits non-zero
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            env={**os.environ, **env} if env else None,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise BackendExecutionError(
            format_command(command, *args), stderr=str(e)
        ) from e

    stdout, stderr = await process.communicate()
    if stdout is None:  # type: ignore
        stdout = b""
    if stderr is None:  # type: ignore
        stderr = b""

    stdout_text = stdout.decode(errors="replace")
    stderr_text = stderr.decode(errors="replace")
    if process.returncode != 0:
        raise BackendExecutionError(
            format_command(command, *args),
            returncode=process.returncode,
            stdout=stdout_text,
            stderr=stderr_text,
        )
    return stdout_text, stderr_text


async def spawn_command(
    command: str,
    *args: str,
    cwd: str | Path | None = None,
    stdin: bool = False,
) -> asyncio.subprocess.Process:
    """
    Spawn a long-running command with piped output.

    Raises:
        BackendExecutionError: If the executable cannot be spawned
    """
    try:
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise BackendExecutionError(
            format_command(command, *args), stderr=str(e)
        ) from e
