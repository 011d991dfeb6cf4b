"""
Process Runner for Spindle Services

Async subprocess execution with captured output and a hard timeout.
Engine binaries and client tools are always invoked through run_command.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..errors import ProcessError

logger = logging.getLogger("spindle")


@dataclass
class CommandResult:
    """Outcome of a finished (or killed) subprocess."""
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return " ".join(str(part) for part in self.command)

    def check(self, description: Optional[str] = None) -> "CommandResult":
        """Raise ProcessError unless the command exited cleanly."""
        if not self.success:
            message = None
            if description:
                detail = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
                message = f"{description}: {detail}"
            raise ProcessError(self.command_line, self.returncode, self.stderr, message=message)
        return self


async def run_command(
    cmd: list[Union[str, Path]],
    timeout: float = 60.0,
    input_data: Optional[bytes] = None,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Union[str, Path]] = None,
    stdout_path: Optional[Union[str, Path]] = None,
) -> CommandResult:
    """
    Run a command with asyncio subprocess.

    Args:
        cmd: Program and arguments
        timeout: Seconds before the process is killed
        input_data: Bytes written to the process stdin
        env: Full environment for the child (inherits when None)
        cwd: Working directory
        stdout_path: Stream stdout to this file instead of capturing it

    Returns:
        CommandResult. A missing executable yields returncode 127 and a
        timeout yields returncode -1 with timed_out set.
    """
    args = [str(part) for part in cmd]
    logger.debug(f"Running: {' '.join(args)}")

    stdout_file = open(stdout_path, "wb") if stdout_path else None
    try:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=stdout_file if stdout_file else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError as e:
            logger.error(f"Command not found: {args[0]}")
            return CommandResult(args, 127, "", str(e))
        except PermissionError as e:
            logger.error(f"Command not executable: {args[0]}")
            return CommandResult(args, 126, "", str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input_data),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Command timeout after {timeout}s: {' '.join(args)}")
            await _kill(proc)
            return CommandResult(args, -1, "", f"Command timeout after {timeout}s", timed_out=True)

        stdout = (stdout_bytes or b"").decode(errors="replace").strip()
        stderr = (stderr_bytes or b"").decode(errors="replace").strip()
        result = CommandResult(args, proc.returncode, stdout, stderr)

        if not result.success:
            logger.debug(f"Command exited {proc.returncode}: {' '.join(args)}\nstderr: {stderr}")

        return result
    finally:
        if stdout_file:
            stdout_file.close()


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a child process and reap it."""
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} did not exit after kill")
