"""Process/command gateway.

Every external utility is launched here, from an argument vector, with an
explicit timeout. No shell is ever involved, so artifact names and paths
containing metacharacters are passed through verbatim.
"""

import asyncio
import logging
import os
import time
from typing import Dict, Optional, Sequence

from pydantic import BaseModel

from .exceptions import (
    CommandCancelledError,
    CommandNotFoundError,
    CommandPermissionError,
    CommandTimeoutError,
)
from .tool_manager import ToolManager

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class CommandResult(BaseModel):
    argv: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CancellationToken:
    """Cooperative cancellation flag shared by an orchestrator and its gateway."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class CommandGateway:
    """Runs OS utilities and returns exit code, stdout and stderr."""

    def __init__(
        self,
        tool_manager: Optional[ToolManager] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.tool_manager = tool_manager or ToolManager()
        self.default_timeout = default_timeout

    async def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """Execute ``argv`` and wait for it, at most ``timeout`` seconds.

        Raises:
            CommandNotFoundError: argv[0] cannot be resolved.
            CommandPermissionError: the OS refused to start it.
            CommandTimeoutError: it ran past the timeout (and was killed).
            CommandCancelledError: the token fired first (and it was killed).
        """
        if isinstance(argv, str):
            raise TypeError("argv must be a sequence of arguments, not a string")
        argv = [str(a) for a in argv]
        if not argv:
            raise ValueError("argv must not be empty")
        timeout = self.default_timeout if timeout is None else timeout

        exe = self.tool_manager.resolve(argv[0])
        if exe is None:
            raise CommandNotFoundError(f"{argv[0]} is not installed or not on PATH", argv)

        child_env = None
        if env:
            child_env = {**os.environ, **env}

        logger.debug(f"Running: {argv}")
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                exe,
                *argv[1:],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=child_env,
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(f"{argv[0]}: {e}", argv) from e
        except PermissionError as e:
            raise CommandPermissionError(f"{argv[0]}: permission denied", argv) from e

        communicate = asyncio.ensure_future(process.communicate())
        waiters = {communicate}
        cancel_wait = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                if cancel_wait is not None and cancel_wait in done:
                    raise CommandCancelledError(
                        f"{argv[0]} cancelled: {cancel_token.reason}", argv
                    )
                raise CommandTimeoutError(
                    f"{argv[0]} timed out after {timeout}s", argv, timeout
                )
            stdout_bytes, stderr_bytes = communicate.result()
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()
            await self._reap(process, communicate)

        result = CommandResult(
            argv=argv,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - started,
        )
        logger.debug(f"{argv[0]} exited with code {result.exit_code}")
        return result

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
        """Kill the child if it is still running and always wait for it."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        if not communicate.done():
            communicate.cancel()
            try:
                await communicate
            except asyncio.CancelledError:
                pass
        await process.wait()
