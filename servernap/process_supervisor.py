"""Launching and supervising the game server process."""

import asyncio
import logging
import sys
from typing import List, Optional, Sequence

from .errors import SpawnError


logger = logging.getLogger(__name__)


def build_command_line(command: str, args: Sequence[str], platform: str = sys.platform) -> List[str]:
    """
    Build the argument vector used to launch the server.

    On Windows the server is opened in its own console window so its log
    stays visible; ``start /WAIT`` keeps the spawned ``cmd`` alive until
    that window closes. Elsewhere the command runs directly on our stdio.
    """
    if platform == "win32":
        return ["cmd", "/C", "start", "", "/WAIT", command, *args]
    return [command, *args]


class ProcessHandle:
    """Opaque handle to a spawned server process."""

    def __init__(self, process: asyncio.subprocess.Process, argv: Sequence[str]):
        self._process = process
        self.argv = tuple(argv)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} returncode={self.returncode}>"


class ProcessSupervisor:
    """Owns the server child process: spawn, liveness, exit and forced stop."""

    def __init__(self, platform: str = sys.platform):
        self.platform = platform

    async def spawn(self, command: str, args: Sequence[str] = ()) -> ProcessHandle:
        """Launch the server command exactly as configured."""
        argv = build_command_line(command, args, self.platform)
        try:
            process = await asyncio.create_subprocess_exec(*argv)
        except (OSError, ValueError) as e:
            raise SpawnError(f"Failed to launch {command}: {e}") from e

        logger.info(f"Launched server (pid {process.pid}): {' '.join(argv)}")
        return ProcessHandle(process, argv)

    def is_running(self, handle: ProcessHandle) -> bool:
        """Whether the process has not been reaped yet."""
        return handle.returncode is None

    async def wait_for_exit(self, handle: ProcessHandle,
                            timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait for the process to terminate.

        Returns the exit code, or None if the timeout elapsed first.
        """
        try:
            returncode = await asyncio.wait_for(asyncio.shield(handle._process.wait()), timeout)
        except asyncio.TimeoutError:
            return None
        logger.info(f"Server process {handle.pid} exited with code {returncode}")
        return returncode

    async def request_stop_then_wait(self, handle: ProcessHandle, timeout: float = 10.0) -> int:
        """Terminate the process, killing it if it ignores the request."""
        if not self.is_running(handle):
            return handle.returncode

        logger.warning(f"Terminating server process {handle.pid}")
        try:
            handle._process.terminate()
        except ProcessLookupError:
            pass

        returncode = await self.wait_for_exit(handle, timeout)
        if returncode is None:
            logger.warning(f"Server process {handle.pid} ignored terminate, killing it")
            try:
                handle._process.kill()
            except ProcessLookupError:
                pass
            returncode = await self.wait_for_exit(handle)
        return returncode
