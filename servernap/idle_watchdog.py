"""RCON-driven occupancy polling and idle shutdown detection."""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, List, Optional, Tuple

from .config_manager import RunConfig
from .errors import ProcessExitError, ProtocolError, UnreachableError
from .process_supervisor import ProcessHandle, ProcessSupervisor
from .rcon_client import RconClient
from .utils import format_duration


logger = logging.getLogger(__name__)

FORMATTING_CODE = re.compile(r"§.")
PLAYER_LIST_PATTERNS = [
    # Vanilla: "There are 1 of a max of 20 players online: Steve"
    re.compile(r"There are (\d+) of a max(?: of)? (\d+) players online:?(.*)", re.DOTALL),
    # Bukkit and derivatives: "There are 1/20 players online:"
    re.compile(r"There are (\d+)/(\d+) players online:?(.*)", re.DOTALL),
]


def parse_player_list(response: str) -> Tuple[int, List[str]]:
    """Extract the player count and names from a ``list`` command response."""
    text = FORMATTING_CODE.sub("", response).strip()

    for pattern in PLAYER_LIST_PATTERNS:
        match = pattern.search(text)
        if match:
            count = int(match.group(1))
            names = [name.strip() for name in match.group(3).split(",") if name.strip()]
            return count, names

    raise ProtocolError(f"Unrecognised player list response: {response!r}")


class IdleWindow:
    """Tracks the last moment the server was known to be occupied."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.last_occupied = clock()

    def mark_occupied(self) -> None:
        self.last_occupied = self._clock()

    # The server having just started counts as occupancy
    reset = mark_occupied

    def idle_seconds(self) -> float:
        return self._clock() - self.last_occupied


class IdleWatchdog:
    """
    Polls player occupancy over RCON until the server has been empty for
    the idle timeout.

    The watchdog exclusively owns its RCON session; it is opened once the
    server answers and reused for every poll until ``send_stop`` or
    ``close``.
    """

    def __init__(self, config: RunConfig, supervisor: ProcessSupervisor, handle: ProcessHandle,
                 client_factory: Callable[..., RconClient] = RconClient,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 on_active: Optional[Callable[[], Awaitable[None]]] = None):
        self.config = config
        self.supervisor = supervisor
        self.handle = handle
        self.client_factory = client_factory
        self.clock = clock
        self.sleep = sleep
        self.on_active = on_active

        self.session: Optional[RconClient] = None
        self.window = IdleWindow(clock)
        self.is_active = False
        self.consecutive_failures = 0
        self.last_player_count: Optional[int] = None
        self.players: List[str] = []

        self.stats = {
            "polls": 0,
            "failed_polls": 0,
            "startup_attempts": 0
        }

    async def run(self) -> None:
        """
        Wait for RCON to come up, then poll until the idle timeout elapses.

        Raises:
            ProcessExitError: the server process died on its own
            AuthError: the RCON password was rejected
            UnreachableError: RCON never came up, or stopped answering
        """
        await self._wait_until_active()
        await self._poll_until_idle()

    async def _wait_until_active(self) -> None:
        """Retry the RCON round-trip every poll interval while the server boots."""
        started = self.clock()
        logger.info(f"Waiting for RCON at {self.config.rcon_host}:{self.config.rcon_port}")

        while True:
            self._check_alive()
            self.stats["startup_attempts"] += 1

            try:
                count = await self._poll()
                break
            except (UnreachableError, ProtocolError) as e:
                await self._drop_session()
                waited = self.clock() - started
                if waited >= self.config.startup_timeout_secs:
                    raise UnreachableError(
                        f"RCON did not become reachable within {format_duration(waited)}: {e}"
                    ) from e
                logger.debug(f"RCON not ready yet ({e}), retrying...")

            await self.sleep(self.config.poll_interval_secs)

        self.is_active = True
        self.window.reset()
        logger.info(f"Successfully connected to RCON at {self.config.rcon_host}:{self.config.rcon_port}")
        if self.on_active:
            await self.on_active()
        self._record(count)

    async def _poll_until_idle(self) -> None:
        logger.info(f"Starting RCON idle watchdog: polling every "
                    f"{format_duration(self.config.poll_interval_secs)}, "
                    f"idle timeout {format_duration(self.config.idle_timeout_secs)}")

        while True:
            await self.sleep(self.config.poll_interval_secs)
            self._check_alive()

            try:
                count = await self._poll()
            except (UnreachableError, ProtocolError) as e:
                await self._drop_session()
                self.consecutive_failures += 1
                self.stats["failed_polls"] += 1
                if self.consecutive_failures >= self.config.max_consecutive_failures:
                    raise UnreachableError(
                        f"RCON poll failed {self.consecutive_failures} times in a row: {e}"
                    ) from e
                logger.warning(f"RCON poll failed ({e}), retrying on next tick")
                continue

            self.consecutive_failures = 0
            if self._record(count):
                return

    def _record(self, count: int) -> bool:
        """Update the idle window; True once the idle timeout has been reached."""
        if count > 0:
            self.window.mark_occupied()
            return False

        idle = self.window.idle_seconds()
        if idle >= self.config.idle_timeout_secs:
            logger.info(f"No players for {format_duration(idle)}, stopping server...")
            return True

        logger.debug(f"No players online for {format_duration(idle)}")
        return False

    async def _poll(self) -> int:
        if self.session is None:
            await self._open_session()

        response = await self.session.command("list")
        count, players = parse_player_list(response)

        self.stats["polls"] += 1
        self.last_player_count = count
        self.players = players
        logger.debug(f"RCON list response: {response}")
        return count

    async def _open_session(self) -> None:
        client = self.client_factory(self.config.rcon_host, self.config.rcon_port,
                                     self.config.rcon_timeout_secs)
        try:
            await client.connect()
            await client.authenticate(self.config.rcon_pass)
        except BaseException:
            await client.close()
            raise
        self.session = client

    async def _drop_session(self) -> None:
        if self.session is not None:
            session, self.session = self.session, None
            await session.close()

    def _check_alive(self) -> None:
        if not self.supervisor.is_running(self.handle):
            raise ProcessExitError(self.handle.returncode)

    async def send_stop(self) -> None:
        """Issue the stop command on the watchdog's session and close it."""
        try:
            if self.session is None:
                await self._open_session()
            response = await self.session.stop_server()
            logger.info(f"Stop command sent{': ' + response if response else ''}")
        finally:
            await self._drop_session()

    async def close(self) -> None:
        """Release the RCON session."""
        await self._drop_session()

    def idle_seconds(self) -> Optional[float]:
        """Seconds since players were last seen, once active."""
        if not self.is_active:
            return None
        return self.window.idle_seconds()
