"""Lifecycle coordinator: waits for a player, starts the server and stops it when idle."""

import asyncio
import logging
import signal
import time
from enum import Enum
from typing import Optional, Dict, Any, Callable, List, Tuple

import sdnotify

from .config_manager import RunConfig
from .errors import (AuthError, BindError, ProcessExitError, ProtocolError, RconError,
                     SpawnError, UnreachableError)
from .idle_watchdog import IdleWatchdog
from .minecraft_handler import HandshakeListener, LoginAttempt
from .process_supervisor import ProcessHandle, ProcessSupervisor
from .rcon_client import RconClient


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class ActivationState(Enum):
    """Server lifecycle states."""
    IDLE = "idle"            # Listening, no server desired
    STARTING = "starting"    # Process spawned, RCON not reachable yet
    ACTIVE = "active"        # RCON reachable, polling occupancy
    STOPPING = "stopping"    # Stop command issued
    STOPPED = "stopped"      # Terminal


class ActivationController:
    """Central coordinator for the listener, the server process and the idle watchdog."""

    def __init__(self, config: RunConfig,
                 supervisor: Optional[ProcessSupervisor] = None,
                 client_factory: Callable[..., RconClient] = RconClient,
                 notifier: Optional[Any] = None):
        self.config = config
        self.supervisor = supervisor or ProcessSupervisor()
        self.client_factory = client_factory
        self.notifier = notifier if notifier is not None else sdnotify.SystemdNotifier()

        # Components of the current cycle
        self.listener: Optional[HandshakeListener] = None
        self.watchdog: Optional[IdleWatchdog] = None
        self.process: Optional[ProcessHandle] = None
        self.last_login: Optional[LoginAttempt] = None

        # State management
        self.current_state = ActivationState.IDLE
        self.state_change_time = time.time()
        self.failure: Optional[Tuple[str, Exception]] = None

        # Control
        self.is_running = False
        self.shutdown_event = asyncio.Event()
        self._ready_notified = False

        # Statistics
        self.stats = {
            "start_time": time.time(),
            "activations": 0,
            "status_pings": 0,
            "login_attempts": 0,
            "dropped_connections": 0,
            "state_transitions": 0,
            "last_activation_time": None,
            "last_exit_code": None
        }

        self.state_change_callbacks: List[Callable] = []

    async def run(self) -> int:
        """Run until the server has been stopped; returns the process exit code."""
        if self.is_running:
            raise RuntimeError("Controller is already running")

        self.is_running = True
        try:
            while True:
                exit_code = await self._run_cycle()
                if (exit_code != EXIT_OK or self.shutdown_event.is_set()
                        or not self.config.relisten_after_stop):
                    return exit_code

                logger.info("Server stopped. Restarting listener for next connection...")
                self.process = None
                self.watchdog = None
                await self._transition_to_state(ActivationState.IDLE)
        finally:
            self.is_running = False
            self._notify("STOPPING=1")

    async def _run_cycle(self) -> int:
        """One pass through Idle -> Starting -> Active -> Stopping -> Stopped."""
        try:
            attempt = await self._wait_for_login()
            if attempt is None:
                logger.info("Shutdown requested while waiting for a player")
                await self._transition_to_state(ActivationState.STOPPED)
                return EXIT_OK

            await self._transition_to_state(ActivationState.STARTING)
            self.process = await self.supervisor.spawn(self.config.command, self.config.args)
        except BindError as e:
            return await self._fail("bind", e)
        except SpawnError as e:
            return await self._fail("spawn", e)

        return await self._supervise()

    async def _wait_for_login(self) -> Optional[LoginAttempt]:
        """Listen until the first genuine login, or None if shutdown was requested."""
        self.listener = HandshakeListener(self.config)
        await self.listener.start()

        if not self._ready_notified:
            self._notify("READY=1")
            self._ready_notified = True

        login_task = asyncio.create_task(self.listener.wait_for_login())
        shutdown_task = asyncio.create_task(self.shutdown_event.wait())
        try:
            await asyncio.wait({login_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (login_task, shutdown_task):
                task.cancel()
            await asyncio.gather(login_task, shutdown_task, return_exceptions=True)
            await self.listener.close()
            for key in ("status_pings", "login_attempts", "dropped_connections"):
                self.stats[key] += self.listener.stats[key]

        if login_task.cancelled() or login_task.exception() is not None:
            return None

        self.last_login = login_task.result()
        self.stats["activations"] += 1
        self.stats["last_activation_time"] = time.time()
        return self.last_login

    async def _supervise(self) -> int:
        """Run the watchdog and the process exit wait side by side."""
        self.watchdog = IdleWatchdog(
            self.config,
            self.supervisor,
            self.process,
            client_factory=self.client_factory,
            on_active=self._on_server_active
        )

        watchdog_task = asyncio.create_task(self.watchdog.run())
        exit_task = asyncio.create_task(self.supervisor.wait_for_exit(self.process))
        shutdown_task = asyncio.create_task(self.shutdown_event.wait())
        tasks = (watchdog_task, exit_task, shutdown_task)

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if watchdog_task.done() and not watchdog_task.cancelled():
            error = watchdog_task.exception()
            if error is None:
                return await self._stop_server()
            return await self._handle_watchdog_error(error)

        if exit_task.done() and not exit_task.cancelled():
            await self.watchdog.close()
            return await self._fail("process", ProcessExitError(exit_task.result()))

        logger.info("Shutdown requested, stopping server")
        # The poll may have been cancelled mid-exchange; start the stop on a clean session
        await self.watchdog.close()
        return await self._stop_server()

    async def _handle_watchdog_error(self, error: BaseException) -> int:
        await self.watchdog.close()

        if isinstance(error, ProcessExitError):
            return await self._fail("process", error)
        if isinstance(error, AuthError):
            return await self._fail("auth", error)
        if isinstance(error, UnreachableError):
            stage = "poll" if self.watchdog.is_active else "startup"
            return await self._fail(stage, error)

        await self._fail("poll", error)
        raise error

    async def _stop_server(self) -> int:
        """Stop the server over RCON, falling back to terminating the process."""
        await self._transition_to_state(ActivationState.STOPPING)

        if self.watchdog.is_active:
            try:
                await self.watchdog.send_stop()
            except (RconError, ProtocolError) as e:
                logger.warning(f"RCON stop command failed: {e}")

            returncode = await self.supervisor.wait_for_exit(self.process, self.config.stop_grace_secs)
            if returncode is None:
                logger.warning(f"Server still running {self.config.stop_grace_secs}s after stop, terminating")
                returncode = await self.supervisor.request_stop_then_wait(
                    self.process, self.config.stop_grace_secs
                )
        else:
            await self.watchdog.close()
            returncode = await self.supervisor.request_stop_then_wait(
                self.process, self.config.stop_grace_secs
            )

        self.stats["last_exit_code"] = returncode
        await self._transition_to_state(ActivationState.STOPPED)
        return EXIT_OK

    async def _fail(self, stage: str, error: BaseException) -> int:
        """Record a fatal error, make sure the server is gone and end in Stopped."""
        self.failure = (stage, error)
        logger.error(f"Fatal error during {stage}: {error}")

        if self.process is not None:
            if self.supervisor.is_running(self.process):
                await self.supervisor.request_stop_then_wait(self.process, self.config.stop_grace_secs)
            self.stats["last_exit_code"] = self.process.returncode

        await self._transition_to_state(ActivationState.STOPPED)
        return EXIT_FAILURE

    async def _on_server_active(self) -> None:
        await self._transition_to_state(ActivationState.ACTIVE)

    async def _transition_to_state(self, new_state: ActivationState) -> None:
        """Transition to a new lifecycle state."""
        if new_state == self.current_state:
            return

        old_state = self.current_state
        logger.info(f"State transition: {old_state.value} -> {new_state.value}")

        self.current_state = new_state
        self.state_change_time = time.time()
        self.stats["state_transitions"] += 1
        self._notify(f"STATUS=Server {new_state.value}")

        for callback in self.state_change_callbacks:
            try:
                await callback(old_state, new_state)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    def _notify(self, message: str) -> None:
        self.notifier.notify(message)

    def request_shutdown(self) -> None:
        """Ask the run to finish: stop listening, or stop the server if it is up."""
        self.shutdown_event.set()

    def install_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signame):
            logger.info(f"Received {signame}, initiating shutdown...")
            self.request_shutdown()

        for signame in ['SIGTERM', 'SIGINT']:
            if not hasattr(signal, signame):
                continue
            try:
                loop.add_signal_handler(getattr(signal, signame), signal_handler, signame)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    getattr(signal, signame),
                    lambda s, f, name=signame: loop.call_soon_threadsafe(signal_handler, name)
                )

    def add_state_change_callback(self, callback: Callable) -> None:
        """Add a callback for state changes."""
        self.state_change_callbacks.append(callback)

    def get_status(self) -> Dict[str, Any]:
        """Get current lifecycle status."""
        current_time = time.time()
        return {
            "state": self.current_state.value,
            "state_change_time": self.state_change_time,
            "time_in_current_state": current_time - self.state_change_time,
            "is_running": self.is_running,
            "listening": self.listener.is_listening if self.listener else False,
            "server_pid": self.process.pid if self.process else None,
            "server_running": self.supervisor.is_running(self.process) if self.process else False,
            "player_count": self.watchdog.last_player_count if self.watchdog else None,
            "players": list(self.watchdog.players) if self.watchdog else [],
            "idle_seconds": self.watchdog.idle_seconds() if self.watchdog else None,
            "last_login": self.last_login.player_name if self.last_login else None,
            "failure": f"{self.failure[0]}: {self.failure[1]}" if self.failure else None,
            "statistics": self.stats,
            "listener_stats": self.listener.stats if self.listener else {},
            "watchdog_stats": self.watchdog.stats if self.watchdog else {}
        }

    def get_config_info(self) -> Dict[str, Any]:
        """Get configuration information."""
        return {
            "listen": f"{self.config.host}:{self.config.port}",
            "command": [self.config.command, *self.config.args],
            "rcon": f"{self.config.rcon_host}:{self.config.rcon_port}",
            "poll_interval_seconds": self.config.poll_interval_secs,
            "idle_timeout_seconds": self.config.idle_timeout_secs,
            "relisten_after_stop": self.config.relisten_after_stop
        }
