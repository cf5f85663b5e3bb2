#!/usr/bin/env python3
"""Tests for launching and supervising the server process."""

import sys
import unittest

from servernap.errors import SpawnError
from servernap.process_supervisor import ProcessSupervisor, build_command_line


SLEEPER = "import time; time.sleep(30)"


class TestBuildCommandLine(unittest.TestCase):
    """Test platform-specific argument vectors."""

    def test_posix_runs_directly(self):
        """Test the command and arguments are used as given."""
        argv = build_command_line("java", ["-Xmx4G", "-jar", "server.jar", "nogui"], "linux")
        self.assertEqual(argv, ["java", "-Xmx4G", "-jar", "server.jar", "nogui"])

    def test_windows_opens_own_window(self):
        """Test Windows launches through start /WAIT in a new console."""
        argv = build_command_line("start.bat", ["nogui"], "win32")
        self.assertEqual(argv, ["cmd", "/C", "start", "", "/WAIT", "start.bat", "nogui"])


class TestProcessSupervisor(unittest.IsolatedAsyncioTestCase):
    """Test spawning and stopping real child processes."""

    async def asyncSetUp(self):
        self.supervisor = ProcessSupervisor(platform="linux")

    async def test_exit_code_is_reported(self):
        """Test wait_for_exit returns the child's exit status."""
        handle = await self.supervisor.spawn(sys.executable, ["-c", "import sys; sys.exit(3)"])
        self.assertEqual(await self.supervisor.wait_for_exit(handle, timeout=10), 3)
        self.assertFalse(self.supervisor.is_running(handle))
        self.assertEqual(handle.returncode, 3)

    async def test_wait_times_out(self):
        """Test wait_for_exit returns None while the child keeps running."""
        handle = await self.supervisor.spawn(sys.executable, ["-c", SLEEPER])
        try:
            self.assertIsNone(await self.supervisor.wait_for_exit(handle, timeout=0.1))
            self.assertTrue(self.supervisor.is_running(handle))
        finally:
            await self.supervisor.request_stop_then_wait(handle, timeout=5)

    async def test_request_stop_then_wait(self):
        """Test a running child is terminated and reaped."""
        handle = await self.supervisor.spawn(sys.executable, ["-c", SLEEPER])
        self.assertIsNotNone(handle.pid)

        returncode = await self.supervisor.request_stop_then_wait(handle, timeout=5)

        self.assertIsNotNone(returncode)
        self.assertFalse(self.supervisor.is_running(handle))

    @unittest.skipIf(sys.platform == "win32", "SIGTERM cannot be ignored on Windows")
    async def test_kill_after_ignored_terminate(self):
        """Test a child ignoring SIGTERM is killed once the timeout passes."""
        script = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "time.sleep(30)\n"
        )
        handle = await self.supervisor.spawn(sys.executable, ["-c", script])
        # Give the interpreter a moment to install the handler
        await self.supervisor.wait_for_exit(handle, timeout=1)

        returncode = await self.supervisor.request_stop_then_wait(handle, timeout=0.5)

        self.assertEqual(returncode, -9)

    async def test_stop_already_exited(self):
        """Test stopping an exited child just returns its exit status."""
        handle = await self.supervisor.spawn(sys.executable, ["-c", "pass"])
        await self.supervisor.wait_for_exit(handle)
        self.assertEqual(await self.supervisor.request_stop_then_wait(handle), 0)

    async def test_missing_command(self):
        """Test a command that does not exist raises SpawnError."""
        with self.assertRaises(SpawnError):
            await self.supervisor.spawn("/nonexistent/servernap-test-command")


if __name__ == '__main__':
    unittest.main()
