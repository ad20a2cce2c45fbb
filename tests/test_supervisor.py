"""
Tests for the tunnel supervisor state machine.

Tests:
  - start: cold start, idempotent second start, stale record, port conflict,
    gateway forward selection, readiness timeout rollback, early child exit,
    concurrent starts, launch and state directory failures
  - stop: idempotent on a stopped tunnel, graceful, SIGKILL escalation,
    signal failures
  - status / restart round trips
"""
import tempfile
import threading
import time
import unittest
from pathlib import Path

from tests.fakes import FakeLauncher, FakeProbe


def _no_sleep(_seconds):
    pass


class SlowSpawnLauncher(FakeLauncher):
    """Widens the window between the liveness check and the PID file write."""

    def spawn(self, argv, log_file):
        time.sleep(0.05)
        return super().spawn(argv, log_file)


class SupervisorTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.state_dir = Path(self.tmpdir.name) / "state"
        self.probe = FakeProbe()
        self.launcher = FakeLauncher(self.probe)

    def tearDown(self):
        self.tmpdir.cleanup()

    def make_config(self, **kw):
        from octunnel.config import TunnelConfig
        params = dict(
            local_port=8080,
            remote_port=3000,
            bind_host="127.0.0.1",
            state_dir=self.state_dir,
            ssh_target="me@bastion",
            key_path="/keys/id_ed25519",
            gateway_port=18789,
        )
        params.update(kw)
        return TunnelConfig(**params)

    def make_supervisor(self, config=None, launcher=None):
        from octunnel.core.supervisor import Supervisor
        from octunnel.utils.retry import WaitPolicy
        return Supervisor(
            config or self.make_config(),
            launcher=launcher or self.launcher,
            probe=self.probe,
            ready_policy=WaitPolicy(attempts=3, interval=0),
            shutdown_policy=WaitPolicy(attempts=3, interval=0),
            sleep=_no_sleep,
        )

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "tunnel.pid"

    def read_pid(self) -> int:
        return int(self.pid_file.read_text().strip())


# ── start ────────────────────────────────────────────────────────────────────

class TestStart(SupervisorTestCase):

    def test_cold_start(self):
        """start() launches ssh, records its PID and reports Running."""
        sup = self.make_supervisor()
        result = sup.start()
        self.assertFalse(result.already_running)
        self.assertEqual(self.read_pid(), result.pid)
        self.assertTrue(self.launcher.is_alive(result.pid))
        self.assertTrue(sup.status().running)
        self.assertEqual(result.message, f"Tunnel started (PID {result.pid}).")

    def test_ssh_command_line(self):
        """The launched command forwards the local and gateway ports."""
        sup = self.make_supervisor()
        sup.start()
        argv = self.launcher.spawned[0]
        self.assertEqual(argv[:4], ["ssh", "-i", "/keys/id_ed25519", "-N"])
        self.assertIn("8080:127.0.0.1:3000", argv)
        self.assertIn("18789:127.0.0.1:18789", argv)
        self.assertIn("ExitOnForwardFailure=yes", argv)
        self.assertEqual(argv[-1], "me@bastion")

    def test_start_twice_is_noop(self):
        """A second start() reports the existing PID and spawns nothing."""
        sup = self.make_supervisor()
        first = sup.start()
        second = sup.start()
        self.assertTrue(second.already_running)
        self.assertEqual(first.pid, second.pid)
        self.assertEqual(len(self.launcher.spawned), 1)
        self.assertEqual(self.read_pid(), first.pid)

    def test_gateway_forward_skipped_when_port_busy(self):
        """An occupied gateway port is reported and left out of the forward."""
        self.probe.open_ports.add(18789)
        sup = self.make_supervisor()
        result = sup.start()
        self.assertNotIn("18789:127.0.0.1:18789", self.launcher.spawned[0])
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("18789", result.warnings[0])

    def test_no_gateway_configured(self):
        """With the gateway disabled only one -L forward is requested."""
        sup = self.make_supervisor(self.make_config(gateway_port=None))
        sup.start()
        self.assertEqual(self.launcher.spawned[0].count("-L"), 1)

    def test_missing_host_fails_before_side_effects(self):
        """Without HOST, start() raises ConfigurationError and creates nothing."""
        from octunnel.exceptions import ConfigurationError
        sup = self.make_supervisor(self.make_config(ssh_target=None))
        with self.assertRaises(ConfigurationError) as ctx:
            sup.start()
        self.assertIn("HOST", ctx.exception.missing)
        self.assertEqual(self.launcher.spawned, [])
        self.assertFalse(self.state_dir.exists())

    def test_missing_key_path(self):
        """KEY_PATH is required too."""
        from octunnel.exceptions import ConfigurationError
        sup = self.make_supervisor(self.make_config(key_path=None))
        with self.assertRaises(ConfigurationError) as ctx:
            sup.start()
        self.assertEqual(ctx.exception.missing, ["KEY_PATH"])

    def test_port_conflict(self):
        """A busy local port aborts start() without launching or recording."""
        from octunnel.exceptions import PortConflictError
        self.probe.open_ports.add(8080)
        sup = self.make_supervisor()
        with self.assertRaises(PortConflictError) as ctx:
            sup.start()
        self.assertEqual(ctx.exception.port, 8080)
        self.assertEqual(self.launcher.spawned, [])
        self.assertFalse(self.pid_file.exists())

    def test_readiness_timeout_rolls_back(self):
        """A tunnel that never answers is killed and its record removed."""
        from octunnel.exceptions import StartupTimeoutError
        launcher = FakeLauncher(self.probe, never_ready=True)
        sup = self.make_supervisor(launcher=launcher)
        with self.assertRaises(StartupTimeoutError) as ctx:
            sup.start()
        pid = launcher.next_pid - 1
        self.assertFalse(launcher.is_alive(pid))
        self.assertIn((pid, "TERM"), launcher.signals)
        self.assertFalse(self.pid_file.exists())
        self.assertIn("tunnel.log", str(ctx.exception))
        self.assertFalse(sup.status().running)

    def test_child_exit_during_startup(self):
        """If ssh exits before the port opens, start() fails without waiting out the budget."""
        from octunnel.exceptions import StartupTimeoutError
        launcher = FakeLauncher(self.probe, exits_immediately=True)
        sup = self.make_supervisor(launcher=launcher)
        with self.assertRaises(StartupTimeoutError) as ctx:
            sup.start()
        self.assertIn("exited", str(ctx.exception))
        self.assertFalse(self.pid_file.exists())

    def test_stale_record_is_replaced(self):
        """A PID file naming a dead process is overwritten by a cold start."""
        self.state_dir.mkdir(parents=True)
        self.pid_file.write_text("12345\n")
        sup = self.make_supervisor()
        self.assertFalse(sup.status().running)
        result = sup.start()
        self.assertFalse(result.already_running)
        self.assertEqual(self.read_pid(), result.pid)
        self.assertNotEqual(result.pid, 12345)

    def test_concurrent_starts_launch_once(self):
        """Two start() calls racing on one state dir produce a single tunnel."""
        launcher = SlowSpawnLauncher(self.probe)
        barrier = threading.Barrier(2)
        results = []

        def run():
            sup = self.make_supervisor(launcher=launcher)
            barrier.wait()
            results.append(sup.start())

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        self.assertEqual(len(results), 2)
        self.assertEqual(len(launcher.spawned), 1)
        self.assertEqual(sorted(r.already_running for r in results), [False, True])
        self.assertEqual({r.pid for r in results}, {self.read_pid()})

    def test_spawn_failure(self):
        """A missing ssh binary surfaces as LaunchError and leaves no record."""
        from octunnel.exceptions import LaunchError, TunnelError
        launcher = FakeLauncher(self.probe, spawn_error=FileNotFoundError("ssh"))
        sup = self.make_supervisor(launcher=launcher)
        with self.assertRaises(LaunchError) as ctx:
            sup.start()
        self.assertIsInstance(ctx.exception, TunnelError)
        self.assertIn("ssh", str(ctx.exception))
        self.assertFalse(self.pid_file.exists())

    def test_unusable_state_dir(self):
        """A state dir that cannot be created raises StateError, not OSError."""
        from octunnel.exceptions import StateError
        blocker = Path(self.tmpdir.name) / "blocker"
        blocker.write_text("x")
        sup = self.make_supervisor(self.make_config(state_dir=blocker / "state"))
        with self.assertRaises(StateError):
            sup.start()
        self.assertEqual(self.launcher.spawned, [])


# ── stop ─────────────────────────────────────────────────────────────────────

class TestStop(SupervisorTestCase):

    def test_stop_when_stopped(self):
        """stop() on a stopped tunnel succeeds and leaves no PID file."""
        sup = self.make_supervisor()
        result = sup.stop()
        self.assertFalse(result.was_running)
        self.assertEqual(result.message, "Tunnel is not running.")
        self.assertFalse(self.pid_file.exists())
        # twice in a row
        self.assertFalse(sup.stop().was_running)

    def test_stop_clears_stale_and_empty_records(self):
        """Empty, garbage and dead-PID records are all treated as stopped."""
        sup = self.make_supervisor()
        self.state_dir.mkdir(parents=True)
        for content in ("", "not-a-pid\n", "777\n"):
            self.pid_file.write_text(content)
            result = sup.stop()
            self.assertFalse(result.was_running)
            self.assertFalse(self.pid_file.exists(), content)

    def test_graceful_stop(self):
        """A running tunnel stops on SIGTERM alone."""
        sup = self.make_supervisor()
        pid = sup.start().pid
        result = sup.stop()
        self.assertTrue(result.was_running)
        self.assertFalse(result.forced)
        self.assertEqual(result.message, "Tunnel stopped.")
        self.assertEqual(self.launcher.signals, [(pid, "TERM")])
        self.assertFalse(self.pid_file.exists())

    def test_escalates_to_kill(self):
        """A process ignoring SIGTERM is killed and the tunnel still ends Stopped."""
        launcher = FakeLauncher(self.probe, ignore_term=True)
        sup = self.make_supervisor(launcher=launcher)
        pid = sup.start().pid
        result = sup.stop()
        self.assertTrue(result.forced)
        self.assertEqual(result.message, "Tunnel force-stopped.")
        self.assertEqual(launcher.signals, [(pid, "TERM"), (pid, "KILL")])
        self.assertFalse(launcher.is_alive(pid))
        self.assertFalse(self.pid_file.exists())

    def test_signal_failure_is_not_fatal(self):
        """A process that vanishes before SIGTERM still yields a clean stop."""
        sup = self.make_supervisor()
        pid = sup.start().pid

        original = self.launcher.terminate

        def vanish_then_signal(target):
            self.launcher.alive.discard(target)
            original(target)

        self.launcher.terminate = vanish_then_signal
        result = sup.stop()
        self.assertTrue(result.was_running)
        self.assertEqual(result.pid, pid)
        self.assertFalse(self.pid_file.exists())


# ── status / restart ─────────────────────────────────────────────────────────

class TestStatusAndRestart(SupervisorTestCase):

    def test_round_trip(self):
        """start → status reports the same PID; stop → status reports Stopped."""
        sup = self.make_supervisor()
        pid = sup.start().pid
        report = sup.status()
        self.assertTrue(report.running)
        self.assertEqual(report.pid, pid)
        self.assertIn(f"PID {pid}", report.message)
        self.assertIn("localhost:8080 -> 127.0.0.1:3000 via me@bastion", report.message)
        sup.stop()
        report = sup.status()
        self.assertFalse(report.running)
        self.assertTrue(report.message.startswith("Tunnel stopped."))

    def test_status_does_not_touch_state(self):
        """status() leaves even a stale PID file in place."""
        self.state_dir.mkdir(parents=True)
        self.pid_file.write_text("999\n")
        sup = self.make_supervisor()
        self.assertFalse(sup.status().running)
        self.assertTrue(self.pid_file.exists())

    def test_status_reports_ports_independently(self):
        """Port reachability is shown even when no tunnel process is alive."""
        self.probe.open_ports.update({8080, 18789})
        report = self.make_supervisor().status()
        self.assertFalse(report.running)
        self.assertTrue(report.dashboard_ok)
        self.assertTrue(report.gateway_ok)
        self.assertIn("Dashboard ✓", report.message)
        self.assertIn("Gateway ✓", report.message)

    def test_status_without_gateway(self):
        """With no gateway port the gateway column is omitted."""
        sup = self.make_supervisor(self.make_config(gateway_port=None))
        report = sup.status()
        self.assertIsNone(report.gateway_ok)
        self.assertNotIn("Gateway", report.message)
        self.assertIn("Dashboard ✗", report.message)

    def test_restart_replaces_process(self):
        """restart() stops the old process and records a new one."""
        sup = self.make_supervisor()
        old = sup.start().pid
        new = sup.restart().pid
        self.assertNotEqual(old, new)
        self.assertFalse(self.launcher.is_alive(old))
        self.assertEqual(self.read_pid(), new)

    def test_restart_from_stopped(self):
        """restart() on a stopped tunnel is a plain start."""
        sup = self.make_supervisor()
        result = sup.restart()
        self.assertFalse(result.already_running)
        self.assertEqual(self.read_pid(), result.pid)

    def test_restart_requires_config(self):
        """restart() checks configuration before stopping anything."""
        from octunnel.exceptions import ConfigurationError
        sup = self.make_supervisor()
        pid = sup.start().pid
        broken = self.make_supervisor(self.make_config(ssh_target=None))
        with self.assertRaises(ConfigurationError):
            broken.restart()
        self.assertTrue(self.launcher.is_alive(pid))


if __name__ == "__main__":
    unittest.main()
