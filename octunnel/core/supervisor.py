"""
Tunnel lifecycle supervisor

Moves the SSH port-forward between Stopped and Running. There is no
long-lived supervisor process: every call re-reads the PID file, which is
the single source of truth shared by independent invocations.

    Stopped --start--> Starting --ready--> Running
    Starting --timeout--> Stopped          (child killed, PID file removed)
    Running --stop--> Stopping --exit--> Stopped
    Stopping --no exit--> SIGKILL --> Stopped
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import TunnelConfig
from ..exceptions import (
    LaunchError, PortConflictError, ProcessSignalError, StartupTimeoutError,
)
from ..state.pid_store import PidStore, TunnelProcessRecord
from ..utils.logging import vlog, warn
from ..utils.retry import READY_POLICY, SHUTDOWN_POLICY, WaitPolicy, wait_until
from .launcher import ProcessLauncher
from .probe import PortProbe

SSH_BINARY = "ssh"
SSH_OPTIONS = (
    "ExitOnForwardFailure=yes",
    "ServerAliveInterval=60",
    "ServerAliveCountMax=3",
)
# Short confirmation window after SIGKILL.
KILL_CONFIRM_POLICY = WaitPolicy(attempts=5, interval=0.1)


# ── results ──────────────────────────────────────────────────────────────────

@dataclass
class StartResult:
    pid: int
    already_running: bool = False
    warnings: list = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.already_running:
            return f"Tunnel already running (PID {self.pid})."
        return f"Tunnel started (PID {self.pid})."


@dataclass
class StopResult:
    was_running: bool
    pid: Optional[int] = None
    forced: bool = False

    @property
    def message(self) -> str:
        if not self.was_running:
            return "Tunnel is not running."
        if self.forced:
            return "Tunnel force-stopped."
        return "Tunnel stopped."


@dataclass
class StatusReport:
    running: bool
    pid: Optional[int]
    summary: str
    dashboard_ok: bool = False
    gateway_ok: Optional[bool] = None

    @property
    def message(self) -> str:
        if self.running:
            head = f"Tunnel running (PID {self.pid}, {self.summary})."
        else:
            head = "Tunnel stopped."
        return f"{head} {self.ports_line}"

    @property
    def ports_line(self) -> str:
        parts = [f"Dashboard {_mark(self.dashboard_ok)}"]
        if self.gateway_ok is not None:
            parts.append(f"Gateway {_mark(self.gateway_ok)}")
        return "  |  ".join(parts)


def _mark(ok: bool) -> str:
    return "✓" if ok else "✗"


# ── supervisor ───────────────────────────────────────────────────────────────

class Supervisor:
    """Owns at most one SSH forwarding child, tracked through a PID file."""

    def __init__(self, config: TunnelConfig,
                 launcher: Optional[ProcessLauncher] = None,
                 probe: Optional[PortProbe] = None,
                 store: Optional[PidStore] = None,
                 ready_policy: WaitPolicy = READY_POLICY,
                 shutdown_policy: WaitPolicy = SHUTDOWN_POLICY,
                 sleep: Callable[[float], None] = time.sleep,
                 ssh_binary: str = SSH_BINARY):
        self.config = config
        self.launcher = launcher or ProcessLauncher()
        self.probe = probe or PortProbe()
        self.store = store or PidStore(config.pid_file, config.lock_file)
        self.ready_policy = ready_policy
        self.shutdown_policy = shutdown_policy
        self.sleep = sleep
        self.ssh_binary = ssh_binary

    # ── helpers ────────────────────────────────────────────────────────────

    def _live_record(self) -> Optional[TunnelProcessRecord]:
        record = self.store.load()
        if record is not None and self.launcher.is_alive(record.pid):
            return record
        return None

    def build_command(self, with_gateway: bool = False) -> list:
        cfg = self.config
        argv = [
            self.ssh_binary, "-i", str(cfg.key_path), "-N",
            "-L", f"{cfg.local_port}:{cfg.bind_host}:{cfg.remote_port}",
        ]
        if with_gateway and cfg.gateway_port:
            argv += ["-L", f"{cfg.gateway_port}:{cfg.bind_host}:{cfg.gateway_port}"]
        for opt in SSH_OPTIONS:
            argv += ["-o", opt]
        argv.append(str(cfg.ssh_target))
        return argv

    # ── start ──────────────────────────────────────────────────────────────

    def start(self) -> StartResult:
        """
        Launch the tunnel unless one is already alive.

        Raises ConfigurationError (nothing touched), PortConflictError or
        LaunchError (no child left behind), StateError (state directory
        unusable) or StartupTimeoutError (child launched, then rolled back).
        """
        self.config.require()
        with self.store.lock():
            return self._start_locked()

    def _start_locked(self) -> StartResult:
        cfg = self.config
        existing = self._live_record()
        if existing is not None:
            vlog(f"[start] PID {existing.pid} is alive, nothing to do")
            return StartResult(pid=existing.pid, already_running=True)

        if self.store.exists():
            vlog("[start] removing stale PID file")
            self.store.clear()

        if self.probe.is_reachable(cfg.local_port):
            raise PortConflictError(cfg.local_port)

        warnings = []
        with_gateway = False
        if cfg.gateway_port:
            if self.probe.is_reachable(cfg.gateway_port):
                msg = f"WARNING: Gateway port {cfg.gateway_port} already in use"
                warn(msg)
                warnings.append(msg)
            else:
                with_gateway = True

        vlog(f"[start] forwarding {cfg.forward_summary}")
        argv = self.build_command(with_gateway)
        try:
            pid = self.launcher.spawn(argv, cfg.log_file)
        except OSError as exc:
            raise LaunchError(argv[0], exc) from exc
        self.store.save(TunnelProcessRecord(pid))

        exited = []

        def _child_gone() -> bool:
            if not self.launcher.is_alive(pid):
                exited.append(pid)
                return True
            return False

        ready = wait_until(
            lambda: self.probe.is_reachable(cfg.local_port),
            self.ready_policy,
            abort=_child_gone,
            label=f"port {cfg.local_port}",
            sleep=self.sleep,
        )
        if ready:
            return StartResult(pid=pid, warnings=warnings)

        self._stop_locked()
        if exited:
            raise StartupTimeoutError(
                cfg.log_file, reason="Tunnel process exited before becoming ready.")
        raise StartupTimeoutError(cfg.log_file)

    # ── stop ───────────────────────────────────────────────────────────────

    def stop(self) -> StopResult:
        """Bring the tunnel to Stopped. Never fails; always removes the PID file."""
        with self.store.lock():
            return self._stop_locked()

    def _stop_locked(self) -> StopResult:
        record = self.store.load()
        if record is None or not self.launcher.is_alive(record.pid):
            self.store.clear()
            return StopResult(was_running=False)

        pid = record.pid
        vlog(f"[stop] stopping PID {pid}")
        try:
            self.launcher.terminate(pid)
        except ProcessSignalError as exc:
            vlog(f"[stop] {exc}")

        try:
            gone = wait_until(lambda: not self.launcher.is_alive(pid),
                              self.shutdown_policy, label=f"PID {pid} exit",
                              sleep=self.sleep)
            forced = False
            if not gone:
                forced = True
                warn(f"PID {pid} ignored SIGTERM, sending SIGKILL")
                try:
                    self.launcher.kill(pid)
                except ProcessSignalError as exc:
                    vlog(f"[stop] {exc}")
                wait_until(lambda: not self.launcher.is_alive(pid),
                           KILL_CONFIRM_POLICY, label=f"PID {pid} kill",
                           sleep=self.sleep)
        finally:
            self.store.clear()
        return StopResult(was_running=True, pid=pid, forced=forced)

    # ── status / restart ───────────────────────────────────────────────────

    def status(self) -> StatusReport:
        """Read-only snapshot. Any failure reads as Stopped."""
        cfg = self.config
        try:
            record = self._live_record()
        except Exception as exc:
            vlog(f"[status] treating as stopped: {exc}")
            record = None
        gateway_ok = None
        if cfg.gateway_port:
            gateway_ok = self.probe.is_reachable(cfg.gateway_port)
        return StatusReport(
            running=record is not None,
            pid=record.pid if record else None,
            summary=cfg.forward_summary,
            dashboard_ok=self.probe.is_reachable(cfg.local_port),
            gateway_ok=gateway_ok,
        )

    def restart(self) -> StartResult:
        self.config.require()
        with self.store.lock():
            stopped = self._stop_locked()
            vlog(f"[restart] {stopped.message}")
            return self._start_locked()
