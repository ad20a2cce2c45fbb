"""
Child process spawning, liveness and signalling
"""
import signal
import subprocess
from pathlib import Path

import psutil

from ..exceptions import ProcessSignalError
from ..utils.logging import vlog


class ProcessLauncher:
    """
    Spawns detached background processes and inspects them by PID.
    The PID may belong to a process started by an earlier invocation.
    """

    def __init__(self):
        # Popen handles of children started by this process, so they get reaped
        self._children = {}

    def spawn(self, argv: list, log_file: Path) -> int:
        """
        Start *argv* in its own session with stdout+stderr appended to
        *log_file*. Returns the child's PID without waiting for it.
        """
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        vlog(f"[launch] {' '.join(argv)}")
        with log_file.open("ab") as out:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        self._children[proc.pid] = proc
        return proc.pid

    def is_alive(self, pid: int) -> bool:
        """True while *pid* is running. Zombies count as dead."""
        child = self._children.get(pid)
        if child is not None and child.poll() is not None:
            del self._children[pid]
            return False
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # exists, owned by someone else
            return True

    def send_signal(self, pid: int, sig: int = signal.SIGTERM):
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.Error as exc:
            raise ProcessSignalError(pid, sig, exc) from exc

    def terminate(self, pid: int):
        self.send_signal(pid, signal.SIGTERM)

    def kill(self, pid: int):
        self.send_signal(pid, signal.SIGKILL)
