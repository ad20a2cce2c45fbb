"""
PID file management (the only state that survives between invocations)
"""
import contextlib
import fcntl
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from ..exceptions import StateError
from ..utils.logging import vlog, warn


@dataclass(frozen=True)
class TunnelProcessRecord:
    pid: int


class PidStore:
    """
    File-backed record of the managed tunnel process.

    On disk: a single line holding the bare integer PID. An empty or
    unparsable file reads as "no record". lock() takes an exclusive flock
    on a companion lock file for read-modify-write sections.
    """

    def __init__(self, pid_file: Path, lock_file: Optional[Path] = None):
        self.pid_file = Path(pid_file)
        self.lock_file = Path(lock_file) if lock_file else self.pid_file.with_suffix(".lock")

    def load(self) -> Optional[TunnelProcessRecord]:
        try:
            text = self.pid_file.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            vlog(f"[state] could not read {self.pid_file}: {exc}")
            return None
        if not text:
            return None
        try:
            pid = int(text.split()[0])
        except ValueError:
            vlog(f"[state] ignoring unparsable PID file content {text!r}")
            return None
        if pid <= 0:
            return None
        return TunnelProcessRecord(pid)

    def save(self, record: TunnelProcessRecord):
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.pid_file.with_name(self.pid_file.name + ".tmp")
        tmp.write_text(f"{record.pid}\n", "utf-8")
        os.replace(tmp, self.pid_file)

    def clear(self):
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            warn(f"could not remove {self.pid_file}: {exc}")

    def exists(self) -> bool:
        return self.pid_file.exists()

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock for the duration of the block."""
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            fh = self.lock_file.open("a")
        except OSError as exc:
            raise StateError(f"cannot use state directory {self.lock_file.parent}: {exc}") from exc
        with fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)
