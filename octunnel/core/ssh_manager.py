"""
SSH connection manager used to verify remote access before a vault sync
"""
import shlex
from typing import Optional

import paramiko

from ..utils.logging import vlog

DEFAULT_SSH_PORT = 22
CONNECT_TIMEOUT = 5


def parse_target(target: str) -> tuple[Optional[str], str, int]:
    """
    Split an ssh target of the form [user@]host[:port] into
    (user, host, port). The user is None when not given.
    """
    user = None
    rest = target.strip()
    if "@" in rest:
        user, rest = rest.rsplit("@", 1)
        user = user or None
    port = DEFAULT_SSH_PORT
    if rest.count(":") == 1:
        host, port_s = rest.split(":", 1)
        if port_s.isdigit():
            rest, port = host, int(port_s)
    if not rest:
        raise ValueError(f"invalid ssh target: {target!r}")
    return user, rest, port


class SSHManager:
    """
    Wraps a paramiko SSHClient authenticated with a private key file.
    Usable as a context manager.
    """

    def __init__(self, target: str, key_path: Optional[str] = None,
                 timeout: int = CONNECT_TIMEOUT):
        self.user, self.host, self.port = parse_target(target)
        self.key_path = key_path
        self.timeout = timeout
        self._ssh: Optional[paramiko.SSHClient] = None

    # ── connection ─────────────────────────────────────────────────────────

    def connect(self):
        if self._ssh:
            return
        vlog(f"[SSH] connecting to {self.user or ''}@{self.host}:{self.port} …")
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kw: dict = dict(hostname=self.host, port=self.port,
                        timeout=self.timeout, banner_timeout=self.timeout,
                        auth_timeout=self.timeout)
        if self.user:
            kw["username"] = self.user
        if self.key_path:
            kw["key_filename"] = self.key_path
            kw["look_for_keys"] = False
        try:
            client.connect(**kw)
        except Exception:
            client.close()
            raise
        self._ssh = client
        vlog("[SSH] connected ✓")

    def _close_quietly(self):
        try:
            if self._ssh:
                self._ssh.close()
        except Exception:
            pass
        self._ssh = None

    def disconnect(self):
        self._close_quietly()
        vlog("[SSH] disconnected.")

    def __enter__(self) -> "SSHManager":
        self.connect()
        return self

    def __exit__(self, *exc):
        self.disconnect()

    # ── raw exec ────────────────────────────────────────────────────────────

    def exec(self, cmd: str, timeout: int = 30) -> tuple[str, str]:
        """Run a command; return (stdout, stderr). Raises on non-zero exit."""
        self.connect()
        _, stdout, stderr = self._ssh.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        if rc != 0:
            raise RuntimeError(f"remote command exited {rc}: {cmd!r}\nstderr: {err.strip()}")
        return out, err

    def path_exists(self, remote_path: str) -> bool:
        """True if `ls` succeeds on *remote_path*."""
        try:
            self.exec(f"ls {shlex.quote(remote_path)}", timeout=15)
            return True
        except RuntimeError:
            return False
