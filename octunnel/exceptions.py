"""
Exceptions raised by tunnel and vault operations
"""
from typing import Optional


class TunnelError(Exception):
    """Base exception for all octunnel errors."""


class ConfigurationError(TunnelError):
    """Raised when required settings are missing or malformed."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])

    @classmethod
    def for_missing(cls, names: list) -> "ConfigurationError":
        return cls(
            f"Missing required environment variable(s): {' '.join(names)}",
            missing=names,
        )


class PortConflictError(TunnelError):
    """Raised when the local forward port is already bound by another process."""

    def __init__(self, port: int):
        super().__init__(f"Local port {port} is already in use")
        self.port = port


class StartupTimeoutError(TunnelError):
    """Raised when the tunnel was launched but never became reachable."""

    def __init__(self, log_file, reason: str = "Tunnel did not become ready in time."):
        super().__init__(f"{reason} Check {log_file}.")
        self.log_file = log_file


class LaunchError(TunnelError):
    """Raised when the tunnel process could not be started at all."""

    def __init__(self, program: str, cause: Optional[BaseException] = None):
        super().__init__(f"could not launch {program}: {cause}")
        self.program = program


class ProcessSignalError(TunnelError):
    """Raised when a signal could not be delivered to the tunnel process."""

    def __init__(self, pid: int, sig: int, cause: Optional[BaseException] = None):
        super().__init__(f"could not send signal {sig} to PID {pid}: {cause}")
        self.pid = pid
        self.sig = sig


class StateError(TunnelError):
    """Raised when the state directory cannot be created or locked."""


class VaultSyncError(TunnelError):
    """Raised when the vault mirror cannot run or fails midway."""
