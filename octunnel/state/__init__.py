"""State management (PID file)"""
from .pid_store import PidStore, TunnelProcessRecord

__all__ = ["PidStore", "TunnelProcessRecord"]
