"""Core functionality"""
from .launcher import ProcessLauncher
from .probe import PortProbe
from .supervisor import Supervisor, StartResult, StopResult, StatusReport

__all__ = [
    "ProcessLauncher", "PortProbe",
    "Supervisor", "StartResult", "StopResult", "StatusReport",
]
