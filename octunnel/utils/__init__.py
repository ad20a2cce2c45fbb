"""Utilities (logging, wait loop)"""
from .logging import log, vlog, warn, set_verbose
from .retry import WaitPolicy, wait_until

__all__ = [
    "log", "vlog", "warn", "set_verbose",
    "WaitPolicy", "wait_until",
]
