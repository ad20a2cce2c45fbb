"""
TCP reachability probe for local ports
"""
import socket

PROBE_HOST = "127.0.0.1"
PROBE_TIMEOUT = 1.0


class PortProbe:
    """Answers whether something is listening on localhost:PORT."""

    def __init__(self, host: str = PROBE_HOST, timeout: float = PROBE_TIMEOUT):
        self.host = host
        self.timeout = timeout

    def is_reachable(self, port: int) -> bool:
        try:
            with socket.create_connection((self.host, port), timeout=self.timeout):
                return True
        except OSError:
            return False
