"""octunnel: SSH port-forward supervisor"""

__version__ = "0.1.0"
