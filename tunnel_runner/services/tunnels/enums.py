"""
Enums for Tunnel Session Management

Defines lifecycle state and forward direction enumerations.
"""

from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of a tunnel session."""
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    ALLOCATION_PENDING = "ALLOCATION_PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    POST_RUNNING = "POST_RUNNING"
    TEARING_DOWN = "TEARING_DOWN"
    TERMINATED = "TERMINATED"


class ForwardDirection(str, Enum):
    """Direction of a port forward."""
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"

    @property
    def flag(self) -> str:
        return "-L" if self is ForwardDirection.LOCAL else "-R"

    @property
    def default_bind_address(self) -> str:
        # Remote forwards bind on the far side's loopback
        return "127.0.0.1" if self is ForwardDirection.LOCAL else "localhost"
