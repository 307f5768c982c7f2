"""
Exceptions for Tunnel Session Management

Every error carries the lifecycle phase it was raised in, so the caller
can tell where a session failed.
"""

from typing import Optional

FORWARD_GRAMMAR = "[bindAddress:]bindPort:destHost:destPort"
JUMP_GRAMMAR = "[user@]host[:port]"


class TunnelError(Exception):
    """Base class for all tunnel session errors."""
    phase: Optional[str] = None

    def __init__(self, message: str, phase: Optional[str] = None):
        if phase is not None:
            self.phase = phase
        super().__init__(message)


class SpecFormatError(TunnelError, ValueError):
    """Raised when a forward or jump-host entry is malformed."""
    phase = "PARSING"

    def __init__(self, token: str, grammar: str, reason: str):
        self.token = token
        self.grammar = grammar
        self.reason = reason
        super().__init__(
            f"Invalid entry {token!r}: {reason} (expected {grammar})"
        )


class InvalidPlanError(TunnelError, ValueError):
    """Raised when a command plan is structurally incomplete."""
    phase = "PLANNING"


class NotStartedError(TunnelError):
    """Raised when a session process is queried before it was spawned."""


class SpawnError(TunnelError):
    """Raised when the external executable could not be started."""
    phase = "CONNECTING"


class SessionClosedError(TunnelError):
    """Raised when the session process exits while it is still needed."""

    def __init__(self, message: str, returncode: Optional[int] = None,
                 phase: Optional[str] = None):
        self.returncode = returncode
        super().__init__(message, phase)


class ConnectTimeoutError(TunnelError, TimeoutError):
    """Raised when the overall connect budget is exceeded."""
    phase = "CONNECTING"


class AllocationTimeoutError(TunnelError, TimeoutError):
    """Raised when a dynamically allocated port is never announced."""
    phase = "ALLOCATION_PENDING"


class CommandExecutionError(TunnelError):
    """Raised when a primary or post command exits non-zero."""

    def __init__(self, command: str, returncode: int, phase: Optional[str] = None):
        self.command = command
        self.returncode = returncode
        super().__init__(
            f"Command {command!r} exited with status {returncode}", phase
        )


class CancellationError(TunnelError):
    """Raised when an external stop was requested."""
