"""
Schemas for Tunnel Session Management

Data classes for the command plan, staged credentials and session results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from .enums import SessionState
from .exceptions import TunnelError


@dataclass(frozen=True)
class ForwardSpec:
    """One port forwarding rule."""
    bind_address: str
    bind_port: int
    dest_host: str
    dest_port: int

    @property
    def is_dynamic(self) -> bool:
        return self.bind_port == 0


@dataclass(frozen=True)
class JumpHop:
    """One bastion hop of a jump chain."""
    host: str
    port: int = 22
    user: Optional[str] = None


@dataclass(frozen=True)
class ConnectionTarget:
    """Final destination of the session."""
    host: str
    port: int = 22
    username: Optional[str] = None


@dataclass(frozen=True)
class AuthMaterial:
    """Authentication material; every populated field is passed through."""
    private_key: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    known_hosts: Optional[str] = field(default=None, repr=False)

    def methods(self) -> Tuple[str, ...]:
        """Names of the populated methods, safe to log."""
        names = []
        if self.private_key:
            names.append("private-key")
        if self.private_key_path:
            names.append("private-key-path")
        if self.password:
            names.append("password")
        if self.known_hosts:
            names.append("known-hosts")
        return tuple(names)


@dataclass(frozen=True)
class CommandPlan:
    """Everything needed to build and drive one tunnel session."""
    target: ConnectionTarget
    jump_chain: Tuple[JumpHop, ...] = ()
    local_forwards: Tuple[ForwardSpec, ...] = ()
    remote_forwards: Tuple[ForwardSpec, ...] = ()
    auth: AuthMaterial = field(default_factory=AuthMaterial)
    extra_flags: Tuple[str, ...] = ()
    timeout: float = 30
    keep_alive: int = 60
    command: Optional[str] = None
    post_command: Optional[str] = None
    dry_run: bool = False

    @property
    def dynamic_forwards(self) -> Tuple[ForwardSpec, ...]:
        return tuple(spec for spec in self.remote_forwards if spec.is_dynamic)


@dataclass(frozen=True)
class StagedCredentials:
    """Paths of credential artifacts staged for one session."""
    directory: Optional[str] = None
    private_key_file: Optional[str] = None
    known_hosts_file: Optional[str] = None
    control_path: Optional[str] = None


@dataclass(frozen=True)
class Allocation:
    """A dynamically bound forward as announced by the external tool."""
    spec: ForwardSpec
    host: str
    port: int


@dataclass
class ProcessInfo:
    """Information about a running session process."""
    pid: int
    is_alive: bool
    created_at: datetime
    returncode: Optional[int] = None
    allocations: Tuple[Allocation, ...] = ()


@dataclass(frozen=True)
class SessionResult:
    """Final, frozen state of one session."""
    state: SessionState
    argv: Tuple[str, ...] = ()
    pid: Optional[int] = None
    allocations: Tuple[Allocation, ...] = ()
    command_status: Optional[int] = None
    post_command_status: Optional[int] = None
    returncode: Optional[int] = None
    error: Optional[TunnelError] = None
    failed_phase: Optional[str] = None
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def allocated_host(self) -> Optional[str]:
        return self.allocations[0].host if self.allocations else None

    @property
    def allocated_port(self) -> Optional[int]:
        return self.allocations[0].port if self.allocations else None
