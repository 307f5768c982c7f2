"""
Tunnel Session Management Package

Parses forward specifications, builds ssh invocations, supervises the
session process and drives its lifecycle.
"""

from .tunnel_service import TunnelSessionService, plan_from_settings
from .process_manager import SessionProcess
from .enums import SessionState, ForwardDirection
from .schemas import (
    Allocation,
    AuthMaterial,
    CommandPlan,
    ConnectionTarget,
    ForwardSpec,
    JumpHop,
    SessionResult,
)
from .exceptions import (
    AllocationTimeoutError,
    CancellationError,
    CommandExecutionError,
    ConnectTimeoutError,
    InvalidPlanError,
    NotStartedError,
    SessionClosedError,
    SpawnError,
    SpecFormatError,
    TunnelError,
)

__all__ = [
    'TunnelSessionService',
    'plan_from_settings',
    'SessionProcess',
    'SessionState',
    'ForwardDirection',
    'Allocation',
    'AuthMaterial',
    'CommandPlan',
    'ConnectionTarget',
    'ForwardSpec',
    'JumpHop',
    'SessionResult',
    'AllocationTimeoutError',
    'CancellationError',
    'CommandExecutionError',
    'ConnectTimeoutError',
    'InvalidPlanError',
    'NotStartedError',
    'SessionClosedError',
    'SpawnError',
    'SpecFormatError',
    'TunnelError',
]
