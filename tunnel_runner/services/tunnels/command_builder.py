"""
Command Builder for Tunnel Sessions

Turns a CommandPlan into the argument list of the external ssh client.
Pure transform: no I/O, no port pre-allocation.
"""

import math
import shlex
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import InvalidPlanError
from .schemas import CommandPlan, ForwardSpec, JumpHop, StagedCredentials
from .spec_parser import MAX_PORT

KEEP_ALIVE_COUNT_MAX = 3


def _bracket(host: str) -> str:
    """Wrap IPv6 literals in brackets."""
    return f"[{host}]" if ":" in host else host


def render_forward(spec: ForwardSpec) -> str:
    """Render a forward as ``bindAddress:bindPort:destHost:destPort``."""
    return (
        f"{_bracket(spec.bind_address)}:{spec.bind_port}:"
        f"{_bracket(spec.dest_host)}:{spec.dest_port}"
    )


def render_jump_chain(hops: Sequence[JumpHop], default_user: Optional[str] = None) -> str:
    """Render the jump chain as a single ProxyJump value, nearest hop first."""
    rendered = []
    for hop in hops:
        user = hop.user or default_user
        address = f"{_bracket(hop.host)}:{hop.port}"
        rendered.append(f"{user}@{address}" if user else address)
    return ",".join(rendered)


def keep_alive_options(seconds: int) -> Tuple[int, int]:
    """
    Translate a keep-alive duration into (interval, count max).

    The interval never exceeds the requested duration and
    interval * count covers at least the requested duration.
    """
    if seconds <= 0:
        return 0, KEEP_ALIVE_COUNT_MAX
    interval = max(1, math.ceil(seconds / KEEP_ALIVE_COUNT_MAX))
    return interval, KEEP_ALIVE_COUNT_MAX


def validate_plan(plan: CommandPlan) -> None:
    """Raise InvalidPlanError if nothing can be built from the plan."""
    if not plan.target.host or not plan.target.host.strip():
        raise InvalidPlanError("Connection target host is empty")
    if not 1 <= plan.target.port <= MAX_PORT:
        raise InvalidPlanError(f"Connection target port {plan.target.port} is out of range")
    if plan.timeout < 0:
        raise InvalidPlanError(f"Timeout must not be negative, got {plan.timeout}")
    if plan.keep_alive < 0:
        raise InvalidPlanError(f"Keep-alive must not be negative, got {plan.keep_alive}")


def _executable(plan: CommandPlan, ssh_binary: str, sshpass_binary: str) -> List[str]:
    cmd = shlex.split(ssh_binary)
    if plan.auth.password:
        # Password travels in $SSHPASS, never on the command line
        cmd = shlex.split(sshpass_binary) + ["-e"] + cmd
    return cmd


def _auth_options(plan: CommandPlan, credentials: StagedCredentials) -> List[str]:
    auth = plan.auth
    options: List[str] = []
    identities = []
    if credentials.private_key_file:
        identities.append(credentials.private_key_file)
    if auth.private_key_path:
        identities.append(auth.private_key_path)
    for identity in identities:
        options.extend(["-i", identity])
    if identities:
        options.extend(["-o", "IdentitiesOnly=yes"])

    if credentials.known_hosts_file:
        options.extend([
            "-o", f"UserKnownHostsFile={credentials.known_hosts_file}",
            "-o", "StrictHostKeyChecking=yes",
        ])
    else:
        options.extend(["-o", "StrictHostKeyChecking=accept-new"])

    if auth.password:
        methods = "publickey,password" if identities else "password"
        options.extend(["-o", f"PreferredAuthentications={methods}"])
    return options


def build_command(
    plan: CommandPlan,
    credentials: Optional[StagedCredentials] = None,
    ssh_binary: str = "ssh",
    sshpass_binary: str = "sshpass",
) -> List[str]:
    """
    Build the argument list of the session (master) process.

    Args:
        plan: Validated command plan
        credentials: Paths of staged credential files and control socket
        ssh_binary: ssh executable, shell-split
        sshpass_binary: sshpass executable, used when a password is given

    Returns:
        Full argv, the executable first

    Raises:
        InvalidPlanError: If the plan has no usable destination
    """
    validate_plan(plan)
    credentials = credentials or StagedCredentials()

    cmd = _executable(plan, ssh_binary, sshpass_binary)
    cmd.extend(["-N", "-T"])
    cmd.extend([
        "-o", "ExitOnForwardFailure=yes",
        "-o", f"ConnectTimeout={max(1, math.ceil(plan.timeout))}",
        "-o", "LogLevel=VERBOSE",
    ])
    if not plan.auth.password:
        cmd.extend(["-o", "BatchMode=yes"])

    interval, count_max = keep_alive_options(plan.keep_alive)
    cmd.extend([
        "-o", f"ServerAliveInterval={interval}",
        "-o", f"ServerAliveCountMax={count_max}",
    ])

    if credentials.control_path:
        cmd.extend(["-M", "-S", credentials.control_path, "-o", "ControlPersist=no"])

    cmd.extend(_auth_options(plan, credentials))

    cmd.extend(["-p", str(plan.target.port)])
    if plan.target.username:
        cmd.extend(["-l", plan.target.username])

    if plan.jump_chain:
        cmd.extend(["-J", render_jump_chain(plan.jump_chain, plan.target.username)])

    for spec in plan.local_forwards:
        cmd.extend(["-L", render_forward(spec)])
    for spec in plan.remote_forwards:
        cmd.extend(["-R", render_forward(spec)])

    cmd.append(plan.target.host)
    # Appended last so callers can override any default above
    cmd.extend(plan.extra_flags)
    return cmd


def build_remote_command(
    plan: CommandPlan,
    credentials: StagedCredentials,
    command: str,
    ssh_binary: str = "ssh",
) -> List[str]:
    """Build the argv running one command through the session's control socket."""
    validate_plan(plan)
    if not credentials.control_path:
        raise InvalidPlanError("No control socket staged for command execution")
    cmd = shlex.split(ssh_binary)
    cmd.extend([
        "-T",
        "-S", credentials.control_path,
        "-o", "ControlMaster=no",
        "-p", str(plan.target.port),
    ])
    if plan.target.username:
        cmd.extend(["-l", plan.target.username])
    cmd.extend([plan.target.host, command])
    return cmd


def build_environment(plan: CommandPlan) -> Dict[str, str]:
    """Extra environment entries for the session process."""
    if plan.auth.password:
        return {"SSHPASS": plan.auth.password}
    return {}


def format_command(argv: Sequence[str]) -> str:
    """Shell-quoted rendering of an argv, for display and dry-run output."""
    return shlex.join(argv)
