"""
Result Reporter for Tunnel Sessions

Read-only views of a frozen SessionResult for the invocation host.
"""

import json
from typing import Dict

from .command_builder import format_command
from .schemas import SessionResult


def report_outputs(result: SessionResult) -> Dict[str, str]:
    """
    Output values for the invocation host.

    Values are strings; anything not applicable or never resolved is empty.
    """
    outputs = {
        "pid": "" if result.pid is None else str(result.pid),
        "allocated-host": result.allocated_host or "",
        "allocated-port": "" if result.allocated_port is None else str(result.allocated_port),
        "allocations": json.dumps([
            {
                "host": allocation.host,
                "port": allocation.port,
                "dest-host": allocation.spec.dest_host,
                "dest-port": allocation.spec.dest_port,
            }
            for allocation in result.allocations
        ]) if result.allocations else "",
    }
    if result.dry_run:
        outputs["command"] = format_command(result.argv)
    return outputs


def summarize(result: SessionResult) -> str:
    """One-line human readable summary."""
    if result.dry_run:
        return f"Dry run: {format_command(result.argv)}"
    if result.succeeded:
        parts = ["Session completed"]
    else:
        parts = [
            f"Session failed during {result.failed_phase}: "
            f"{type(result.error).__name__}: {result.error}"
        ]
    if result.pid is not None:
        parts.append(f"pid={result.pid}")
    if result.allocations:
        parts.append(f"allocated={result.allocated_host}:{result.allocated_port}")
    return ", ".join(parts)


def exit_code(result: SessionResult) -> int:
    return 0 if result.succeeded else 1
