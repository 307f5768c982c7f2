"""
Command line entry point.

Reads inputs from TUNNEL_* environment variables (or CLI flags), runs one
tunnel session and reports its outputs in ``key=value`` form.
"""

import argparse
import asyncio
import os
import signal
import sys
import uuid
from typing import Dict, List, Optional

from pydantic import ValidationError
from rich.markup import escape

from tunnel_runner import __version__
from tunnel_runner.core.config import Settings
from tunnel_runner.core.logging import configure_logging, logger
from tunnel_runner.services.tunnels import (
    CommandPlan,
    InvalidPlanError,
    SessionResult,
    SpecFormatError,
    TunnelSessionService,
    plan_from_settings,
)
from tunnel_runner.services.tunnels.reporter import exit_code, report_outputs, summarize

# CLI flag -> Settings field
_OPTIONS = {
    "host": ("HOST", str, "Destination host"),
    "port": ("PORT", int, "Destination port (default 22)"),
    "username": ("USERNAME", str, "Remote user (default: current user)"),
    "private-key": ("PRIVATE_KEY", str, "Private key content"),
    "private-key-path": ("PRIVATE_KEY_PATH", str, "Path to a private key"),
    "password": ("PASSWORD", str, "Password (passed to sshpass via environment)"),
    "known-hosts": ("KNOWN_HOSTS", str, "known_hosts content"),
    "local-forwards": ("LOCAL_FORWARDS", str, "[bind:]port:host:port, comma separated"),
    "remote-forwards": ("REMOTE_FORWARDS", str, "[bind:]port:host:port, port 0 = dynamic"),
    "jump-hosts": ("JUMP_HOSTS", str, "[user@]host[:port], comma separated, nearest first"),
    "extra-flags": ("EXTRA_FLAGS", str, "Extra ssh flags, appended last"),
    "command": ("COMMAND", str, "Command to run through the session"),
    "post-command": ("POST_COMMAND", str, "Command always run after --command"),
    "timeout": ("TIMEOUT", float, "Connect and allocation budget in seconds (default 30)"),
    "keep-alive": ("KEEP_ALIVE", int, "Keep-alive duration in seconds (default 60)"),
    "hold": ("HOLD", float, "Serve forwards this long when no command is given"),
    "ssh-binary": ("SSH_BINARY", str, "ssh executable"),
    "output-file": ("OUTPUT_FILE", str, "Append outputs to this file"),
    "log-level": ("LOG_LEVEL", str, "Log level"),
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tunnel-runner",
        description="Establish an SSH tunnel, run commands over it and tear it down.",
    )
    for flag, (field, kind, help_text) in _OPTIONS.items():
        parser.add_argument(f"--{flag}", dest=field, type=kind, default=None, help=help_text)
    parser.add_argument("--dry-run", dest="DRY_RUN", action="store_true", default=None,
                        help="Print the ssh invocation without running it")
    parser.add_argument("--debug", dest="DEBUG", action="store_true", default=None,
                        help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment, overridden by any CLI flag given."""
    overrides = {key: value for key, value in vars(args).items() if value is not None}
    return Settings(**overrides)


def _output_lines(outputs: Dict[str, str]) -> List[str]:
    lines = []
    for key, value in outputs.items():
        if "\n" in value:
            delimiter = f"EOF_{uuid.uuid4().hex}"
            lines.append(f"{key}<<{delimiter}\n{value}\n{delimiter}")
        else:
            lines.append(f"{key}={value}")
    return lines


def write_outputs(outputs: Dict[str, str], path: Optional[str]) -> None:
    """Append outputs to the output file, or print them to stdout."""
    lines = _output_lines(outputs)
    if path:
        with open(path, "a", encoding="utf-8") as handle:
            for line in lines:
                handle.write(line + "\n")
        logger.debug(f"Wrote {len(lines)} output(s) to {path}")
    else:
        for line in lines:
            print(line)


async def run_session(plan: CommandPlan, config: Settings) -> SessionResult:
    """Run one session with SIGINT/SIGTERM mapped to cancellation."""
    loop = asyncio.get_running_loop()
    cancel_event = asyncio.Event()
    service = TunnelSessionService(plan, config, cancel_event)

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or not supported by the platform
            pass
    try:
        return await service.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_settings(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {escape(str(e))}")
        return 2
    configure_logging(config.LOG_LEVEL, config.DEBUG)

    try:
        plan = plan_from_settings(config)
    except (SpecFormatError, InvalidPlanError) as e:
        logger.error(f"{type(e).__name__}: {escape(str(e))}")
        return 2

    result = asyncio.run(run_session(plan, config))

    write_outputs(report_outputs(result), config.OUTPUT_FILE or os.environ.get("GITHUB_OUTPUT"))
    if result.succeeded:
        logger.info(escape(summarize(result)))
    else:
        logger.error(escape(summarize(result)))
    return exit_code(result)


if __name__ == "__main__":
    sys.exit(main())
