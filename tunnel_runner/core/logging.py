import logging
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

# Create rich console with custom theme; logs go to stderr so stdout
# stays free for reported outputs
console = Console(
    stderr=True,
    theme=Theme(
        {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "debug": "grey50",
            "tunnel": "green",
            "ssh": "magenta",
        }
    ),
)

# Configure rich handler
rich_handler = RichHandler(
    console=console,
    rich_tracebacks=True,
    markup=True,
    show_time=True,
    show_path=False,
)
rich_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))


def _resolve_level(level: Optional[str], debug: bool) -> int:
    if debug:
        return logging.DEBUG
    resolved = logging.getLevelName((level or "INFO").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


# Create specific loggers for different components
logger = logging.getLogger("tunnel_runner")
tunnel_logger = logging.getLogger("tunnel")
ssh_logger = logging.getLogger("ssh")

# Configure each logger; configure_logging applies the loaded settings
for log in [logger, tunnel_logger, ssh_logger]:
    log.setLevel(logging.INFO)
    log.handlers = [rich_handler]
    log.propagate = False


def configure_logging(level: Optional[str] = None, debug: bool = False) -> None:
    """Set the level of all tunnel loggers (used by the CLI)."""
    resolved = _resolve_level(level, debug)
    for log in [logger, tunnel_logger, ssh_logger]:
        log.setLevel(resolved)


def log_command(log: logging.Logger, argv: Sequence[str], sensitive: bool = False) -> None:
    """Log a command execution with proper formatting."""
    if sensitive:
        log.debug("[bold]Executing command:[/bold] <sensitive command>")
    else:
        log.debug(f"[bold]Executing command:[/bold] {' '.join(argv)}")


def log_ssh_connection(host: str, username: str, auth_methods: Sequence[str]) -> None:
    """Log SSH connection attempt with details."""
    ssh_logger.info(
        f"[bold]Initiating SSH connection[/bold]\n"
        f"  [cyan]Host:[/cyan] {host}\n"
        f"  [cyan]Username:[/cyan] {username or '<ambient>'}\n"
        f"  [cyan]Auth methods:[/cyan] {', '.join(auth_methods) or 'agent/default'}"
    )
