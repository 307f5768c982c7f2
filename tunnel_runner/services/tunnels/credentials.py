"""
Credential staging for Tunnel Sessions

Writes key and known-hosts material into a private temporary directory for
the lifetime of one session. The directory is removed on every exit path.
"""

import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Iterator

from tunnel_runner.core.logging import tunnel_logger
from .schemas import AuthMaterial, StagedCredentials


def _write_private(path: str, content: str) -> None:
    # ssh refuses keys without a trailing newline or with open permissions
    if not content.endswith("\n"):
        content += "\n"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(content)


@contextmanager
def stage_credentials(
    auth: AuthMaterial, control_socket: bool = False
) -> Iterator[StagedCredentials]:
    """
    Stage credential artifacts for one session.

    Args:
        auth: Authentication material of the plan
        control_socket: Reserve a control socket path for command execution

    Yields:
        StagedCredentials with the paths of the staged files
    """
    directory = tempfile.mkdtemp(prefix="tunnel-")
    try:
        os.chmod(directory, 0o700)
        key_file = None
        known_hosts_file = None
        if auth.private_key:
            key_file = os.path.join(directory, "id_key")
            _write_private(key_file, auth.private_key)
        if auth.known_hosts:
            known_hosts_file = os.path.join(directory, "known_hosts")
            _write_private(known_hosts_file, auth.known_hosts)
        control_path = os.path.join(directory, "ctl") if control_socket else None

        tunnel_logger.debug(f"Staged credentials in {directory}")
        yield StagedCredentials(
            directory=directory,
            private_key_file=key_file,
            known_hosts_file=known_hosts_file,
            control_path=control_path,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
        tunnel_logger.debug(f"Released staged credentials in {directory}")
