import os
import shlex
import sys
from pathlib import Path

import pytest

from tunnel_runner.core.config import Settings

FAKE_SSH = Path(__file__).parent / "fake_ssh.py"


@pytest.fixture
def fake_ssh_binary():
    return shlex.join([sys.executable, str(FAKE_SSH)])


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    # Ambient TUNNEL_* / FAKE_SSH_* variables must not leak into tests
    for key in list(os.environ):
        if key.startswith(("TUNNEL_", "FAKE_SSH_")) or key == "GITHUB_OUTPUT":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_config(fake_ssh_binary):
    def _make(**overrides):
        values = {
            "HOST": "remote",
            "USERNAME": "deploy",
            "SSH_BINARY": fake_ssh_binary,
            "TIMEOUT": 10,
            "TERMINATE_GRACE": 2,
        }
        values.update(overrides)
        return Settings(**values)
    return _make
