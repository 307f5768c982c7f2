import getpass
import re
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def _ambient_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        # No passwd entry (e.g. arbitrary uid in a container)
        return ""


class Settings(BaseSettings):
    # Debug settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Connection target
    HOST: str = ""
    PORT: int = 22
    USERNAME: str = Field(default_factory=_ambient_user)

    # Authentication material (content or paths)
    PRIVATE_KEY: Optional[str] = None
    PRIVATE_KEY_PATH: Optional[str] = None
    PASSWORD: Optional[str] = None
    KNOWN_HOSTS: Optional[str] = None

    # Forwarding and jump chain, comma separated
    LOCAL_FORWARDS: str = ""
    REMOTE_FORWARDS: str = ""
    JUMP_HOSTS: str = ""
    EXTRA_FLAGS: str = ""

    # Commands run through the established session
    COMMAND: Optional[str] = None
    POST_COMMAND: Optional[str] = None

    # Timing, in seconds
    TIMEOUT: float = 30
    KEEP_ALIVE: int = 60
    HOLD: Optional[float] = None  # Serving horizon when no command is given
    TERMINATE_GRACE: float = 5

    DRY_RUN: bool = False

    # External executables
    SSH_BINARY: str = "ssh"
    SSHPASS_BINARY: str = "sshpass"

    # Output line patterns of the external executable
    READY_PATTERNS: List[str] = [
        r"Authenticated to ",
    ]
    ALLOCATION_PATTERNS: List[str] = [
        r"Allocated port (?P<port>\d+) for remote forward to "
        r"(?P<dest_host>\S+):(?P<dest_port>\d+)\s*$",
        r"Forwarding \S+ (?:traffic|connections) from "
        r"(?:[a-z]+://)?(?P<host>[^\s:/]+):(?P<port>\d+)",
    ]

    # Where outputs are written; falls back to $GITHUB_OUTPUT
    OUTPUT_FILE: Optional[str] = None

    @field_validator("PRIVATE_KEY", "PRIVATE_KEY_PATH", "PASSWORD",
                     "KNOWN_HOSTS", "COMMAND", "POST_COMMAND", mode="before")
    @classmethod
    def blank_as_none(cls, value):
        # CI runners pass unset inputs as empty strings
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("HOLD", mode="before")
    @classmethod
    def blank_hold(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("READY_PATTERNS")
    @classmethod
    def compilable_patterns(cls, value):
        for pattern in value:
            _compile(pattern)
        return value

    @field_validator("ALLOCATION_PATTERNS")
    @classmethod
    def allocation_patterns_name_port(cls, value):
        for pattern in value:
            if "port" not in _compile(pattern).groupindex:
                raise ValueError(f"Allocation pattern {pattern!r} has no (?P<port>...) group")
        return value

    class Config:
        env_file = ".env"
        env_prefix = "TUNNEL_"
        case_sensitive = True
        extra = "ignore"


def _compile(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e


@lru_cache()
def get_settings() -> Settings:
    """
    Settings read from the environment, loaded on first use.

    Raises:
        ValidationError: If a TUNNEL_* variable holds an invalid value
    """
    return Settings()
