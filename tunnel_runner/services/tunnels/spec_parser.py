"""
Spec Parser for Tunnel Sessions

Parses comma separated forward and jump-host strings into ForwardSpec and
JumpHop records. Parsing is strict: malformed integers are never coerced.
"""

import re
from typing import List, Optional, Tuple

from .enums import ForwardDirection
from .exceptions import FORWARD_GRAMMAR, JUMP_GRAMMAR, SpecFormatError
from .schemas import ForwardSpec, JumpHop

MAX_PORT = 65535

# Entries are separated by commas; surrounding whitespace is insignificant
_ENTRY_SEPARATOR = re.compile(r"[,\s]+")


def split_entries(raw: Optional[str]) -> List[str]:
    """Split a raw list input into its non-empty entries."""
    if not raw:
        return []
    return [entry for entry in _ENTRY_SEPARATOR.split(raw) if entry]


def _split_fields(token: str, grammar: str) -> List[str]:
    """
    Split an entry on colons, keeping bracketed IPv6 literals whole.

    Brackets are removed from the returned fields.
    """
    fields: List[str] = []
    current = ""
    index = 0
    while index < len(token):
        char = token[index]
        if char == "[" and current == "":
            end = token.find("]", index)
            if end == -1:
                raise SpecFormatError(token, grammar, "unterminated '['")
            current = token[index + 1:end]
            if not current:
                raise SpecFormatError(token, grammar, "empty bracketed address")
            index = end + 1
            if index < len(token) and token[index] != ":":
                raise SpecFormatError(token, grammar, "expected ':' after ']'")
            continue
        if char == ":":
            fields.append(current)
            current = ""
        else:
            current += char
        index += 1
    fields.append(current)
    return fields


def _parse_port(text: str, token: str, grammar: str, what: str,
                allow_zero: bool = False) -> int:
    if not text or not (text.isascii() and text.isdigit()):
        raise SpecFormatError(token, grammar, f"{what} {text!r} is not an integer")
    value = int(text)
    if value > MAX_PORT:
        raise SpecFormatError(token, grammar, f"{what} {value} exceeds {MAX_PORT}")
    if value == 0 and not allow_zero:
        raise SpecFormatError(token, grammar, f"{what} must be in [1, {MAX_PORT}]")
    return value


def parse_forward(token: str, direction: ForwardDirection) -> ForwardSpec:
    """
    Parse a single forward entry.

    Args:
        token: Entry in ``[bindAddress:]bindPort:destHost:destPort`` form
        direction: Whether the entry is a local or a remote forward

    Returns:
        ForwardSpec with the bind address resolved to its default if absent

    Raises:
        SpecFormatError: If the entry does not match the grammar
    """
    fields = _split_fields(token, FORWARD_GRAMMAR)
    if len(fields) == 3:
        bind_address = direction.default_bind_address
        bind_port_text, dest_host, dest_port_text = fields
    elif len(fields) == 4:
        bind_address, bind_port_text, dest_host, dest_port_text = fields
        if not bind_address:
            raise SpecFormatError(token, FORWARD_GRAMMAR, "empty bind address")
    else:
        raise SpecFormatError(
            token, FORWARD_GRAMMAR, f"expected 3 or 4 fields, got {len(fields)}"
        )

    remote = direction is ForwardDirection.REMOTE
    bind_port = _parse_port(
        bind_port_text, token, FORWARD_GRAMMAR, "bind port", allow_zero=True
    )
    if bind_port == 0 and not remote:
        raise SpecFormatError(
            token, FORWARD_GRAMMAR,
            "bind port 0 (dynamic allocation) is only valid for remote forwards",
        )
    if not dest_host:
        raise SpecFormatError(token, FORWARD_GRAMMAR, "empty destination host")
    dest_port = _parse_port(dest_port_text, token, FORWARD_GRAMMAR, "destination port")

    return ForwardSpec(
        bind_address=bind_address,
        bind_port=bind_port,
        dest_host=dest_host,
        dest_port=dest_port,
    )


def parse_jump_hop(token: str) -> JumpHop:
    """Parse a single ``[user@]host[:port]`` jump-host entry."""
    user: Optional[str] = None
    address = token
    if "@" in token:
        user, address = token.rsplit("@", 1)
        if not user:
            raise SpecFormatError(token, JUMP_GRAMMAR, "empty user")

    fields = _split_fields(address, JUMP_GRAMMAR)
    if len(fields) > 2:
        raise SpecFormatError(
            token, JUMP_GRAMMAR, "too many ':' (bracket IPv6 addresses)"
        )
    host = fields[0]
    if not host:
        raise SpecFormatError(token, JUMP_GRAMMAR, "empty host")
    port = 22
    if len(fields) == 2:
        port = _parse_port(fields[1], token, JUMP_GRAMMAR, "port")
    return JumpHop(host=host, port=port, user=user)


def parse_local_forwards(raw: Optional[str]) -> Tuple[ForwardSpec, ...]:
    return tuple(
        parse_forward(entry, ForwardDirection.LOCAL) for entry in split_entries(raw)
    )


def parse_remote_forwards(raw: Optional[str]) -> Tuple[ForwardSpec, ...]:
    return tuple(
        parse_forward(entry, ForwardDirection.REMOTE) for entry in split_entries(raw)
    )


def parse_jump_hosts(raw: Optional[str]) -> Tuple[JumpHop, ...]:
    """Parse a jump chain; order is preserved, nearest hop first."""
    return tuple(parse_jump_hop(entry) for entry in split_entries(raw))
