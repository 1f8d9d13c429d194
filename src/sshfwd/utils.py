"""Utility functions for sshfwd."""

import os
from typing import Any

from .exceptions import InvalidPortError

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

# Listeners are only ever bound on loopback
LOCAL_BIND_HOST = "127.0.0.1"


def validate_port(port: Any, port_name: str = "Port") -> int:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Returns:
        The port as an int

    Raises:
        InvalidPortError: If port is not an integer in range (1-65535)
    """
    if isinstance(port, bool) or not isinstance(port, int) or not (
        MIN_PORT <= port <= MAX_PORT
    ):
        raise InvalidPortError(f"{port_name} must be between {MIN_PORT}-{MAX_PORT}")
    return port


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def expand_path(path: str | None) -> str | None:
    """Expand ``~`` and environment variables in a filesystem path."""
    if not path:
        return None
    return os.path.expandvars(os.path.expanduser(path))


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., a key path or passphrase)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]
