"""Shared infrastructure used across sshfwd modules."""

from .logging import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
