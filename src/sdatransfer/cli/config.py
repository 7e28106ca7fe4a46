"""Configuration utilities for the sda-transfer CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path


def get_config_dir() -> Path:
    """Get the configuration directory for sda-transfer.

    Returns:
        Path to ~/.sda-transfer.
    """
    return Path.home() / ".sda-transfer"


def get_state_db() -> Path:
    """Get the path to the checkpoint database."""
    return get_config_dir() / "state.db"


def setup_logging(verbose: bool = False) -> None:
    """Send sda-transfer log records to stderr.

    Args:
        verbose: Log job milestones and debug details, not only problems.
    """
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger("sdatransfer")
    # Replace handlers from an earlier invocation in the same process
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root_logger.propagate = False


def format_size(size_bytes: int) -> str:
    """Format size in bytes to human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"
