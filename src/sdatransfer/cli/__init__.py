"""Command-line interface for sda-transfer.

This module provides the main CLI entry point and assembles all commands.

Commands:
- upload: Encrypt a file and upload it to the archive
- download: Download an object and decrypt it
- jobs: List interrupted jobs that can be resumed
- abandon: Give up on an interrupted job
"""

from __future__ import annotations

import click

from sdatransfer.cli.config import format_size, get_config_dir, get_state_db, setup_logging
from sdatransfer.cli.jobs import abandon_cmd, jobs
from sdatransfer.cli.transfer import download_cmd, upload_cmd


@click.group()
@click.version_option(package_name="sda-transfer")
def cli() -> None:
    """sda-transfer - Encrypted multipart transfers to the sensitive data archive."""


# Transfer commands
cli.add_command(upload_cmd)
cli.add_command(download_cmd)

# Checkpoint commands
cli.add_command(jobs)
cli.add_command(abandon_cmd)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "format_size",
    "get_config_dir",
    "get_state_db",
    "setup_logging",
]
