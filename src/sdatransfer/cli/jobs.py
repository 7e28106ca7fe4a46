"""Checkpoint commands for the sda-transfer CLI.

Commands:
- jobs: List interrupted jobs that can be resumed
- abandon: Give up on an interrupted job
"""

from __future__ import annotations

import sys
import time

import click

from sdatransfer.cli.config import format_size, get_state_db, setup_logging
from sdatransfer.cli.transfer import build_storage_config, connection_options
from sdatransfer.core.errors import TransferError
from sdatransfer.transfer.orchestrator import abandon
from sdatransfer.transfer.state import TransferStateStore
from sdatransfer.transfer.storage import create_store


@click.command("jobs")
def jobs() -> None:
    """List interrupted jobs that can be resumed."""
    db_path = get_state_db()
    if not db_path.exists():
        click.echo("No interrupted jobs.")
        return

    state_store = TransferStateStore(db_path)
    try:
        states = state_store.list_jobs()
    finally:
        state_store.close()

    if not states:
        click.echo("No interrupted jobs.")
        return

    for state in states:
        updated = time.strftime("%Y-%m-%d %H:%M", time.localtime(state.updated_at))
        click.echo(
            f"{state.job_id}  {state.direction.value:<8}  "
            f"{state.last_confirmed_part}/{state.part_count} parts  "
            f"{format_size(state.committed_offset)} / {format_size(state.total_size)}  "
            f"{updated}"
        )
        click.echo(f"    {state.source} -> {state.destination}")


@click.command("abandon")
@click.argument("job_id")
@connection_options
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def abandon_cmd(
    job_id: str,
    endpoint: str,
    access_key: str,
    secret_key: str,
    session_token: str | None,
    no_tls: bool,
    insecure: bool,
    verbose: bool,
) -> None:
    """Abort the multipart upload of JOB_ID and forget its checkpoint."""
    setup_logging(verbose)

    db_path = get_state_db()
    if not db_path.exists():
        click.echo(f"Error: No job {job_id}", err=True)
        sys.exit(1)

    state_store = TransferStateStore(db_path)
    try:
        storage = build_storage_config(
            endpoint, access_key, secret_key, session_token, no_tls, insecure
        )
        found = abandon(job_id, create_store(storage), state_store)
    except TransferError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        state_store.close()

    if not found:
        click.echo(f"Error: No job {job_id}", err=True)
        sys.exit(1)
    click.echo(f"Abandoned job {job_id}")
