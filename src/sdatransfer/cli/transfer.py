"""Transfer commands for the sda-transfer CLI.

Commands:
- upload: Encrypt a file and upload it to the archive
- download: Download an object from the archive and decrypt it
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from sdatransfer.cli.config import format_size, get_state_db, setup_logging
from sdatransfer.core.config import MIN_PART_SIZE_HINT_MB, StorageConfig
from sdatransfer.core.errors import ConfigError
from sdatransfer.core.keys import load_private_key, load_public_key
from sdatransfer.transfer.orchestrator import (
    JobConfig,
    TransferOutcome,
    TransferResult,
    download,
    upload,
)
from sdatransfer.transfer.progress import ProgressSample
from sdatransfer.transfer.state import TransferStateStore
from sdatransfer.transfer.storage import create_store
from sdatransfer.transfer.workers import DEFAULT_WORKERS

# Exit status per outcome
EXIT_CODES = {
    TransferOutcome.COMPLETE: 0,
    TransferOutcome.FAILED: 1,
    TransferOutcome.RESUMABLE: 2,
}


CONNECTION_OPTIONS = [
    click.option("--endpoint", envvar="SDA_ENDPOINT", required=True, help="Archive S3 endpoint."),
    click.option("--access-key", envvar="SDA_ACCESS_KEY", required=True, help="Access key (also the bucket)."),
    click.option("--secret-key", envvar="SDA_SECRET_KEY", required=True, help="Secret key or access token."),
    click.option("--session-token", envvar="SDA_SESSION_TOKEN", default=None, help="Optional session token."),
    click.option("--no-tls", is_flag=True, help="Use HTTP when the endpoint has no scheme."),
    click.option("--insecure", is_flag=True, help="Do not verify TLS certificates."),
]

TUNING_OPTIONS = [
    click.option(
        "--part-size",
        type=int,
        envvar="SDA_PART_SIZE",
        default=MIN_PART_SIZE_HINT_MB,
        show_default=True,
        help=f"Part size in MiB (at least {MIN_PART_SIZE_HINT_MB}).",
    ),
    click.option(
        "--concurrency",
        "-j",
        type=click.IntRange(min=1),
        default=DEFAULT_WORKERS,
        show_default=True,
        help="Parts transferred in parallel.",
    ),
    click.option("--no-resume", is_flag=True, help="Ignore any checkpoint and start over."),
    click.option("--no-progress", is_flag=True, help="Disable the progress line."),
    click.option("--verbose", "-v", is_flag=True, help="Enable debug logging."),
]


def _apply(options: list[Callable[[Any], Any]], func: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(options):
        func = option(func)
    return func


def connection_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add the archive connection options."""
    return _apply(CONNECTION_OPTIONS, func)


def storage_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add the connection and tuning options shared by transfer commands."""
    return _apply(CONNECTION_OPTIONS + TUNING_OPTIONS, func)


def build_storage_config(
    endpoint: str,
    access_key: str,
    secret_key: str,
    session_token: str | None,
    no_tls: bool,
    insecure: bool,
    part_size: int = MIN_PART_SIZE_HINT_MB,
) -> StorageConfig:
    """Create the StorageConfig from command-line options."""
    return StorageConfig(
        access_key=access_key,
        secret_key=secret_key,
        endpoint=endpoint,
        use_tls=not no_tls,
        part_size_hint_mb=part_size,
        verify_ssl=not insecure,
        session_token=session_token,
    )


class ProgressLine:
    """Single-line progress display fed by progress samples."""

    def __init__(self, label: str, enabled: bool = True) -> None:
        self._label = label
        self._enabled = enabled
        self._lock = threading.Lock()
        self._last_len = 0

    def update(self, sample: ProgressSample) -> None:
        """Render a sample (called from the orchestrator thread)."""
        if not self._enabled:
            return
        status = (
            f"  {self._label}: {format_size(sample.confirmed_bytes)} / "
            f"{format_size(sample.total_bytes)} ({sample.fraction:.0%})"
        )
        with self._lock:
            clear_part = " " * max(0, self._last_len - len(status))
            sys.stdout.write(f"\r{status}{clear_part}")
            sys.stdout.flush()
            self._last_len = len(status)

    def finish(self) -> None:
        """Move past the progress line."""
        with self._lock:
            if self._enabled and self._last_len:
                sys.stdout.write("\n")
                sys.stdout.flush()
            self._last_len = 0


def report(result: TransferResult, action: str) -> None:
    """Print the outcome of a job and exit with its status code."""
    outcome = result.outcome
    if outcome == TransferOutcome.COMPLETE:
        click.echo(f"{action} complete: {format_size(result.bytes_transferred)}")
    elif outcome == TransferOutcome.RESUMABLE:
        click.echo(f"Error: {result.error}", err=True)
        click.echo(
            f"{action} interrupted after part {result.last_confirmed_part}. "
            f"Run the same command again to resume (job {result.resume_token}).",
            err=True,
        )
    else:
        click.echo(f"Error: {result.error}", err=True)
    sys.exit(EXIT_CODES[outcome])


@click.command("upload")
@click.argument("local_file", type=click.Path(path_type=Path))
@click.argument("remote_key")
@click.option(
    "--recipient",
    "-r",
    "recipients",
    multiple=True,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Public key of a recipient (repeatable).",
)
@click.option(
    "--sender-key",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Private key used to sign the header and to resume interrupted uploads.",
)
@click.option("--passphrase", envvar="SDA_KEY_PASSPHRASE", default=None, help="Passphrase of the sender key.")
@storage_options
def upload_cmd(
    local_file: Path,
    remote_key: str,
    recipients: tuple[Path, ...],
    sender_key: Path | None,
    passphrase: str | None,
    endpoint: str,
    access_key: str,
    secret_key: str,
    session_token: str | None,
    no_tls: bool,
    insecure: bool,
    part_size: int,
    concurrency: int,
    no_resume: bool,
    no_progress: bool,
    verbose: bool,
) -> None:
    """Encrypt LOCAL_FILE and upload it as REMOTE_KEY."""
    setup_logging(verbose)

    try:
        storage = build_storage_config(
            endpoint, access_key, secret_key, session_token, no_tls, insecure, part_size
        )
        recipient_keys = tuple(load_public_key(path) for path in recipients)
        sender_private_key = load_private_key(sender_key, passphrase) if sender_key else None
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    progress = ProgressLine("Uploading", enabled=not no_progress)
    job_config = JobConfig.for_storage(
        storage,
        recipient_public_keys=recipient_keys,
        sender_private_key=sender_private_key,
        concurrency=concurrency,
        resume=not no_resume,
        on_progress=progress.update,
    )

    state_store = TransferStateStore(get_state_db())
    try:
        result = upload(local_file, remote_key, job_config, create_store(storage), state_store)
    finally:
        progress.finish()
        state_store.close()
    report(result, "Upload")


@click.command("download")
@click.argument("remote_key")
@click.argument("local_file", type=click.Path(path_type=Path))
@click.option(
    "--key",
    "-k",
    "key_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Private key to decrypt the object with.",
)
@click.option("--passphrase", envvar="SDA_KEY_PASSPHRASE", default=None, help="Passphrase of the private key.")
@click.option("--overwrite", is_flag=True, help="Replace LOCAL_FILE if it exists.")
@storage_options
def download_cmd(
    remote_key: str,
    local_file: Path,
    key_file: Path,
    passphrase: str | None,
    overwrite: bool,
    endpoint: str,
    access_key: str,
    secret_key: str,
    session_token: str | None,
    no_tls: bool,
    insecure: bool,
    part_size: int,
    concurrency: int,
    no_resume: bool,
    no_progress: bool,
    verbose: bool,
) -> None:
    """Download REMOTE_KEY and decrypt it into LOCAL_FILE."""
    setup_logging(verbose)

    try:
        storage = build_storage_config(
            endpoint, access_key, secret_key, session_token, no_tls, insecure, part_size
        )
        private_key = load_private_key(key_file, passphrase)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    progress = ProgressLine("Downloading", enabled=not no_progress)
    job_config = JobConfig.for_storage(
        storage,
        private_key=private_key,
        concurrency=concurrency,
        overwrite=overwrite,
        resume=not no_resume,
        on_progress=progress.update,
    )

    state_store = TransferStateStore(get_state_db())
    try:
        result = download(remote_key, local_file, job_config, create_store(storage), state_store)
    finally:
        progress.finish()
        state_store.close()
    report(result, "Download")
