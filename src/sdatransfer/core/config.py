"""Configuration records for sda-transfer.

The credentials record is resolved by the caller (from a session file, the
environment or the command line) and passed in read-only; nothing in the
transfer pipeline reads process-wide session state.
"""

from __future__ import annotations

from dataclasses import dataclass

from sdatransfer.core.errors import ConfigError

# Part size hint floor used by the archive's s3cmd-style configuration
MIN_PART_SIZE_HINT_MB = 15
DEFAULT_REGION = "us-west-2"


@dataclass(frozen=True)
class StorageConfig:
    """Connection settings for the S3-compatible archive.

    Attributes:
        access_key: Account identifier; doubles as bucket name and key prefix.
        secret_key: Secret key or access token.
        endpoint: Host (and optional port) of the service, with or without scheme.
        use_tls: Whether to talk HTTPS when the endpoint has no scheme.
        part_size_hint_mb: Preferred multipart part size in MiB.
        region: Signing region (the archive ignores it but S3 signing needs one).
        verify_ssl: Whether to verify TLS certificates.
        timeout: Per-request connect/read timeout in seconds.
        session_token: Optional session token sent with every request.
    """

    access_key: str
    secret_key: str
    endpoint: str
    use_tls: bool = True
    part_size_hint_mb: int = MIN_PART_SIZE_HINT_MB
    region: str = DEFAULT_REGION
    verify_ssl: bool = True
    timeout: float = 30.0
    session_token: str | None = None

    def __post_init__(self) -> None:
        """Validate and normalize fields."""
        if not self.access_key or not self.secret_key:
            raise ConfigError("Storage credentials require an access key and a secret")
        if not self.endpoint:
            raise ConfigError("Storage credentials require an endpoint")

        endpoint = self.endpoint.rstrip("/")
        if "://" not in endpoint:
            endpoint = ("https://" if self.use_tls else "http://") + endpoint
        object.__setattr__(self, "endpoint", endpoint)

        if self.part_size_hint_mb <= MIN_PART_SIZE_HINT_MB:
            object.__setattr__(self, "part_size_hint_mb", MIN_PART_SIZE_HINT_MB)

    @property
    def bucket(self) -> str:
        """Bucket holding the account's objects."""
        return self.access_key

    @property
    def part_size(self) -> int:
        """Part size hint in bytes."""
        return self.part_size_hint_mb * 1024 * 1024

    @property
    def is_secure(self) -> bool:
        """Check if the endpoint uses HTTPS."""
        return self.endpoint.startswith("https://")

    def object_key(self, remote_key: str) -> str:
        """Return the full object key for a user-facing remote key.

        Keys live under "<access_key>/" inside the account bucket.
        """
        key = remote_key.lstrip("/")
        if not key:
            raise ConfigError("Remote key must not be empty")
        prefix = f"{self.access_key}/"
        return key if key.startswith(prefix) else prefix + key
