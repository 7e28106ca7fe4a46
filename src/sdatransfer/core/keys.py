"""Loading of Crypt4GH key files.

Key pairs are generated elsewhere; this module only reads them into raw
32-byte X25519 keys. Supported formats:
- Public keys: "CRYPT4GH PUBLIC KEY" PEM blocks
- Private keys: "c4gh-v1" blobs, either unprotected (kdf "none") or
  protected with scrypt + ChaCha20-Poly1305
"""

from __future__ import annotations

import base64
import binascii
import struct
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from sdatransfer.core.crypto import KEY_SIZE, NONCE_SIZE
from sdatransfer.core.errors import ConfigError

PUBLIC_KEY_LABEL = "CRYPT4GH PUBLIC KEY"
PRIVATE_KEY_LABELS = ("CRYPT4GH PRIVATE KEY", "CRYPT4GH ENCRYPTED PRIVATE KEY")
PRIVATE_KEY_MAGIC = b"c4gh-v1"

# scrypt parameters used by Crypt4GH tooling
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def _pem_payload(text: str, labels: tuple[str, ...], path: Path | str) -> bytes:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if len(lines) < 3:
        raise ConfigError(f"Malformed key file: {path}")
    for label in labels:
        if lines[0] == f"-----BEGIN {label}-----" and lines[-1] == f"-----END {label}-----":
            try:
                return base64.b64decode("".join(lines[1:-1]), validate=True)
            except binascii.Error as e:
                raise ConfigError(f"Key file is not valid base64: {path}") from e
    raise ConfigError(f"Unexpected key type in {path}: {lines[0]}")


def load_public_key(path: Path | str) -> bytes:
    """Read a Crypt4GH public key file.

    Args:
        path: Path to the PEM file.

    Returns:
        Raw 32-byte X25519 public key.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    try:
        text = Path(path).read_text(encoding="ascii")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read public key {path}: {e}") from e
    key = _pem_payload(text, (PUBLIC_KEY_LABEL,), path)
    if len(key) != KEY_SIZE:
        raise ConfigError(f"Public key in {path} has {len(key)} bytes, expected {KEY_SIZE}")
    return key


def encode_public_key(public_key: bytes) -> str:
    """Encode a raw public key as a Crypt4GH PEM block."""
    body = base64.b64encode(public_key).decode("ascii")
    return f"-----BEGIN {PUBLIC_KEY_LABEL}-----\n{body}\n-----END {PUBLIC_KEY_LABEL}-----\n"


class _BlobReader:
    """Reads length-prefixed fields from a c4gh-v1 private key blob."""

    def __init__(self, blob: bytes) -> None:
        self._blob = blob
        self._pos = 0

    def take(self, size: int) -> bytes:
        if self._pos + size > len(self._blob):
            raise ConfigError("Truncated private key")
        data = self._blob[self._pos : self._pos + size]
        self._pos += size
        return data

    def string(self) -> bytes:
        (length,) = struct.unpack(">H", self.take(2))
        return self.take(length)


def parse_private_key(blob: bytes, passphrase: str | None = None) -> bytes:
    """Decode a c4gh-v1 private key blob.

    Args:
        blob: Decoded PEM payload.
        passphrase: Passphrase for protected keys.

    Returns:
        Raw 32-byte X25519 private key.

    Raises:
        ConfigError: On an unsupported format, missing or wrong passphrase.
    """
    reader = _BlobReader(blob)
    if reader.take(len(PRIVATE_KEY_MAGIC)) != PRIVATE_KEY_MAGIC:
        raise ConfigError("Not a c4gh-v1 private key")

    kdf_name = reader.string().decode("ascii", errors="replace")
    if kdf_name == "none":
        cipher_name = reader.string().decode("ascii", errors="replace")
        if cipher_name != "none":
            raise ConfigError(f"Unprotected key with unexpected cipher '{cipher_name}'")
        key = reader.string()
    elif kdf_name == "scrypt":
        kdf_options = reader.string()
        cipher_name = reader.string().decode("ascii", errors="replace")
        if cipher_name != "chacha20_poly1305":
            raise ConfigError(f"Unsupported private key cipher '{cipher_name}'")
        if passphrase is None:
            raise ConfigError("Private key is protected; a passphrase is required")
        salt = kdf_options[4:]
        secret = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P).derive(
            passphrase.encode("utf-8")
        )
        sealed = reader.string()
        try:
            key = ChaCha20Poly1305(secret).decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise ConfigError("Wrong passphrase for private key") from e
    else:
        raise ConfigError(f"Unsupported private key derivation '{kdf_name}'")

    if len(key) != KEY_SIZE:
        raise ConfigError(f"Private key has {len(key)} bytes, expected {KEY_SIZE}")
    return key


def load_private_key(path: Path | str, passphrase: str | None = None) -> bytes:
    """Read a Crypt4GH private key file.

    Args:
        path: Path to the PEM file.
        passphrase: Passphrase for protected keys.

    Returns:
        Raw 32-byte X25519 private key.
    """
    try:
        text = Path(path).read_text(encoding="ascii")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read private key {path}: {e}") from e
    return parse_private_key(_pem_payload(text, PRIVATE_KEY_LABELS, path), passphrase)


def _string(value: bytes) -> bytes:
    return struct.pack(">H", len(value)) + value


def encode_private_key(private_key: bytes) -> str:
    """Encode a raw private key as an unprotected c4gh-v1 PEM block."""
    blob = PRIVATE_KEY_MAGIC + _string(b"none") + _string(b"none") + _string(private_key)
    body = base64.b64encode(blob).decode("ascii")
    label = PRIVATE_KEY_LABELS[0]
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n"
