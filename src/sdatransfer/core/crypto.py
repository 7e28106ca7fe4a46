"""Streaming container format for sda-transfer.

This module provides:
- Header sealing of a per-file data key for one or more X25519 recipients
- Block-wise authenticated encryption using ChaCha20-Poly1305
- Lazy encoder/decoder iterators that never hold more than one block
- Size arithmetic shared with the part planner

Layout of an encrypted file:

    header  = "crypt4gh" || u32 version || u32 packet_count || packet*
    packet  = u32 length || u32 method || writer_pk(32) || nonce(12)
              || sealed(u32 type || u32 cipher || data_key(32)) || tag(16)
    block   = nonce(12) || ciphertext || tag(16)

Each block authenticates its own index and a final-block flag as associated
data, so reordered, missing or trailing blocks fail verification.
"""

from __future__ import annotations

import io
import math
import os
import struct
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from sdatransfer.core.errors import ConfigError, IntegrityError, KeyUnsealError

MAGIC = b"crypt4gh"
VERSION = 1

# Header packet constants
METHOD_X25519_CHACHA20 = 0
PACKET_TYPE_DATA_KEY = 0
CIPHER_CHACHA20_POLY1305 = 0
HEADER_PREFIX_SIZE = 16  # magic + version + packet count
PACKET_SIZE = 108  # length + method + writer pk + nonce + sealed payload + tag

# Block constants
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SEGMENT_SIZE = 64 * 1024  # plaintext bytes per block
BLOCK_OVERHEAD = NONCE_SIZE + TAG_SIZE
CIPHER_SEGMENT_SIZE = SEGMENT_SIZE + BLOCK_OVERHEAD

_HKDF_INFO = b"sda-transfer header v1"


@dataclass(frozen=True)
class CipherBlock:
    """One authenticated block of the container body.

    Attributes:
        index: Sequence number, contiguous from 0.
        plaintext_length: Number of plaintext bytes sealed in this block.
        ciphertext: Nonce followed by the encrypted bytes.
        tag: Poly1305 authentication tag.
        final: Whether this is the last block of the file.
    """

    index: int
    plaintext_length: int
    ciphertext: bytes
    tag: bytes
    final: bool = False

    @property
    def size(self) -> int:
        """Return the encoded size of this block in bytes."""
        return len(self.ciphertext) + len(self.tag)

    def to_bytes(self) -> bytes:
        """Return the wire encoding of this block."""
        return self.ciphertext + self.tag


def generate_data_key() -> bytes:
    """Generate a random 256-bit data key for one file."""
    return os.urandom(KEY_SIZE)


def public_key_from_private(private_key: bytes) -> bytes:
    """Derive the raw X25519 public key for a raw private key.

    Raises:
        ConfigError: If the private key is not 32 bytes.
    """
    return _raw_public(_load_private(private_key))


def generate_keypair() -> tuple[bytes, bytes]:
    """Return a fresh (private, public) raw X25519 key pair."""
    private = X25519PrivateKey.generate()
    return private.private_bytes_raw(), _raw_public(private)


def _load_private(private_key: bytes) -> X25519PrivateKey:
    try:
        return X25519PrivateKey.from_private_bytes(private_key)
    except ValueError as e:
        raise ConfigError(f"Invalid X25519 private key: {e}") from e


def _load_public(public_key: bytes) -> X25519PublicKey:
    try:
        return X25519PublicKey.from_public_bytes(public_key)
    except ValueError as e:
        raise ConfigError(f"Invalid X25519 public key: {e}") from e


def _raw_public(private: X25519PrivateKey) -> bytes:
    return private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def _packet_key(shared: bytes, reader_pk: bytes, writer_pk: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=_HKDF_INFO + reader_pk + writer_pk,
    )
    return hkdf.derive(shared)


def _data_cipher(data_key: bytes) -> ChaCha20Poly1305:
    if len(data_key) != KEY_SIZE:
        raise ConfigError(f"Data key must be {KEY_SIZE} bytes, got {len(data_key)}")
    return ChaCha20Poly1305(data_key)


def _block_aad(index: int, final: bool) -> bytes:
    return struct.pack("<QB", index, 1 if final else 0)


def _read_exact(source: BinaryIO, size: int) -> bytes:
    """Read up to size bytes, looping over short reads until EOF."""
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


# === Header ===


def header_size(recipient_count: int) -> int:
    """Return the header length for the given number of recipients."""
    return HEADER_PREFIX_SIZE + PACKET_SIZE * recipient_count


def seal_header(
    data_key: bytes,
    recipient_public_keys: Sequence[bytes],
    writer_private_key: bytes | None = None,
) -> bytes:
    """Seal the data key once for every recipient.

    Args:
        data_key: 32-byte file key.
        recipient_public_keys: Raw X25519 public keys of the readers.
        writer_private_key: Sender key; an ephemeral key is used when omitted.

    Returns:
        The encoded header.

    Raises:
        ConfigError: If there are no recipients or a key is malformed.
    """
    if len(data_key) != KEY_SIZE:
        raise ConfigError(f"Data key must be {KEY_SIZE} bytes, got {len(data_key)}")
    if not recipient_public_keys:
        raise ConfigError("At least one recipient public key is required")

    if writer_private_key is None:
        writer = X25519PrivateKey.generate()
    else:
        writer = _load_private(writer_private_key)
    writer_pk = _raw_public(writer)

    payload = struct.pack("<II", PACKET_TYPE_DATA_KEY, CIPHER_CHACHA20_POLY1305) + data_key
    packets = []
    for reader_pk in recipient_public_keys:
        shared = writer.exchange(_load_public(reader_pk))
        nonce = os.urandom(NONCE_SIZE)
        sealed = ChaCha20Poly1305(_packet_key(shared, reader_pk, writer_pk)).encrypt(
            nonce, payload, None
        )
        body = struct.pack("<I", METHOD_X25519_CHACHA20) + writer_pk + nonce + sealed
        packets.append(struct.pack("<I", len(body) + 4) + body)

    return MAGIC + struct.pack("<II", VERSION, len(packets)) + b"".join(packets)


def packet_count(prefix: bytes) -> int:
    """Validate the fixed header prefix and return its packet count.

    Raises:
        IntegrityError: On bad magic, an unknown version or zero packets.
    """
    if len(prefix) < HEADER_PREFIX_SIZE or prefix[:8] != MAGIC:
        raise IntegrityError("Not an encrypted container (bad magic)")
    version, count = struct.unpack("<II", prefix[8:HEADER_PREFIX_SIZE])
    if version != VERSION:
        raise IntegrityError(f"Unsupported container version {version}")
    if count == 0:
        raise IntegrityError("Header has no packets")
    return count


def read_header(source: BinaryIO, private_key: bytes) -> tuple[bytes, int]:
    """Parse a header from source and unseal the data key.

    The source is left positioned at the first data block.

    Args:
        source: Binary stream positioned at the start of the container.
        private_key: Raw X25519 private key of the reader.

    Returns:
        Tuple of (data_key, header_length).

    Raises:
        IntegrityError: If the header is malformed or truncated.
        KeyUnsealError: If no packet can be opened with private_key.
    """
    reader = _load_private(private_key)
    reader_pk = _raw_public(reader)

    count = packet_count(_read_exact(source, HEADER_PREFIX_SIZE))

    data_key: bytes | None = None
    length = HEADER_PREFIX_SIZE
    for _ in range(count):
        raw_length = _read_exact(source, 4)
        if len(raw_length) < 4:
            raise IntegrityError("Truncated header packet")
        (packet_length,) = struct.unpack("<I", raw_length)
        if packet_length < 4 + 4 + KEY_SIZE + NONCE_SIZE + TAG_SIZE:
            raise IntegrityError(f"Header packet too short ({packet_length} bytes)")
        body = _read_exact(source, packet_length - 4)
        if len(body) < packet_length - 4:
            raise IntegrityError("Truncated header packet")
        length += packet_length
        if data_key is None:
            data_key = _open_packet(body, reader, reader_pk)

    if data_key is None:
        raise KeyUnsealError("The private key cannot unseal any recipient entry")
    return data_key, length


def _open_packet(body: bytes, reader: X25519PrivateKey, reader_pk: bytes) -> bytes | None:
    """Return the data key from one packet, or None if it is not ours."""
    (method,) = struct.unpack("<I", body[:4])
    if method != METHOD_X25519_CHACHA20:
        return None
    writer_pk = body[4 : 4 + KEY_SIZE]
    nonce = body[4 + KEY_SIZE : 4 + KEY_SIZE + NONCE_SIZE]
    sealed = body[4 + KEY_SIZE + NONCE_SIZE :]
    try:
        shared = reader.exchange(X25519PublicKey.from_public_bytes(writer_pk))
        payload = ChaCha20Poly1305(_packet_key(shared, reader_pk, writer_pk)).decrypt(
            nonce, sealed, None
        )
    except (InvalidTag, ValueError):
        return None

    packet_type, cipher = struct.unpack("<II", payload[:8])
    if packet_type != PACKET_TYPE_DATA_KEY or cipher != CIPHER_CHACHA20_POLY1305:
        raise IntegrityError(f"Unsupported header packet (type={packet_type}, cipher={cipher})")
    data_key = payload[8:]
    if len(data_key) != KEY_SIZE:
        raise IntegrityError("Header packet carries a malformed data key")
    return data_key


# === Sizes ===


def block_count(plaintext_size: int) -> int:
    """Return the number of blocks for a plaintext of the given size.

    An empty plaintext still produces one (empty) final block.
    """
    return max(1, math.ceil(plaintext_size / SEGMENT_SIZE))


def encrypted_size(plaintext_size: int, header_length: int) -> int:
    """Return the container size for a plaintext of the given size."""
    return header_length + plaintext_size + block_count(plaintext_size) * BLOCK_OVERHEAD


def decrypted_size(cipher_size: int, header_length: int) -> int:
    """Return the plaintext size of a container of the given size.

    Raises:
        IntegrityError: If the body length cannot be a valid block sequence.
    """
    body = cipher_size - header_length
    if body < BLOCK_OVERHEAD:
        raise IntegrityError(f"Container body too short ({body} bytes)")
    full, rest = divmod(body, CIPHER_SEGMENT_SIZE)
    if rest == 0:
        return full * SEGMENT_SIZE
    if rest < BLOCK_OVERHEAD:
        raise IntegrityError(f"Container ends with a partial block ({rest} bytes)")
    return full * SEGMENT_SIZE + rest - BLOCK_OVERHEAD


# === Encoding ===


def encrypt_block(data_key: bytes, index: int, plaintext: bytes, final: bool) -> CipherBlock:
    """Encrypt one plaintext window into a CipherBlock."""
    return _seal_block(_data_cipher(data_key), index, plaintext, final)


def _seal_block(aead: ChaCha20Poly1305, index: int, plaintext: bytes, final: bool) -> CipherBlock:
    nonce = os.urandom(NONCE_SIZE)
    sealed = aead.encrypt(nonce, plaintext, _block_aad(index, final))
    return CipherBlock(
        index=index,
        plaintext_length=len(plaintext),
        ciphertext=nonce + sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:],
        final=final,
    )


def open_encoder(
    data_key: bytes,
    plaintext_source: BinaryIO,
    start_index: int = 0,
    max_blocks: int | None = None,
    total_blocks: int | None = None,
) -> Iterator[CipherBlock]:
    """Open a lazy block encoder over plaintext_source.

    The source is read exactly once per block. To re-encode from a given
    block, seek the source to ``start_index * SEGMENT_SIZE`` and open a new
    encoder with that start_index.

    Args:
        data_key: 32-byte file key.
        plaintext_source: Binary stream positioned at block start_index.
        start_index: Index of the first block produced.
        max_blocks: Stop after this many blocks (requires total_blocks).
        total_blocks: Number of blocks in the whole file. When omitted, the
            final block is detected by reading one block ahead.

    Returns:
        Iterator of CipherBlock in strictly increasing index order.

    Raises:
        ConfigError: If the key is malformed or max_blocks is used without total_blocks.
    """
    aead = _data_cipher(data_key)
    if total_blocks is None:
        if max_blocks is not None or start_index != 0:
            raise ConfigError("Partial encoding requires the total block count")
        return _encode_stream(aead, plaintext_source)

    stop = total_blocks if max_blocks is None else min(total_blocks, start_index + max_blocks)
    return _encode_counted(aead, plaintext_source, start_index, stop, total_blocks)


def _encode_stream(aead: ChaCha20Poly1305, source: BinaryIO) -> Iterator[CipherBlock]:
    index = 0
    window = _read_exact(source, SEGMENT_SIZE)
    while True:
        following = _read_exact(source, SEGMENT_SIZE) if len(window) == SEGMENT_SIZE else b""
        final = not following
        yield _seal_block(aead, index, window, final)
        if final:
            return
        window = following
        index += 1


def _encode_counted(
    aead: ChaCha20Poly1305,
    source: BinaryIO,
    index: int,
    stop: int,
    total_blocks: int,
) -> Iterator[CipherBlock]:
    while index < stop:
        window = _read_exact(source, SEGMENT_SIZE)
        final = index == total_blocks - 1
        if not final and len(window) < SEGMENT_SIZE:
            raise IntegrityError(
                f"Source ended inside block {index} of {total_blocks}; was the file modified?"
            )
        yield _seal_block(aead, index, window, final)
        index += 1


# === Decoding ===


class BlockDecoder:
    """Push-style decoder that enforces block order and end of stream.

    Used when ciphertext arrives in parts rather than from one stream.
    """

    def __init__(self, data_key: bytes, start_index: int = 0) -> None:
        self._aead = _data_cipher(data_key)
        self._next_index = start_index
        self._finished = False

    @property
    def next_index(self) -> int:
        """Index of the next block this decoder accepts."""
        return self._next_index

    @property
    def finished(self) -> bool:
        """Whether the final block has been decoded."""
        return self._finished

    def decode(self, index: int, raw: bytes, final: bool) -> bytes:
        """Verify and decrypt one encoded block.

        Raises:
            IntegrityError: On an out-of-order block, data after the final
                block, or a failing tag.
        """
        if self._finished:
            raise IntegrityError(f"Unexpected block {index} after the final block")
        if index != self._next_index:
            raise IntegrityError(f"Expected block {self._next_index}, got {index}")
        if len(raw) < BLOCK_OVERHEAD:
            raise IntegrityError(f"Block {index} is truncated ({len(raw)} bytes)")
        try:
            plaintext = self._aead.decrypt(
                raw[:NONCE_SIZE], raw[NONCE_SIZE:], _block_aad(index, final)
            )
        except InvalidTag as e:
            raise IntegrityError(f"Block {index} failed authentication") from e
        self._next_index += 1
        self._finished = final
        return plaintext

    def decode_span(self, data: bytes, ends_stream: bool) -> bytes:
        """Decode a run of consecutive blocks, all or nothing.

        Args:
            data: Concatenated encoded blocks; only the last may be short.
            ends_stream: Whether the last block in data is the final block.

        Returns:
            The plaintext of every block in data.
        """
        offsets = range(0, len(data), CIPHER_SEGMENT_SIZE)
        plaintexts = []
        for position, offset in enumerate(offsets):
            raw = data[offset : offset + CIPHER_SEGMENT_SIZE]
            final = ends_stream and position == len(offsets) - 1
            plaintexts.append(self.decode(self._next_index, raw, final))
        return b"".join(plaintexts)


def open_decoder(private_key: bytes, ciphertext_source: BinaryIO) -> Iterator[bytes]:
    """Open a lazy decoder over an encrypted stream.

    The header is read eagerly so key problems surface immediately; blocks
    are then verified one at a time and only authenticated plaintext is
    yielded.

    Raises:
        KeyUnsealError: If the private key cannot open the header.
        IntegrityError: On a malformed header (or, lazily, a failing block).
    """
    data_key, _ = read_header(ciphertext_source, private_key)
    return _decode_stream(BlockDecoder(data_key), ciphertext_source)


def _decode_stream(decoder: BlockDecoder, source: BinaryIO) -> Iterator[bytes]:
    raw = _read_exact(source, CIPHER_SEGMENT_SIZE)
    while True:
        following = b""
        if len(raw) == CIPHER_SEGMENT_SIZE:
            following = _read_exact(source, CIPHER_SEGMENT_SIZE)
        final = not following
        yield decoder.decode(decoder.next_index, raw, final)
        if final:
            return
        raw = following


def encrypt_bytes(
    plaintext: bytes,
    recipient_public_keys: Sequence[bytes],
    writer_private_key: bytes | None = None,
) -> bytes:
    """Encrypt an in-memory plaintext into a complete container."""
    data_key = generate_data_key()
    header = seal_header(data_key, recipient_public_keys, writer_private_key)
    blocks = open_encoder(data_key, io.BytesIO(plaintext))
    return header + b"".join(block.to_bytes() for block in blocks)


def decrypt_bytes(data: bytes, private_key: bytes) -> bytes:
    """Decrypt an in-memory container.

    Either the whole plaintext is returned or an exception is raised; no
    partial plaintext escapes.
    """
    return b"".join(list(open_decoder(private_key, io.BytesIO(data))))
