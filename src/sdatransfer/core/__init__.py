"""Core module - Container format, part planning, keys and shared types."""

from sdatransfer.core.config import StorageConfig
from sdatransfer.core.crypto import (
    BLOCK_OVERHEAD,
    CIPHER_SEGMENT_SIZE,
    SEGMENT_SIZE,
    BlockDecoder,
    CipherBlock,
    block_count,
    decrypt_bytes,
    decrypted_size,
    encrypt_bytes,
    encrypted_size,
    generate_data_key,
    generate_keypair,
    header_size,
    open_decoder,
    open_encoder,
    packet_count,
    public_key_from_private,
    read_header,
    seal_header,
)
from sdatransfer.core.errors import (
    CheckpointError,
    ChecksumMismatch,
    ConfigError,
    IntegrityError,
    KeyUnsealError,
    NetworkError,
    PlanningError,
    ServiceError,
    SizeUnknownError,
    TransferCancelled,
    TransferError,
)
from sdatransfer.core.keys import (
    encode_private_key,
    encode_public_key,
    load_private_key,
    load_public_key,
)
from sdatransfer.core.planning import (
    S3_MAX_PART_SIZE,
    S3_MAX_PARTS,
    S3_MIN_PART_SIZE,
    PartRange,
    plan_fingerprint,
    plan_parts,
)
from sdatransfer.core.types import PartStatus, TransferDirection

__all__ = [
    # Config
    "StorageConfig",
    # Container format
    "BLOCK_OVERHEAD",
    "BlockDecoder",
    "CIPHER_SEGMENT_SIZE",
    "CipherBlock",
    "SEGMENT_SIZE",
    "block_count",
    "decrypt_bytes",
    "decrypted_size",
    "encrypt_bytes",
    "encrypted_size",
    "generate_data_key",
    "generate_keypair",
    "header_size",
    "open_decoder",
    "open_encoder",
    "packet_count",
    "public_key_from_private",
    "read_header",
    "seal_header",
    # Errors
    "CheckpointError",
    "ChecksumMismatch",
    "ConfigError",
    "IntegrityError",
    "KeyUnsealError",
    "NetworkError",
    "PlanningError",
    "ServiceError",
    "SizeUnknownError",
    "TransferCancelled",
    "TransferError",
    # Keys
    "encode_private_key",
    "encode_public_key",
    "load_private_key",
    "load_public_key",
    # Planning
    "PartRange",
    "S3_MAX_PARTS",
    "S3_MAX_PART_SIZE",
    "S3_MIN_PART_SIZE",
    "plan_fingerprint",
    "plan_parts",
    # Types
    "PartStatus",
    "TransferDirection",
]
