"""Multipart part planning.

Splits an encrypted object into parts that respect the storage service
limits while keeping every part boundary on a block boundary, so a part can
be produced by the encoder (or consumed by the decoder) without buffering a
partial block across parts.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence
from dataclasses import dataclass

from sdatransfer.core.crypto import CIPHER_SEGMENT_SIZE, SEGMENT_SIZE
from sdatransfer.core.errors import PlanningError

# S3 multipart limits
S3_MIN_PART_SIZE = 5 * 1024 * 1024
S3_MAX_PART_SIZE = 5 * 1024 * 1024 * 1024
S3_MAX_PARTS = 10_000


@dataclass(frozen=True)
class PartRange:
    """Byte range of one part within the encrypted stream.

    Attributes:
        number: 1-based part number.
        start: First byte offset (inclusive).
        end: Last byte offset (exclusive).
        first_block: Index of the first block in this part.
        block_count: Number of blocks in this part.
    """

    number: int
    start: int
    end: int
    first_block: int
    block_count: int

    @property
    def size(self) -> int:
        """Return the part length in bytes."""
        return self.end - self.start

    @property
    def plaintext_offset(self) -> int:
        """Offset of this part's first plaintext byte."""
        return self.first_block * SEGMENT_SIZE

    def plaintext_size(self, plaintext_total: int) -> int:
        """Number of plaintext bytes carried by this part."""
        end = min(plaintext_total, (self.first_block + self.block_count) * SEGMENT_SIZE)
        return max(0, end - self.plaintext_offset)


def plan_parts(
    total_size: int,
    min_part_size: int,
    max_part_count: int = S3_MAX_PARTS,
    *,
    block_size: int = CIPHER_SEGMENT_SIZE,
    header_size: int = 0,
    max_part_size: int = S3_MAX_PART_SIZE,
) -> list[PartRange]:
    """Compute block-aligned part ranges for an object.

    Part 1 carries the header (header_size bytes) in front of its blocks,
    so its byte length is header_size plus a multiple of block_size. Parts
    2 to n-1 are exact multiples of block_size; only the last part may end
    on a partial block. Every part but the last spans the same number of
    blocks.

    Args:
        total_size: Size of the encrypted object in bytes.
        min_part_size: Requested part size; rounded up to whole blocks.
        max_part_count: Maximum number of parts the service accepts.
        block_size: Encoded size of one full block.
        header_size: Bytes before the first block.
        max_part_size: Maximum size of a single part.

    Returns:
        Ordered list of PartRange covering [0, total_size).

    Raises:
        PlanningError: If the inputs are invalid or the object cannot be
            covered within the part limits.
    """
    if total_size < 0 or header_size < 0 or header_size > total_size:
        raise PlanningError(f"Invalid sizes: total={total_size}, header={header_size}")
    if min_part_size <= 0 or max_part_count <= 0 or block_size <= 0:
        raise PlanningError("Part size, part count and block size must be positive")

    body = total_size - header_size
    total_blocks = math.ceil(body / block_size)
    if total_blocks == 0:
        return [PartRange(number=1, start=0, end=total_size, first_block=0, block_count=0)]

    blocks_per_part = max(
        math.ceil(min_part_size / block_size),
        math.ceil(total_blocks / max_part_count),
    )
    largest_part = header_size + min(blocks_per_part, total_blocks) * block_size
    if largest_part > max_part_size:
        raise PlanningError(
            f"Object of {total_size} bytes needs parts of {largest_part} bytes, "
            f"above the {max_part_size} byte limit at {max_part_count} parts"
        )

    parts: list[PartRange] = []
    first_block = 0
    while first_block < total_blocks:
        count = min(blocks_per_part, total_blocks - first_block)
        start = 0 if first_block == 0 else header_size + first_block * block_size
        end = min(total_size, header_size + (first_block + count) * block_size)
        parts.append(
            PartRange(
                number=len(parts) + 1,
                start=start,
                end=end,
                first_block=first_block,
                block_count=count,
            )
        )
        first_block += count
    return parts


def plan_fingerprint(parts: Sequence[PartRange]) -> str:
    """Return a stable digest of a plan, used to validate checkpoints."""
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(f"{part.number}:{part.start}:{part.end}:{part.first_block};".encode())
    return hasher.hexdigest()
