"""Shared types for sda-transfer."""

from __future__ import annotations

from enum import Enum


class TransferDirection(str, Enum):
    """Direction of a transfer job."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class PartStatus(str, Enum):
    """Completion state of one part."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    FAILED = "failed"
