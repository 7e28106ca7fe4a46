"""Exception hierarchy for sda-transfer.

Every error raised by the pipeline derives from TransferError so callers can
catch one type. The orchestrator decides between an aborted and a resumable
outcome from the concrete class and the ``retryable`` flag.
"""

from __future__ import annotations


class TransferError(Exception):
    """Base exception for transfer errors."""

    retryable: bool = False


class ConfigError(TransferError):
    """Bad job parameters or key material."""


class KeyUnsealError(TransferError):
    """None of the header packets could be opened with the given private key."""


class IntegrityError(TransferError):
    """A header or data block failed authentication or is malformed."""


class PlanningError(TransferError):
    """The object size cannot be split within the service part limits."""


class SizeUnknownError(TransferError):
    """The input size cannot be determined before the upload starts."""


class TransferCancelled(TransferError):
    """The job was cancelled by the caller."""


class CheckpointError(TransferError):
    """The local checkpoint store could not record or read job state."""


class ChecksumMismatch(TransferError):
    """The service checksum does not match the bytes sent or received.

    Attributes:
        expected: Checksum computed locally.
        actual: Checksum reported by the service.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NetworkError(TransferError):
    """Connection-level failure talking to the storage service."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ServiceError(TransferError):
    """Error response from the storage service.

    Attributes:
        code: Service error code (e.g. "NoSuchUpload", "SlowDown").
        status: HTTP status code, if known.
    """

    def __init__(self, message: str, code: str = "", status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.retryable = is_retryable_status(status, code)


RETRYABLE_CODES = frozenset({
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
})


def is_retryable_status(status: int | None, code: str = "") -> bool:
    """Return True for throttling and server-side failures.

    Args:
        status: HTTP status code of the response.
        code: Service error code.

    Returns:
        True for 429, any 5xx, or a known transient error code.
    """
    if code in RETRYABLE_CODES:
        return True
    if status is None:
        return False
    return status == 429 or status >= 500
