"""Object storage backends for multipart transfers.

This module provides:
- Abstract interface for the multipart capability set
- MemoryObjectStore for development/testing
- S3ObjectStore for the S3-compatible archive (MinIO, Ceph, AWS)
"""

from __future__ import annotations

import base64
import hashlib
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from sdatransfer.core.errors import ChecksumMismatch, NetworkError, ServiceError

if TYPE_CHECKING:
    from typing import Any

    from sdatransfer.core.config import StorageConfig


@dataclass(frozen=True)
class PartData:
    """Bytes returned by a ranged read.

    Attributes:
        data: The bytes of the requested range.
        md5: Hex MD5 reported by the service for this range, if any.
    """

    data: bytes
    md5: str | None = None


def md5_hex(data: bytes) -> str:
    """Return the hex MD5 digest of data (the S3 part ETag)."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def normalize_etag(etag: str) -> str:
    """Strip quotes and whitespace from an ETag."""
    return etag.strip().strip('"').lower()


def is_md5_etag(etag: str) -> bool:
    """Whether an ETag has the shape of a plain MD5 digest.

    Some backends return ETags that are not digests at all; those cannot be
    checked against the payload. SSE-KMS ETags look like digests but are
    not, so jobs on such buckets turn verify_checksums off and rely on the
    service rejecting a bad Content-MD5.
    """
    value = normalize_etag(etag)
    return len(value) == 32 and all(c in "0123456789abcdef" for c in value)


class ObjectStore(ABC):
    """Abstract interface for multipart object storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @property
    @abstractmethod
    def min_part_size(self) -> int:
        """Smallest size the service accepts for a part other than the last."""

    @abstractmethod
    def head(self, key: str) -> int:
        """Return the size of an object in bytes.

        Raises:
            ServiceError: If the object does not exist (code "NoSuchKey").
        """

    @abstractmethod
    def create_multipart(self, key: str) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def put_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        body: BinaryIO,
        size: int,
        md5: str,
    ) -> str:
        """Upload one part.

        Args:
            key: Object key.
            upload_id: Multipart upload id.
            part_number: 1-based part number.
            body: Seekable stream with the part bytes.
            size: Number of bytes in body.
            md5: Hex MD5 of the part, sent for service-side validation.

        Returns:
            The ETag returned by the service.
        """

    @abstractmethod
    def get_part(self, key: str, start: int, end: int) -> PartData:
        """Read bytes [start, end) of an object."""

    @abstractmethod
    def complete_multipart(
        self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]
    ) -> None:
        """Assemble the uploaded parts (part number, ETag) into the object."""

    @abstractmethod
    def abort_multipart(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload and release its parts."""

    @abstractmethod
    def list_parts(self, key: str, upload_id: str) -> dict[int, str]:
        """Return the parts the service holds for an upload (number -> ETag).

        Raises:
            ServiceError: If the upload no longer exists (code "NoSuchUpload").
        """


class MemoryObjectStore(ObjectStore):
    """In-process object store for development and testing.

    Mirrors S3 semantics closely enough for the transfer pipeline: ETags are
    quoted MD5 digests, completion validates part ETags, ranged reads report
    the MD5 of the returned bytes.
    """

    def __init__(self, min_part_size: int = 0) -> None:
        self._min_part_size = min_part_size
        self._lock = threading.Lock()
        self.objects: dict[str, bytes] = {}
        self.uploads: dict[str, tuple[str, dict[int, bytes]]] = {}
        self.aborted: list[str] = []

    @property
    def location(self) -> str:
        """Return the in-memory location."""
        return "Memory"

    @property
    def min_part_size(self) -> int:
        """Return the configured minimum part size."""
        return self._min_part_size

    def head(self, key: str) -> int:
        """Return the size of an object."""
        with self._lock:
            if key not in self.objects:
                raise ServiceError(f"Object not found: {key}", code="NoSuchKey", status=404)
            return len(self.objects[key])

    def create_multipart(self, key: str) -> str:
        """Start a multipart upload."""
        upload_id = uuid.uuid4().hex
        with self._lock:
            self.uploads[upload_id] = (key, {})
        return upload_id

    def put_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        body: BinaryIO,
        size: int,
        md5: str,
    ) -> str:
        """Store one part."""
        data = body.read()
        if len(data) != size or md5_hex(data) != md5:
            raise ChecksumMismatch(f"Part {part_number} body does not match its digest")
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None or upload[0] != key:
                raise ServiceError(f"Upload not found: {upload_id}", code="NoSuchUpload", status=404)
            upload[1][part_number] = data
        return f'"{md5_hex(data)}"'

    def get_part(self, key: str, start: int, end: int) -> PartData:
        """Read a byte range."""
        with self._lock:
            if key not in self.objects:
                raise ServiceError(f"Object not found: {key}", code="NoSuchKey", status=404)
            data = self.objects[key][start:end]
        return PartData(data=data, md5=md5_hex(data))

    def complete_multipart(
        self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]
    ) -> None:
        """Assemble the object from its parts."""
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None or upload[0] != key:
                raise ServiceError(f"Upload not found: {upload_id}", code="NoSuchUpload", status=404)
            stored = upload[1]
            chunks = []
            for number, etag in sorted(parts):
                data = stored.get(number)
                if data is None or normalize_etag(etag) != md5_hex(data):
                    raise ServiceError(f"Invalid part {number}", code="InvalidPart", status=400)
                chunks.append(data)
            self.objects[key] = b"".join(chunks)
            del self.uploads[upload_id]

    def abort_multipart(self, key: str, upload_id: str) -> None:
        """Drop an upload and its parts."""
        with self._lock:
            self.uploads.pop(upload_id, None)
            self.aborted.append(upload_id)

    def list_parts(self, key: str, upload_id: str) -> dict[int, str]:
        """List the parts of an upload."""
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None or upload[0] != key:
                raise ServiceError(f"Upload not found: {upload_id}", code="NoSuchUpload", status=404)
            return {number: f'"{md5_hex(data)}"' for number, data in upload[1].items()}


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map botocore exceptions onto the transfer error taxonomy."""
    from botocore.exceptions import (
        BotoCoreError,
        ClientError,
        HTTPClientError,
    )
    from botocore.exceptions import ConnectionError as BotoConnectionError

    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = f"{operation} failed: {code} {error.get('Message', '')}".strip()
        if code in ("BadDigest", "InvalidDigest"):
            raise ChecksumMismatch(message) from e
        raise ServiceError(message, code=code, status=status) from e
    except (BotoConnectionError, HTTPClientError) as e:
        raise NetworkError(f"{operation} failed: {e}") from e
    except BotoCoreError as e:
        raise ServiceError(f"{operation} failed: {e}", code=type(e).__name__) from e


class S3ObjectStore(ObjectStore):
    """S3-compatible storage using path-style addressing.

    The account's access key is the bucket, and object keys are prefixed
    with it (see StorageConfig.object_key).
    """

    def __init__(self, config: StorageConfig, client: Any | None = None) -> None:
        """Initialize S3 storage.

        Args:
            config: Resolved connection settings.
            client: Pre-built boto3 S3 client (built from config when omitted).
        """
        self._config = config
        if client is None:
            import boto3
            from botocore.config import Config

            client = boto3.client(
                "s3",
                endpoint_url=config.endpoint,
                aws_access_key_id=config.access_key,
                aws_secret_access_key=config.secret_key,
                aws_session_token=config.session_token,
                region_name=config.region,
                verify=config.verify_ssl,
                config=Config(
                    s3={"addressing_style": "path"},
                    connect_timeout=config.timeout,
                    read_timeout=config.timeout,
                    # Retries are handled by RetryPolicy
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        self._client: Any = client

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        return f"S3: {self._config.endpoint}/{self._config.bucket}"

    @property
    def min_part_size(self) -> int:
        """S3 rejects parts below 5 MiB except the last one."""
        return 5 * 1024 * 1024

    def _key(self, key: str) -> str:
        return self._config.object_key(key)

    def head(self, key: str) -> int:
        """Return the object size."""
        with _translate_errors(f"head {key}"):
            response = self._client.head_object(Bucket=self._config.bucket, Key=self._key(key))
        size = response.get("ContentLength")
        if not isinstance(size, int):
            raise ServiceError(f"head {key} did not return ContentLength", code="InvalidResponse")
        return size

    def create_multipart(self, key: str) -> str:
        """Start a multipart upload."""
        with _translate_errors(f"create multipart upload for {key}"):
            response = self._client.create_multipart_upload(
                Bucket=self._config.bucket,
                Key=self._key(key),
            )
        upload_id = response.get("UploadId")
        if not isinstance(upload_id, str) or not upload_id:
            raise ServiceError("create_multipart_upload did not return UploadId", code="InvalidResponse")
        return upload_id

    def put_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        body: BinaryIO,
        size: int,
        md5: str,
    ) -> str:
        """Upload one part with a Content-MD5 header."""
        content_md5 = base64.b64encode(bytes.fromhex(md5)).decode("ascii")
        with _translate_errors(f"upload part {part_number} of {key}"):
            response = self._client.upload_part(
                Bucket=self._config.bucket,
                Key=self._key(key),
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
                ContentLength=size,
                ContentMD5=content_md5,
            )
        etag = response.get("ETag")
        if not isinstance(etag, str) or not etag:
            raise ServiceError(f"upload_part {part_number} did not return an ETag", code="InvalidResponse")
        return etag

    def get_part(self, key: str, start: int, end: int) -> PartData:
        """Read a byte range with a Range header.

        S3 sends no Content-MD5 for ranged reads, so md5 is usually None and
        only the length of the range can be checked.
        """
        with _translate_errors(f"read bytes {start}-{end - 1} of {key}"):
            response = self._client.get_object(
                Bucket=self._config.bucket,
                Key=self._key(key),
                Range=f"bytes={start}-{end - 1}",
            )
            data = response["Body"].read()

        headers = response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
        content_md5 = headers.get("content-md5")
        md5 = base64.b64decode(content_md5).hex() if content_md5 else None
        return PartData(data=data, md5=md5)

    def complete_multipart(
        self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]
    ) -> None:
        """Finalize the multipart upload."""
        with _translate_errors(f"complete multipart upload for {key}"):
            self._client.complete_multipart_upload(
                Bucket=self._config.bucket,
                Key=self._key(key),
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": number, "ETag": etag} for number, etag in sorted(parts)
                    ]
                },
            )

    def abort_multipart(self, key: str, upload_id: str) -> None:
        """Abort the multipart upload."""
        with _translate_errors(f"abort multipart upload for {key}"):
            self._client.abort_multipart_upload(
                Bucket=self._config.bucket,
                Key=self._key(key),
                UploadId=upload_id,
            )

    def list_parts(self, key: str, upload_id: str) -> dict[int, str]:
        """List the uploaded parts, following pagination."""
        parts: dict[int, str] = {}
        with _translate_errors(f"list parts of {key}"):
            paginator = self._client.get_paginator("list_parts")
            for page in paginator.paginate(
                Bucket=self._config.bucket,
                Key=self._key(key),
                UploadId=upload_id,
            ):
                for part in page.get("Parts", []):
                    parts[int(part["PartNumber"])] = str(part["ETag"])
        return parts


def create_store(config: StorageConfig) -> ObjectStore:
    """Factory function to create the store for a storage configuration."""
    return S3ObjectStore(config)
