"""BlobService: protocol for the remote blob service collaborator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from blobstream.checksum import ContentChecksum
    from blobstream.conditions import AccessCondition
    from blobstream.types import BlobHandle, BlobProperties, BytesLike


@dataclass(frozen=True, slots=True)
class ChecksumRequest:
    """Which per-range hashes a ranged read should return."""

    md5: bool = False
    crc64: bool = False

    @property
    def any(self) -> bool:
        return self.md5 or self.crc64


@dataclass(frozen=True, slots=True)
class WriteResult:
    """Outcome of a mutating request.

    ``etag`` is ``None`` for requests that do not touch the committed blob
    (staging a block on a blob that does not exist yet). ``content_md5`` /
    ``content_crc64`` echo the hashes the service computed over the request
    body when the caller sent transactional hashes.
    """

    etag: str | None
    last_modified: datetime | None
    content_md5: str | None = None
    content_crc64: str | None = None
    append_offset: int | None = None
    sequence_number: int | None = None


@dataclass(frozen=True, slots=True)
class RangeResult:
    """Bytes of one ranged read plus the blob's properties at read time."""

    data: bytes
    properties: BlobProperties
    content_md5: str | None = None
    content_crc64: str | None = None

    @property
    def etag(self) -> str:
        return self.properties.etag


@runtime_checkable
class BlobService(Protocol):
    """Remote blob service protocol.

    Implementations evaluate access conditions server-side and raise the
    ``StorageError`` family (``PreconditionFailedError``, ``NotModifiedError``,
    ``ConflictError``, ``BlobNotFoundError``) on failure. Data passed to
    write operations may be a ``memoryview`` that is only valid for the
    duration of the call.
    """

    def get_properties(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobProperties:
        """Return the blob's properties (HEAD)."""
        ...

    def get_range(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
        checksum: ChecksumRequest | None = None,
    ) -> RangeResult:
        """Read ``length`` bytes starting at ``offset`` (fewer at the end of the blob)."""
        ...

    def create_page_blob(
        self,
        handle: BlobHandle,
        size: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Create or replace a zero-filled page blob of ``size`` bytes."""
        ...

    def create_append_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> WriteResult:
        """Create or replace an empty append blob."""
        ...

    def put_block(
        self,
        handle: BlobHandle,
        block_id: str,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Stage an uncommitted block."""
        ...

    def put_block_list(
        self,
        handle: BlobHandle,
        block_ids: Sequence[str],
        *,
        content_checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Commit the listed blocks, in order, as the blob's content."""
        ...

    def append_block(
        self,
        handle: BlobHandle,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Append one block to an append blob."""
        ...

    def write_pages(
        self,
        handle: BlobHandle,
        offset: int,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Write 512-byte aligned pages at ``offset``."""
        ...

    def clear_pages(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Zero 512-byte aligned pages."""
        ...

    def set_properties(
        self,
        handle: BlobHandle,
        *,
        content_checksum: ContentChecksum | None = None,
        content_type: str | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Update stored content headers; ``None`` leaves a header unchanged."""
        ...

    def set_metadata(
        self,
        handle: BlobHandle,
        metadata: Mapping[str, str],
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Replace the blob's metadata."""
        ...

    def create_snapshot(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobHandle:
        """Create a read-only snapshot and return its handle."""
        ...

    def delete_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> None:
        """Delete the blob together with its snapshots."""
        ...
