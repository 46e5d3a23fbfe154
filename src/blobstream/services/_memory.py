"""InMemoryBlobService: dict-backed emulation of the blob service."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING

from blobstream.checksum import ContentChecksum, compute_checksum
from blobstream.conditions import check_append_conditions, check_header_conditions, check_sequence_conditions
from blobstream.errors import BlobNotFoundError, ConflictError, OutOfRangeError, StorageError
from blobstream.options import MAX_APPEND_BLOCK_SIZE, MAX_BLOCK_SIZE, MAX_RANGE_CHECKSUM_SIZE
from blobstream.serde import to_utc
from blobstream.services._base import ChecksumRequest, RangeResult, WriteResult
from blobstream.types import PAGE_SIZE, BlobHandle, BlobProperties, BlobType, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence
    from datetime import datetime

    from blobstream.conditions import AccessCondition
    from blobstream.types import BytesLike

logger = logging.getLogger(__name__)

BlobKey = tuple[str, str, str | None]


def blob_key(handle: BlobHandle) -> BlobKey:
    """Return the dictionary key addressing ``handle``."""
    return (handle.container, handle.name, handle.snapshot)


@dataclass(slots=True)
class BlobRecord:
    """Committed state of one blob or snapshot."""

    properties: BlobProperties
    data: bytearray
    committed_blocks: dict[str, bytes] = field(default_factory=dict)


class InMemoryBlobService:
    """Dict-backed blob service.

    Evaluates access conditions the way the remote service does, rotates the
    ETag on every mutation of committed state, and verifies transactional
    hashes sent with request bodies. Thread-safe.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        """Initialize an empty service; ``clock`` supplies last-modified times."""
        self._clock = clock
        self._lock = threading.RLock()
        self._blobs: dict[BlobKey, BlobRecord] = {}
        self._staged: dict[BlobKey, dict[str, bytes]] = {}

    def _store_record(self, key: BlobKey, record: BlobRecord) -> None:
        self._blobs[key] = record

    def _forget_record(self, key: BlobKey) -> None:
        self._blobs.pop(key, None)

    def _now(self) -> datetime:
        return to_utc(self._clock()).replace(microsecond=0)

    def _new_etag(self) -> str:
        return f'"0x{uuid.uuid4().hex[:16].upper()}"'

    def _bump(self, properties: BlobProperties, **changes: object) -> BlobProperties:
        """Return properties with a fresh ETag and last-modified time."""
        return replace(  # type: ignore[arg-type]
            properties, etag=self._new_etag(), last_modified=self._now(), **changes
        )

    def _require(self, handle: BlobHandle) -> BlobRecord:
        record = self._blobs.get(blob_key(handle))
        if record is None:
            raise BlobNotFoundError(str(handle))
        return record

    def _require_writable(self, handle: BlobHandle) -> None:
        if handle.is_snapshot:
            msg = f"Snapshots are read-only: {handle}"
            raise StorageError(msg, status=400, error_code="OperationNotAllowedOnSnapshot", resource=str(handle))

    def _require_type(self, record: BlobRecord | None, blob_type: BlobType, handle: BlobHandle) -> None:
        if record is not None and record.properties.blob_type != blob_type:
            raise ConflictError(str(handle), error_code="InvalidBlobType")

    def _verify_body(self, data: BytesLike, checksum: ContentChecksum | None, handle: BlobHandle) -> ContentChecksum:
        """Check transactional hashes against the body and return the hashes computed here."""
        if checksum is None or not checksum.has_any:
            return ContentChecksum()
        actual = compute_checksum(data, md5=checksum.md5 is not None, crc64=checksum.crc64 is not None)
        for algorithm, error_code in (("md5", "Md5Mismatch"), ("crc64", "Crc64Mismatch")):
            sent = getattr(checksum, algorithm)
            if sent is not None and getattr(actual, algorithm) != sent:
                msg = f"The {algorithm} value specified in the request did not match the content for {handle}."
                raise StorageError(msg, status=400, error_code=error_code, resource=str(handle))
        return actual

    @staticmethod
    def _check_pages(offset: int, length: int) -> None:
        if offset < 0 or offset % PAGE_SIZE or length <= 0 or length % PAGE_SIZE:
            msg = f"Page ranges must be {PAGE_SIZE}-byte aligned; got offset={offset}, length={length}."
            raise OutOfRangeError(msg)

    def blob_count(self) -> int:
        """Return the number of committed blobs and snapshots."""
        with self._lock:
            return len(self._blobs)

    def staged_block_count(self, handle: BlobHandle) -> int:
        """Return how many uncommitted blocks are staged for ``handle``."""
        with self._lock:
            return len(self._staged.get(blob_key(handle), {}))

    def put_bytes(
        self,
        handle: BlobHandle,
        data: bytes,
        *,
        blob_type: BlobType = "block",
        content_checksum: ContentChecksum | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> BlobProperties:
        """Store ``data`` directly as committed content, bypassing streams and conditions."""
        self._require_writable(handle)
        if blob_type == "page" and len(data) % PAGE_SIZE:
            msg = f"Page blob content must be a multiple of {PAGE_SIZE} bytes."
            raise OutOfRangeError(msg)
        checksum = content_checksum or ContentChecksum()
        properties = BlobProperties(
            blob_type=blob_type,
            length=len(data),
            etag=self._new_etag(),
            last_modified=self._now(),
            content_md5=checksum.md5,
            content_crc64=checksum.crc64,
            content_type=content_type,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._store_record(blob_key(handle), BlobRecord(properties=properties, data=bytearray(data)))
        return properties

    def get_properties(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobProperties:
        """Return the blob's properties after evaluating read-side conditions."""
        with self._lock:
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=True, resource=str(handle))
            return record.properties

    def get_range(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
        checksum: ChecksumRequest | None = None,
    ) -> RangeResult:
        """Return up to ``length`` bytes from ``offset``."""
        if offset < 0 or length < 1:
            msg = f"Invalid range: offset={offset}, length={length}."
            raise OutOfRangeError(msg)
        if checksum is not None and checksum.any and length > MAX_RANGE_CHECKSUM_SIZE:
            msg = f"Ranged hashes are limited to {MAX_RANGE_CHECKSUM_SIZE} bytes."
            raise StorageError(msg, status=400, error_code="OutOfRangeInput", resource=str(handle))

        with self._lock:
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=True, resource=str(handle))
            if offset >= record.properties.length:
                msg = f"Range start {offset} is beyond the end of {handle}."
                raise StorageError(msg, status=416, error_code="InvalidRange", resource=str(handle))
            data = bytes(record.data[offset : offset + length])
            properties = record.properties

        if checksum is None or not checksum.any:
            return RangeResult(data=data, properties=properties)
        digest = compute_checksum(data, md5=checksum.md5, crc64=checksum.crc64)
        return RangeResult(data=data, properties=properties, content_md5=digest.md5, content_crc64=digest.crc64)

    def _create(self, handle: BlobHandle, properties: BlobProperties, condition: AccessCondition | None) -> WriteResult:
        with self._lock:
            self._require_writable(handle)
            current = self._blobs.get(blob_key(handle))
            check_header_conditions(
                condition,
                current.properties if current is not None else None,
                is_read=False,
                resource=str(handle),
            )
            self._staged.pop(blob_key(handle), None)
            self._store_record(blob_key(handle), BlobRecord(properties=properties, data=bytearray(properties.length)))
        logger.debug("created %s blob %s (%d bytes)", properties.blob_type, handle, properties.length)
        return WriteResult(etag=properties.etag, last_modified=properties.last_modified, sequence_number=0)

    def create_page_blob(
        self,
        handle: BlobHandle,
        size: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Create or replace a zero-filled page blob."""
        if size < 0 or size % PAGE_SIZE:
            msg = f"Page blob size must be a non-negative multiple of {PAGE_SIZE}; got {size}."
            raise OutOfRangeError(msg)
        properties = BlobProperties(blob_type="page", length=size, etag=self._new_etag(), last_modified=self._now())
        return self._create(handle, properties, condition)

    def create_append_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> WriteResult:
        """Create or replace an empty append blob."""
        properties = BlobProperties(blob_type="append", length=0, etag=self._new_etag(), last_modified=self._now())
        return self._create(handle, properties, condition)

    def put_block(
        self,
        handle: BlobHandle,
        block_id: str,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Stage an uncommitted block; the committed blob and its ETag are unchanged."""
        if not block_id:
            msg = "block_id must be a non-empty string."
            raise OutOfRangeError(msg)
        size = memoryview(data).nbytes
        if size > MAX_BLOCK_SIZE:
            msg = f"Block of {size} bytes exceeds the {MAX_BLOCK_SIZE}-byte limit."
            raise StorageError(msg, status=413, error_code="RequestBodyTooLarge", resource=str(handle))

        with self._lock:
            self._require_writable(handle)
            current = self._blobs.get(blob_key(handle))
            self._require_type(current, "block", handle)
            check_header_conditions(
                condition,
                current.properties if current is not None else None,
                is_read=False,
                resource=str(handle),
            )
            echo = self._verify_body(data, checksum, handle)
            self._staged.setdefault(blob_key(handle), {})[block_id] = bytes(data)
            etag = current.properties.etag if current is not None else None
            last_modified = current.properties.last_modified if current is not None else None
        return WriteResult(etag=etag, last_modified=last_modified, content_md5=echo.md5, content_crc64=echo.crc64)

    def put_block_list(
        self,
        handle: BlobHandle,
        block_ids: Sequence[str],
        *,
        content_checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Commit staged (or previously committed) blocks as the blob's content."""
        with self._lock:
            self._require_writable(handle)
            key = blob_key(handle)
            current = self._blobs.get(key)
            self._require_type(current, "block", handle)
            check_header_conditions(
                condition,
                current.properties if current is not None else None,
                is_read=False,
                resource=str(handle),
            )

            staged = self._staged.get(key, {})
            committed = current.committed_blocks if current is not None else {}
            blocks: dict[str, bytes] = {}
            parts: list[bytes] = []
            for block_id in block_ids:
                part = staged.get(block_id, committed.get(block_id))
                if part is None:
                    msg = f"Block {block_id!r} is neither staged nor committed for {handle}."
                    raise StorageError(msg, status=400, error_code="InvalidBlockList", resource=str(handle))
                blocks[block_id] = part
                parts.append(part)

            data = bytearray(b"".join(parts))
            checksum = content_checksum or ContentChecksum()
            properties = BlobProperties(
                blob_type="block",
                length=len(data),
                etag=self._new_etag(),
                last_modified=self._now(),
                content_md5=checksum.md5,
                content_crc64=checksum.crc64,
            )
            self._staged.pop(key, None)
            self._store_record(key, BlobRecord(properties=properties, data=data, committed_blocks=blocks))
        logger.debug("committed %d blocks to %s (%d bytes)", len(parts), handle, len(data))
        return WriteResult(etag=properties.etag, last_modified=properties.last_modified)

    def append_block(
        self,
        handle: BlobHandle,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Append one block, enforcing append-position and max-size conditions."""
        size = memoryview(data).nbytes
        if size > MAX_APPEND_BLOCK_SIZE:
            msg = f"Append block of {size} bytes exceeds the {MAX_APPEND_BLOCK_SIZE}-byte limit."
            raise StorageError(msg, status=413, error_code="RequestBodyTooLarge", resource=str(handle))

        with self._lock:
            self._require_writable(handle)
            key = blob_key(handle)
            record = self._require(handle)
            self._require_type(record, "append", handle)
            check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
            check_append_conditions(condition, record.properties, block_size=size, resource=str(handle))
            echo = self._verify_body(data, checksum, handle)

            offset = len(record.data)
            record.data += data
            record.properties = self._bump(
                record.properties,
                length=len(record.data),
                committed_block_count=record.properties.committed_block_count + 1,
            )
            self._store_record(key, record)
            properties = record.properties
        return WriteResult(
            etag=properties.etag,
            last_modified=properties.last_modified,
            content_md5=echo.md5,
            content_crc64=echo.crc64,
            append_offset=offset,
        )

    def _page_record(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        condition: AccessCondition | None,
    ) -> BlobRecord:
        self._require_writable(handle)
        record = self._require(handle)
        self._require_type(record, "page", handle)
        check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
        check_sequence_conditions(condition, record.properties, resource=str(handle))
        if offset + length > record.properties.length:
            msg = f"Page range {offset}+{length} exceeds the size of {handle}."
            raise StorageError(msg, status=416, error_code="InvalidPageRange", resource=str(handle))
        return record

    def write_pages(
        self,
        handle: BlobHandle,
        offset: int,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Write aligned pages inside the blob's current size."""
        size = memoryview(data).nbytes
        self._check_pages(offset, size)
        with self._lock:
            record = self._page_record(handle, offset, size, condition)
            echo = self._verify_body(data, checksum, handle)
            record.data[offset : offset + size] = data
            record.properties = self._bump(record.properties)
            self._store_record(blob_key(handle), record)
            properties = record.properties
        return WriteResult(
            etag=properties.etag,
            last_modified=properties.last_modified,
            content_md5=echo.md5,
            content_crc64=echo.crc64,
            sequence_number=properties.sequence_number,
        )

    def clear_pages(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Zero aligned pages inside the blob's current size."""
        self._check_pages(offset, length)
        with self._lock:
            record = self._page_record(handle, offset, length, condition)
            record.data[offset : offset + length] = bytes(length)
            record.properties = self._bump(record.properties)
            self._store_record(blob_key(handle), record)
            properties = record.properties
        return WriteResult(
            etag=properties.etag,
            last_modified=properties.last_modified,
            sequence_number=properties.sequence_number,
        )

    def set_properties(
        self,
        handle: BlobHandle,
        *,
        content_checksum: ContentChecksum | None = None,
        content_type: str | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Update content headers and rotate the ETag."""
        with self._lock:
            self._require_writable(handle)
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
            changes: dict[str, object] = {}
            if content_checksum is not None:
                changes["content_md5"] = content_checksum.md5
                changes["content_crc64"] = content_checksum.crc64
            if content_type is not None:
                changes["content_type"] = content_type
            record.properties = self._bump(record.properties, **changes)
            self._store_record(blob_key(handle), record)
            properties = record.properties
        return WriteResult(etag=properties.etag, last_modified=properties.last_modified)

    def set_metadata(
        self,
        handle: BlobHandle,
        metadata: Mapping[str, str],
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        """Replace the blob's metadata and rotate the ETag."""
        with self._lock:
            self._require_writable(handle)
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
            record.properties = self._bump(record.properties, metadata=dict(metadata))
            self._store_record(blob_key(handle), record)
            properties = record.properties
        return WriteResult(etag=properties.etag, last_modified=properties.last_modified)

    def create_snapshot(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobHandle:
        """Copy the blob's committed state under a new snapshot token."""
        with self._lock:
            self._require_writable(handle)
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
            moment = to_utc(self._clock())
            snapshot = handle.with_snapshot(moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ"))
            while blob_key(snapshot) in self._blobs:
                moment += timedelta(microseconds=1)
                snapshot = handle.with_snapshot(moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ"))
            self._store_record(
                blob_key(snapshot),
                BlobRecord(properties=record.properties, data=bytearray(record.data)),
            )
        return snapshot

    def delete_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> None:
        """Delete a blob and its snapshots, or a single snapshot when ``handle`` names one."""
        with self._lock:
            record = self._require(handle)
            check_header_conditions(condition, record.properties, is_read=False, resource=str(handle))
            if handle.is_snapshot:
                self._forget_record(blob_key(handle))
                return
            doomed = [key for key in self._blobs if key[0] == handle.container and key[1] == handle.name]
            for key in doomed:
                self._forget_record(key)
            self._staged.pop(blob_key(handle), None)
