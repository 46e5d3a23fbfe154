"""BlobReadStream: seekable reads over ranged requests, locked to one ETag."""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

from blobstream.checksum import ChecksumHasher, ContentChecksum, compute_checksum, verify_checksum
from blobstream.conditions import AccessCondition
from blobstream.errors import BlobStreamError, OutOfRangeError, StorageError, StreamClosedError
from blobstream.options import MAX_RANGE_CHECKSUM_SIZE, BlobRequestOptions
from blobstream.services._base import ChecksumRequest
from blobstream.types import OperationContext

if TYPE_CHECKING:
    from types import TracebackType

    from blobstream.services._base import BlobService
    from blobstream.types import BlobHandle, BlobProperties

logger = logging.getLogger(__name__)


class BlobReadStream:
    """Read-only, seekable stream over one version of a blob.

    Every request carries ``If-Match`` on the ETag observed at open, so a
    concurrent modification surfaces as ``PreconditionFailedError`` on the
    next read instead of bytes from two different versions. Bytes served from
    the chunk cache are revalidated with a conditional properties request
    unless ``validate_cached_reads`` is off.

    When the blob carries a stored MD5 / CRC64 and the content is read
    sequentially from offset 0 to the end, the computed hash is compared with
    the stored one at end of content. Seeking to a different position turns
    that check off.
    """

    def __init__(
        self,
        service: BlobService,
        handle: BlobHandle,
        properties: BlobProperties,
        *,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> None:
        self._service = service
        self._handle = handle
        self._properties = properties
        self._options = options or BlobRequestOptions()
        if (
            self._options.use_transactional_checksum
            and self._options.stream_minimum_read_size_in_bytes > MAX_RANGE_CHECKSUM_SIZE
        ):
            msg = (
                "stream_minimum_read_size_in_bytes must not exceed "
                f"{MAX_RANGE_CHECKSUM_SIZE} when transactional hashing is enabled."
            )
            raise OutOfRangeError(msg)
        self._context = operation_context if operation_context is not None else OperationContext()
        self._condition = AccessCondition.match(properties.etag)
        self._checksum_request = ChecksumRequest(
            md5=self._options.use_transactional_md5,
            crc64=self._options.use_transactional_crc64,
        )
        self._position = 0
        self._cache: OrderedDict[int, bytes] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._last_error: BlobStreamError | None = None
        self._closed = False

        check_md5 = properties.content_md5 is not None and not self._options.disable_content_md5_validation
        check_crc64 = properties.content_crc64 is not None and not self._options.disable_content_crc64_validation
        self._expected = ContentChecksum(
            md5=properties.content_md5 if check_md5 else None,
            crc64=properties.content_crc64 if check_crc64 else None,
        )
        self._hasher = ChecksumHasher(md5=check_md5, crc64=check_crc64) if check_md5 or check_crc64 else None

    @property
    def handle(self) -> BlobHandle:
        return self._handle

    @property
    def properties(self) -> BlobProperties:
        """Return the properties observed when the stream was opened."""
        return self._properties

    @property
    def etag(self) -> str:
        return self._properties.etag

    @property
    def length(self) -> int:
        return self._properties.length

    @property
    def position(self) -> int:
        return self._position

    @property
    def options(self) -> BlobRequestOptions:
        return self._options

    @property
    def operation_context(self) -> OperationContext:
        return self._context

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._position

    def _check_usable(self) -> None:
        if self._closed:
            msg = "I/O operation on closed blob stream."
            raise StreamClosedError(msg)
        if self._last_error is not None:
            raise self._last_error

    def _remaining(self, size: int | None) -> int:
        available = max(0, self.length - self._position)
        if size is None or size < 0:
            return available
        return min(size, available)

    def _cached_view(self) -> memoryview | None:
        """Return cached bytes starting at the current position, if any."""
        position = self._position
        with self._cache_lock:
            for start, data in self._cache.items():
                if start <= position < start + len(data):
                    self._cache.move_to_end(start)
                    logger.debug("cache hit for %s at offset %d", self._handle, position)
                    return memoryview(data)[position - start :]
        return None

    def _fetch(self, offset: int) -> memoryview:
        """Fetch one range starting at ``offset`` and add it to the cache."""
        length = min(self._options.stream_minimum_read_size_in_bytes, self.length - offset)
        logger.debug("fetching %s range %d+%d", self._handle, offset, length)
        result = self._context.call(
            "get_range",
            lambda: self._service.get_range(
                self._handle,
                offset,
                length,
                condition=self._condition,
                checksum=self._checksum_request,
            ),
        )
        data = result.data
        if not data:
            msg = f"Service returned no data for {self._handle} at offset {offset}."
            raise StorageError(msg, status=416, error_code="InvalidRange", resource=str(self._handle))
        if self._checksum_request.any:
            verify_checksum(
                ContentChecksum(md5=result.content_md5, crc64=result.content_crc64),
                compute_checksum(data, md5=self._checksum_request.md5, crc64=self._checksum_request.crc64),
                resource=str(self._handle),
                require_expected=True,
            )

        with self._cache_lock:
            self._cache[offset] = data
            while len(self._cache) > self._options.read_cache_chunks:
                self._cache.popitem(last=False)
        return memoryview(data)

    def _revalidate(self) -> None:
        """Confirm the pinned ETag before serving cached bytes."""
        if not self._options.validate_cached_reads or self._handle.is_snapshot:
            return
        self._context.call(
            "get_properties",
            lambda: self._service.get_properties(self._handle, condition=self._condition),
        )

    def _consume(self, view: memoryview, remaining: int, out: bytearray) -> int:
        piece = view[:remaining]
        out += piece
        if self._hasher is not None:
            self._hasher.update(piece)
        self._position += len(piece)
        if self._position == self.length and self._hasher is not None:
            actual = self._hasher.checksum()
            self._hasher = None
            verify_checksum(self._expected, actual, resource=str(self._handle))
        return len(piece)

    def read(self, size: int | None = -1) -> bytes:
        """Read up to ``size`` bytes (everything to the end when negative).

        Fewer bytes are returned only at the end of the blob.
        """
        self._check_usable()
        remaining = self._remaining(size)
        out = bytearray()
        needs_validation = True
        try:
            while remaining > 0:
                view = self._cached_view()
                if view is None:
                    view = self._fetch(self._position)
                elif needs_validation:
                    self._revalidate()
                needs_validation = False
                remaining -= self._consume(view, remaining, out)
        except BlobStreamError as exc:
            self._last_error = exc
            raise
        return bytes(out)

    def readall(self) -> bytes:
        return self.read(-1)

    def readinto(self, buffer: bytearray | memoryview) -> int:
        """Read into a writable buffer and return the number of bytes stored."""
        target = memoryview(buffer).cast("B")
        data = self.read(len(target))
        target[: len(data)] = data
        return len(data)

    async def aread(self, size: int | None = -1) -> bytes:
        """Async ``read``: each range request runs in a worker thread.

        If the call is cancelled, the position is rewound to where the call
        started so the stream remains usable.
        """
        self._check_usable()
        remaining = self._remaining(size)
        start = self._position
        out = bytearray()
        needs_validation = True
        try:
            while remaining > 0:
                view = self._cached_view()
                if view is None:
                    view = await asyncio.to_thread(self._fetch, self._position)
                elif needs_validation:
                    await asyncio.to_thread(self._revalidate)
                needs_validation = False
                remaining -= self._consume(view, remaining, out)
        except asyncio.CancelledError:
            if self._position != start:
                self._hasher = None
                self._position = start
            raise
        except BlobStreamError as exc:
            self._last_error = exc
            raise
        return bytes(out)

    async def areadinto(self, buffer: bytearray | memoryview) -> int:
        target = memoryview(buffer).cast("B")
        data = await self.aread(len(target))
        target[: len(data)] = data
        return len(data)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position; no request is made.

        Valid targets are ``0 <= target <= length``.
        """
        self._check_usable()
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._position + offset
        elif whence == io.SEEK_END:
            target = self.length + offset
        else:
            msg = f"Invalid whence value: {whence!r}."
            raise ValueError(msg)

        if target < 0 or target > self.length:
            msg = f"Seek target {target} is outside [0, {self.length}]."
            raise OutOfRangeError(msg)
        if target != self._position and self._hasher is not None:
            logger.debug("whole-blob hash validation disabled for %s after seek", self._handle)
            self._hasher = None
        self._position = target
        return target

    def close(self) -> None:
        """Drop cached chunks; further reads raise ``StreamClosedError``."""
        with self._cache_lock:
            self._cache.clear()
        self._closed = True

    def __enter__(self) -> BlobReadStream:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> BlobReadStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()
