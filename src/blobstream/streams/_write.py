"""BlobWriteStream: buffered, chunked uploads to block, page, and append blobs."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from blobstream.buffers import BufferPool, default_buffer_pool
from blobstream.checksum import ChecksumHasher, ContentChecksum, compute_checksum, verify_checksum
from blobstream.conditions import AccessCondition
from blobstream.errors import (
    BlobStreamError,
    MaxSizeConditionError,
    OperationCancelledError,
    OutOfRangeError,
    StreamClosedError,
    UnsupportedOperationError,
)
from blobstream.options import BlobRequestOptions
from blobstream.types import PAGE_SIZE, OperationContext

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from blobstream.services._base import BlobService, WriteResult
    from blobstream.streams._capabilities import StreamCapabilities
    from blobstream.types import BlobHandle, BytesLike

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Chunk:
    """One filled pending buffer on its way to the service."""

    buffer: bytearray
    offset: int
    block_id: str | None
    checksum: ContentChecksum | None


class BlobWriteStream:
    """Write-only stream that uploads a blob in chunks.

    Written bytes collect in a pooled pending buffer. Each time it reaches
    ``stream_write_size_in_bytes`` exactly one chunk request is issued: a
    staged block, a page write at the current offset, or an append block.
    ``commit`` flushes the remainder and publishes the result (the block list
    for block blobs, the whole-blob hash for page and append blobs). A stream
    commits at most once; it is closed afterwards.

    The per-kind differences come from ``StreamCapabilities``.
    """

    def __init__(
        self,
        service: BlobService,
        handle: BlobHandle,
        *,
        capabilities: StreamCapabilities,
        options: BlobRequestOptions | None = None,
        condition: AccessCondition | None = None,
        length: int | None = None,
        start_offset: int = 0,
        operation_context: OperationContext | None = None,
        buffer_pool: BufferPool | None = None,
    ) -> None:
        self._closed = True
        resolved = (options or BlobRequestOptions()).resolve(capabilities.blob_type)
        if capabilities.seekable and length is None:
            msg = "length is required for seekable (page blob) write streams."
            raise ValueError(msg)

        self._service = service
        self._handle = handle
        self._caps = capabilities
        self._options = resolved
        self._condition = condition
        self._length = length
        self._context = operation_context if operation_context is not None else OperationContext()
        self._pool = buffer_pool or default_buffer_pool
        self._write_size = resolved.stream_write_size_in_bytes

        parallelism = resolved.parallel_operation_thread_count
        if capabilities.max_parallelism is not None:
            parallelism = min(parallelism, capabilities.max_parallelism)
        self._parallelism = parallelism

        store_md5 = bool(resolved.store_content_md5)
        store_crc64 = bool(resolved.store_content_crc64)
        self._blob_hasher = ChecksumHasher(md5=store_md5, crc64=store_crc64) if store_md5 or store_crc64 else None

        self._position = start_offset
        self._flush_offset = start_offset
        self._pending: bytearray | None = None
        self._block_prefix = uuid.uuid4().hex
        self._block_ids: list[str] = []
        self._executor: ThreadPoolExecutor | None = None
        self._inflight: list[Future[None]] = []
        self._error_lock = threading.Lock()
        self._last_error: BaseException | None = None
        self._committed = False
        self._closed = False

    @property
    def handle(self) -> BlobHandle:
        return self._handle

    @property
    def capabilities(self) -> StreamCapabilities:
        return self._caps

    @property
    def options(self) -> BlobRequestOptions:
        """Return the options resolved for this stream's blob type."""
        return self._options

    @property
    def position(self) -> int:
        """Return the offset of the next written byte."""
        return self._position

    @property
    def length(self) -> int:
        """Return the page blob size; other blob types have no fixed length."""
        if self._length is None:
            msg = f"length is not supported for {self._caps.blob_type} blob write streams."
            raise UnsupportedOperationError(msg)
        return self._length

    @property
    def block_ids(self) -> tuple[str, ...]:
        return tuple(self._block_ids)

    @property
    def operation_context(self) -> OperationContext:
        return self._context

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return False

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._caps.seekable

    def tell(self) -> int:
        return self._position

    def _set_error(self, exc: BaseException) -> None:
        with self._error_lock:
            if self._last_error is None:
                self._last_error = exc

    def _raise_last_error(self) -> None:
        with self._error_lock:
            error = self._last_error
        if error is not None:
            raise error

    def _check_writable(self) -> None:
        if self._committed:
            msg = "Blob stream has already been committed once."
            raise StreamClosedError(msg)
        if self._closed:
            msg = "I/O operation on closed blob stream."
            raise StreamClosedError(msg)
        self._raise_last_error()

    def _next_block_id(self) -> str:
        raw = f"{self._block_prefix}-{len(self._block_ids):06d}"
        return base64.b64encode(raw.encode("ascii")).decode("ascii")

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="blobstream-upload")
        return self._executor

    def _begin_write(self, data: BytesLike) -> memoryview:
        self._check_writable()
        view = memoryview(data).cast("B")
        self._position += len(view)
        if self._blob_hasher is not None:
            self._blob_hasher.update(view)
        return view

    def _fill(self, view: memoryview) -> Iterator[_Chunk]:
        """Copy ``view`` into pending buffers, yielding each buffer that fills up."""
        offset = 0
        total = len(view)
        while offset < total:
            if self._pending is None:
                self._pending = self._pool.acquire()
            take = min(total - offset, self._write_size - len(self._pending))
            self._pending += view[offset : offset + take]
            offset += take
            if len(self._pending) >= self._write_size:
                yield self._take_pending()

    def _take_pending(self) -> _Chunk:
        """Detach the pending buffer and assign its block ID or blob offset."""
        buffer = self._pending
        if buffer is None:
            msg = "No pending data to take."
            raise RuntimeError(msg)
        self._pending = None

        try:
            checksum = None
            if self._options.use_transactional_checksum:
                checksum = compute_checksum(
                    buffer,
                    md5=self._options.use_transactional_md5,
                    crc64=self._options.use_transactional_crc64,
                )
            size = len(buffer)
            block_id = None
            if self._caps.commit_block_list:
                block_id = self._next_block_id()
                self._block_ids.append(block_id)
            if size % self._caps.alignment:
                msg = f"Page data must be a multiple of {PAGE_SIZE} bytes."
                raise OutOfRangeError(msg)
            max_size = self._condition.if_max_size_le if self._condition is not None else None
            if self._caps.append_only and max_size is not None and self._flush_offset + size > max_size:
                raise MaxSizeConditionError(str(self._handle), limit=max_size, size=self._flush_offset + size)
        except BlobStreamError as exc:
            self._pool.release(buffer)
            self._set_error(exc)
            raise

        chunk = _Chunk(buffer=buffer, offset=self._flush_offset, block_id=block_id, checksum=checksum)
        self._flush_offset += size
        return chunk

    def _send(self, chunk: _Chunk, view: memoryview) -> tuple[str, WriteResult]:
        if chunk.block_id is not None:
            block_id = chunk.block_id
            return "put_block", self._context.call(
                "put_block",
                lambda: self._service.put_block(self._handle, block_id, view, checksum=chunk.checksum),
            )
        if self._caps.append_only:
            base = self._condition.append_only() if self._condition is not None else AccessCondition()
            condition = replace(base, if_append_position_equal=chunk.offset)
            return "append_block", self._context.call(
                "append_block",
                lambda: self._service.append_block(self._handle, view, checksum=chunk.checksum, condition=condition),
            )
        return "write_pages", self._context.call(
            "write_pages",
            lambda: self._service.write_pages(self._handle, chunk.offset, view, checksum=chunk.checksum),
        )

    def _upload_chunk(self, chunk: _Chunk) -> None:
        """Send one chunk; the pooled buffer is released on every path."""
        try:
            with memoryview(chunk.buffer) as view:
                operation, result = self._send(chunk, view)
            if chunk.checksum is not None:
                verify_checksum(
                    chunk.checksum,
                    ContentChecksum(md5=result.content_md5, crc64=result.content_crc64),
                    resource=str(self._handle),
                )
            logger.debug("%s %s offset=%d size=%d", operation, self._handle, chunk.offset, len(chunk.buffer))
        except BlobStreamError as exc:
            self._set_error(exc)
            raise
        finally:
            self._pool.release(chunk.buffer)

    def _wait_for_capacity(self, limit: int) -> None:
        """Block until at most ``limit`` parallel uploads are in flight, then surface failures."""
        while len(self._inflight) > limit:
            done, pending = wait(self._inflight, return_when=FIRST_COMPLETED)
            for future in done:
                error = future.exception()
                if error is not None:
                    self._set_error(error)
            self._inflight = list(pending)
        self._raise_last_error()

    def _dispatch(self, chunk: _Chunk) -> None:
        if self._parallelism <= 1:
            self._upload_chunk(chunk)
            return
        self._wait_for_capacity(self._parallelism - 1)
        self._inflight.append(self._ensure_executor().submit(self._upload_chunk, chunk))

    def write(self, data: BytesLike) -> int:
        """Buffer ``data``, issuing one chunk request per filled buffer; return ``len(data)``."""
        view = self._begin_write(data)
        for chunk in self._fill(view):
            self._dispatch(chunk)
        return len(view)

    def flush(self) -> None:
        """Send buffered bytes as one chunk and wait for in-flight uploads.

        An empty buffer issues no request.
        """
        self._check_writable()
        if self._pending:
            self._dispatch(self._take_pending())
        self._wait_for_capacity(0)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the write position of a page blob stream.

        Targets must be page aligned and inside ``[0, length]``. Moving the
        position flushes buffered bytes and disables the whole-blob hash.
        """
        if not self._caps.seekable:
            msg = f"seek is not supported for {self._caps.blob_type} blob write streams."
            raise UnsupportedOperationError(msg)
        self._check_writable()
        length = self.length
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._position + offset
        elif whence == io.SEEK_END:
            target = length + offset
        else:
            msg = f"Invalid whence value: {whence!r}."
            raise ValueError(msg)

        if target < 0 or target > length:
            msg = f"Seek target {target} is outside [0, {length}]."
            raise OutOfRangeError(msg)
        if target % self._caps.alignment:
            msg = f"Seek target {target} is not a multiple of {self._caps.alignment} bytes."
            raise OutOfRangeError(msg)

        if target != self._position:
            self.flush()
            if self._blob_hasher is not None:
                logger.debug("whole-blob hash disabled for %s after seek", self._handle)
                self._blob_hasher = None
            self._position = target
            self._flush_offset = target
        return target

    def _hash_zero_tail(self, hasher: ChecksumHasher) -> None:
        """Hash the zero-filled pages between the write position and the page blob size."""
        remaining = (self._length or 0) - self._position
        if remaining <= 0:
            return
        zeros = bytes(min(remaining, self._write_size))
        while remaining > 0:
            piece = min(remaining, len(zeros))
            hasher.update(memoryview(zeros)[:piece])
            remaining -= piece

    def _finalize(self) -> None:
        checksum = None
        if self._blob_hasher is not None:
            if self._caps.seekable:
                self._hash_zero_tail(self._blob_hasher)
            checksum = self._blob_hasher.checksum()
        if self._caps.commit_block_list:
            block_ids = tuple(self._block_ids)
            self._context.call(
                "put_block_list",
                lambda: self._service.put_block_list(
                    self._handle,
                    block_ids,
                    content_checksum=checksum,
                    condition=self._condition,
                ),
            )
        elif checksum is not None:
            self._context.call(
                "set_properties",
                lambda: self._service.set_properties(self._handle, content_checksum=checksum),
            )
        logger.debug("committed %s (%d bytes written)", self._handle, self._position)

    def _release(self, *, wait: bool = True) -> None:
        """Return the pending buffer and stop the upload executor.

        ``wait=False`` does not join the upload threads; the finalizer may run
        on one of them.
        """
        if self._pending is not None:
            self._pool.release(self._pending)
            self._pending = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._inflight.clear()

    def commit(self) -> None:
        """Flush and publish the written data. A stream commits at most once."""
        self._check_writable()
        try:
            self.flush()
            self._committed = True
            self._finalize()
        finally:
            self._release()

    def close(self) -> None:
        """Commit if not yet committed, then release resources.

        Resources are released even when the commit fails.
        """
        if self._closed:
            return
        try:
            if not self._committed:
                self.commit()
        finally:
            self._release()
            self._closed = True

    def abort(self) -> None:
        """Release resources without committing; staged data is left uncommitted."""
        if self._closed:
            return
        self._release()
        self._closed = True
        logger.debug("aborted write stream for %s", self._handle)

    async def _adispatch(self, chunk: _Chunk) -> None:
        future = self._ensure_executor().submit(self._upload_chunk, chunk)
        try:
            await asyncio.shield(asyncio.wrap_future(future))
        except asyncio.CancelledError:
            self._set_error(OperationCancelledError(f"Write to {self._handle} was cancelled; abort the stream."))
            raise

    async def awrite(self, data: BytesLike) -> int:
        """Async ``write``: chunk requests run in a worker thread, one at a time."""
        view = self._begin_write(data)
        for chunk in self._fill(view):
            await self._adispatch(chunk)
        return len(view)

    async def aflush(self) -> None:
        self._check_writable()
        if self._pending:
            await self._adispatch(self._take_pending())
        await asyncio.to_thread(self._wait_for_capacity, 0)

    async def acommit(self) -> None:
        self._check_writable()
        try:
            await self.aflush()
            self._committed = True
            await asyncio.to_thread(self._finalize)
        finally:
            await asyncio.to_thread(self._release)

    async def aclose(self) -> None:
        if self._closed:
            return
        try:
            if not self._committed:
                await self.acommit()
        finally:
            await asyncio.to_thread(self._release)
            self._closed = True

    async def aabort(self) -> None:
        if self._closed:
            return
        await asyncio.to_thread(self._release)
        self._closed = True

    def __enter__(self) -> BlobWriteStream:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    async def __aenter__(self) -> BlobWriteStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if exc_type is None:
            await self.aclose()
        else:
            await self.aabort()

    def __del__(self) -> None:
        if getattr(self, "_closed", True) or getattr(self, "_committed", False):
            return
        logger.warning("write stream for %s was never closed; uncommitted data is discarded", self._handle)
        self._release(wait=False)
