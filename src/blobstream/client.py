"""BlobClient: opens read/write streams over a BlobService and runs whole-blob transfers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, BinaryIO

from blobstream.buffers import BufferPool, default_buffer_pool
from blobstream.errors import BlobNotFoundError, ConflictError, OperationCancelledError
from blobstream.options import BlobRequestOptions
from blobstream.services._base import BlobService
from blobstream.streams import APPEND, BLOCK, PAGE, BlobReadStream, BlobWriteStream
from blobstream.types import BlobType, OperationContext, validate_blob_type

if TYPE_CHECKING:
    import threading

    from blobstream.conditions import AccessCondition
    from blobstream.types import BlobHandle, BlobProperties, BytesLike

logger = logging.getLogger(__name__)

_EXISTING_BLOB_HASH_MSG = (
    "A whole-blob hash cannot be calculated for an existing blob because it would require reading "
    "the existing data. Disable store_content_md5 / store_content_crc64."
)


def _context(operation_context: OperationContext | None) -> OperationContext:
    return operation_context if operation_context is not None else OperationContext()


class BlobClient:
    """Entry point for streaming I/O against one ``BlobService``.

    ``default_options`` apply to every stream unless a call passes its own
    ``options``. All streams opened by a client draw their pending buffers
    from the client's ``buffer_pool``.
    """

    def __init__(
        self,
        service: BlobService,
        *,
        default_options: BlobRequestOptions | None = None,
        buffer_pool: BufferPool | None = None,
    ) -> None:
        """Initialize with a service and optional default options and buffer pool."""
        if not isinstance(service, BlobService):
            msg = "service must implement the BlobService protocol."
            raise TypeError(msg)
        self._service = service
        self._default_options = default_options or BlobRequestOptions()
        self._buffer_pool = buffer_pool or default_buffer_pool

    @property
    def service(self) -> BlobService:
        return self._service

    @property
    def default_options(self) -> BlobRequestOptions:
        return self._default_options

    @property
    def buffer_pool(self) -> BufferPool:
        return self._buffer_pool

    def _options(self, options: BlobRequestOptions | None) -> BlobRequestOptions:
        return options if options is not None else self._default_options

    def get_properties(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobProperties:
        """Fetch the blob's properties, honoring read-side conditions."""
        return _context(operation_context).call(
            "get_properties",
            lambda: self._service.get_properties(handle, condition=condition),
        )

    def create_snapshot(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobHandle:
        """Create a read-only snapshot and return its handle."""
        return _context(operation_context).call(
            "create_snapshot",
            lambda: self._service.create_snapshot(handle, condition=condition),
        )

    def open_read(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobReadStream:
        """Open a read stream pinned to the blob's current ETag.

        ``condition`` is evaluated once, at open: a failed If-Match surfaces
        here as ``PreconditionFailedError`` and a satisfied If-None-Match as
        ``NotModifiedError``.
        """
        context = _context(operation_context)
        properties = context.call("get_properties", lambda: self._service.get_properties(handle, condition=condition))
        logger.debug("opened read stream for %s (%d bytes, etag %s)", handle, properties.length, properties.etag)
        return BlobReadStream(
            self._service,
            handle,
            properties,
            options=self._options(options),
            operation_context=context,
        )

    def open_write(
        self,
        handle: BlobHandle,
        *,
        blob_type: BlobType = "block",
        size: int | None = None,
        create_new: bool = True,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobWriteStream:
        """Open a write stream for a block, page, or append blob.

        - block: `condition` is checked up front when conditional, and again
          when the block list is committed
        - page: `size` creates (or replaces) the blob; without it the existing
          blob is opened at its current size
        - append: `create_new` creates (or replaces) the blob; otherwise writes
          continue at the current end, or at `if_append_position_equal`
        """
        if handle.is_snapshot:
            msg = f"Cannot open a write stream on a snapshot: {handle}"
            raise ValueError(msg)
        validate_blob_type(blob_type)
        resolved = self._options(options).resolve(blob_type)
        context = _context(operation_context)

        if blob_type == "page":
            stream = self._open_page(handle, size, resolved, condition, context)
        elif blob_type == "append":
            stream = self._open_append(handle, create_new, resolved, condition, context)
        else:
            stream = self._open_block(handle, resolved, condition, context)
        logger.debug("opened %s write stream for %s", blob_type, handle)
        return stream

    def _open_block(
        self,
        handle: BlobHandle,
        options: BlobRequestOptions,
        condition: AccessCondition | None,
        context: OperationContext,
    ) -> BlobWriteStream:
        if condition is not None and condition.is_conditional:
            precheck = condition.without_if_not_exists()
            try:
                context.call("get_properties", lambda: self._service.get_properties(handle, condition=precheck))
            except BlobNotFoundError:
                if condition.if_match is not None:
                    raise
            else:
                if condition.is_if_not_exists:
                    raise ConflictError(str(handle), error_code="BlobAlreadyExists")
        return BlobWriteStream(
            self._service,
            handle,
            capabilities=BLOCK,
            options=options,
            condition=condition,
            operation_context=context,
            buffer_pool=self._buffer_pool,
        )

    def _open_page(
        self,
        handle: BlobHandle,
        size: int | None,
        options: BlobRequestOptions,
        condition: AccessCondition | None,
        context: OperationContext,
    ) -> BlobWriteStream:
        if size is not None:
            context.call("create_page_blob", lambda: self._service.create_page_blob(handle, size, condition=condition))
            length = size
        else:
            if options.store_content_md5 or options.store_content_crc64:
                raise ValueError(_EXISTING_BLOB_HASH_MSG)
            properties = context.call(
                "get_properties",
                lambda: self._service.get_properties(handle, condition=condition),
            )
            if properties.blob_type != "page":
                raise ConflictError(str(handle), error_code="InvalidBlobType")
            length = properties.length
        return BlobWriteStream(
            self._service,
            handle,
            capabilities=PAGE,
            options=options,
            length=length,
            operation_context=context,
            buffer_pool=self._buffer_pool,
        )

    def _open_append(
        self,
        handle: BlobHandle,
        create_new: bool,
        options: BlobRequestOptions,
        condition: AccessCondition | None,
        context: OperationContext,
    ) -> BlobWriteStream:
        if create_new:
            context.call("create_append_blob", lambda: self._service.create_append_blob(handle, condition=condition))
            start_offset = 0
        else:
            if options.store_content_md5 or options.store_content_crc64:
                raise ValueError(_EXISTING_BLOB_HASH_MSG)
            properties = context.call(
                "get_properties",
                lambda: self._service.get_properties(handle, condition=condition),
            )
            if properties.blob_type != "append":
                raise ConflictError(str(handle), error_code="InvalidBlobType")
            start_offset = properties.length
            if condition is not None and condition.if_append_position_equal is not None:
                start_offset = condition.if_append_position_equal
        return BlobWriteStream(
            self._service,
            handle,
            capabilities=APPEND,
            options=options,
            condition=condition.append_only() if condition is not None else None,
            start_offset=start_offset,
            operation_context=context,
            buffer_pool=self._buffer_pool,
        )

    def upload_bytes(
        self,
        handle: BlobHandle,
        data: BytesLike,
        *,
        blob_type: BlobType = "block",
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobProperties:
        """Write ``data`` as the blob's whole content and return the resulting properties.

        Page blobs are created with ``len(data)`` as their size.
        """
        context = _context(operation_context)
        size = memoryview(data).nbytes if blob_type == "page" else None
        with self.open_write(
            handle,
            blob_type=blob_type,
            size=size,
            condition=condition,
            options=options,
            operation_context=context,
        ) as stream:
            stream.write(data)
        return context.call("get_properties", lambda: self._service.get_properties(handle))

    def upload_from_stream(
        self,
        handle: BlobHandle,
        source: BinaryIO,
        *,
        blob_type: BlobType = "block",
        size: int | None = None,
        create_new: bool = True,
        cancel_event: threading.Event | None = None,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobProperties:
        """Copy ``source`` into the blob chunk by chunk.

        ``cancel_event`` is checked before every chunk; once set, the write
        stream is aborted without committing and ``OperationCancelledError``
        is raised.
        """
        context = _context(operation_context)
        stream = self.open_write(
            handle,
            blob_type=blob_type,
            size=size,
            create_new=create_new,
            condition=condition,
            options=options,
            operation_context=context,
        )
        chunk_size = stream.options.stream_write_size_in_bytes
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    msg = f"Upload to {handle} was cancelled."
                    raise OperationCancelledError(msg)
                chunk = source.read(chunk_size)
                if not chunk:
                    break
                stream.write(chunk)
            stream.commit()
        finally:
            if stream.committed:
                stream.close()
            else:
                stream.abort()
        return context.call("get_properties", lambda: self._service.get_properties(handle))

    def download_bytes(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> bytes:
        """Read the blob's whole content through a read stream."""
        reader = self.open_read(handle, condition=condition, options=options, operation_context=operation_context)
        with reader as stream:
            return stream.read()

    def download_to_stream(
        self,
        handle: BlobHandle,
        target: BinaryIO,
        *,
        cancel_event: threading.Event | None = None,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> int:
        """Copy the blob into ``target`` and return the number of bytes written.

        ``cancel_event`` is checked before every chunk.
        """
        reader = self.open_read(handle, condition=condition, options=options, operation_context=operation_context)
        with reader as stream:
            chunk_size = stream.options.stream_minimum_read_size_in_bytes
            total = 0
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    msg = f"Download of {handle} was cancelled after {total} bytes."
                    raise OperationCancelledError(msg)
                data = stream.read(chunk_size)
                if not data:
                    return total
                target.write(data)
                total += len(data)

    async def aopen_read(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobReadStream:
        """Async ``open_read``."""
        return await asyncio.to_thread(
            self.open_read,
            handle,
            condition=condition,
            options=options,
            operation_context=operation_context,
        )

    async def aopen_write(
        self,
        handle: BlobHandle,
        *,
        blob_type: BlobType = "block",
        size: int | None = None,
        create_new: bool = True,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobWriteStream:
        """Async ``open_write``."""
        return await asyncio.to_thread(
            self.open_write,
            handle,
            blob_type=blob_type,
            size=size,
            create_new=create_new,
            condition=condition,
            options=options,
            operation_context=operation_context,
        )

    async def aupload_bytes(
        self,
        handle: BlobHandle,
        data: BytesLike,
        *,
        blob_type: BlobType = "block",
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> BlobProperties:
        """Async ``upload_bytes``; a cancelled upload aborts without committing."""
        context = _context(operation_context)
        size = memoryview(data).nbytes if blob_type == "page" else None
        stream = await self.aopen_write(
            handle,
            blob_type=blob_type,
            size=size,
            condition=condition,
            options=options,
            operation_context=context,
        )
        async with stream:
            await stream.awrite(data)
        return await asyncio.to_thread(context.call, "get_properties", lambda: self._service.get_properties(handle))

    async def adownload_bytes(
        self,
        handle: BlobHandle,
        *,
        condition: AccessCondition | None = None,
        options: BlobRequestOptions | None = None,
        operation_context: OperationContext | None = None,
    ) -> bytes:
        """Async ``download_bytes``."""
        stream = await self.aopen_read(
            handle, condition=condition, options=options, operation_context=operation_context
        )
        async with stream:
            return await stream.aread()
