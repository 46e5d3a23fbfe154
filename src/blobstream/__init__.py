"""blobstream: seekable, integrity-checked streams over blob storage."""

import importlib.metadata as importlib_metadata
import logging

from blobstream.buffers import BufferPool
from blobstream.checksum import ChecksumHasher, ContentChecksum, Crc64, compute_checksum
from blobstream.client import BlobClient
from blobstream.conditions import ANY_ETAG, AccessCondition
from blobstream.errors import (
    BlobIntegrityError,
    BlobNotFoundError,
    BlobStreamError,
    ConflictError,
    MaxSizeConditionError,
    NotModifiedError,
    OperationCancelledError,
    OutOfRangeError,
    PreconditionFailedError,
    StorageError,
    StreamClosedError,
    UnsupportedOperationError,
)
from blobstream.options import BlobRequestOptions
from blobstream.services import BlobService, FileBlobService, InMemoryBlobService
from blobstream.streams import BlobReadStream, BlobWriteStream, StreamCapabilities
from blobstream.types import PAGE_SIZE, BlobHandle, BlobProperties, BlobType, OperationContext, RequestResult

logging.getLogger(__name__).addHandler(logging.NullHandler())


def _detect_version() -> str:
    """Return installed package version or a local fallback when metadata is unavailable."""
    try:
        return importlib_metadata.version("blobstream")
    except importlib_metadata.PackageNotFoundError:
        return "0.0.0+unknown"


__version__ = _detect_version()

__all__ = [
    "ANY_ETAG",
    "PAGE_SIZE",
    "AccessCondition",
    "BlobClient",
    "BlobHandle",
    "BlobIntegrityError",
    "BlobNotFoundError",
    "BlobProperties",
    "BlobReadStream",
    "BlobRequestOptions",
    "BlobService",
    "BlobStreamError",
    "BlobType",
    "BlobWriteStream",
    "BufferPool",
    "ChecksumHasher",
    "ConflictError",
    "ContentChecksum",
    "Crc64",
    "FileBlobService",
    "InMemoryBlobService",
    "MaxSizeConditionError",
    "NotModifiedError",
    "OperationCancelledError",
    "OperationContext",
    "OutOfRangeError",
    "PreconditionFailedError",
    "RequestResult",
    "StorageError",
    "StreamCapabilities",
    "StreamClosedError",
    "UnsupportedOperationError",
    "compute_checksum",
]
