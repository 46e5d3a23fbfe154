"""BlobService and its in-process implementations."""

from blobstream.services._base import BlobService, ChecksumRequest, RangeResult, WriteResult
from blobstream.services._file import FileBlobService
from blobstream.services._memory import InMemoryBlobService

__all__ = [
    "BlobService",
    "ChecksumRequest",
    "FileBlobService",
    "InMemoryBlobService",
    "RangeResult",
    "WriteResult",
]
