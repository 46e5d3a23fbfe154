"""Read and write streams over a BlobService."""

from blobstream.streams._capabilities import APPEND, BLOCK, PAGE, StreamCapabilities
from blobstream.streams._read import BlobReadStream
from blobstream.streams._write import BlobWriteStream

__all__ = [
    "APPEND",
    "BLOCK",
    "PAGE",
    "BlobReadStream",
    "BlobWriteStream",
    "StreamCapabilities",
]
