"""StreamCapabilities: what a write stream may do for a given blob type."""

from __future__ import annotations

from dataclasses import dataclass

from blobstream.types import PAGE_SIZE, BlobType, validate_blob_type


@dataclass(frozen=True, slots=True)
class StreamCapabilities:
    """Blob-type specific behavior of a write stream.

    - `seekable`: the stream accepts ``seek`` (page blobs only)
    - `alignment`: required byte alignment of offsets and flushed chunks
    - `append_only`: chunks land at the end of the blob under append conditions
    - `commit_block_list`: commit publishes staged blocks with a block list
    - `max_parallelism`: upper bound on concurrent chunk uploads, if any
    """

    blob_type: BlobType
    seekable: bool
    alignment: int
    append_only: bool
    commit_block_list: bool
    max_parallelism: int | None = None

    @classmethod
    def for_blob_type(cls, blob_type: BlobType) -> StreamCapabilities:
        """Return the capabilities of write streams over ``blob_type`` blobs."""
        return _BY_TYPE[validate_blob_type(blob_type)]


BLOCK = StreamCapabilities(blob_type="block", seekable=False, alignment=1, append_only=False, commit_block_list=True)
PAGE = StreamCapabilities(
    blob_type="page", seekable=True, alignment=PAGE_SIZE, append_only=False, commit_block_list=False
)
APPEND = StreamCapabilities(
    blob_type="append",
    seekable=False,
    alignment=1,
    append_only=True,
    commit_block_list=False,
    max_parallelism=1,
)

_BY_TYPE: dict[str, StreamCapabilities] = {"block": BLOCK, "page": PAGE, "append": APPEND}
