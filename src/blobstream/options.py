"""BlobRequestOptions: stream sizing, hashing, and parallelism settings."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace

from blobstream.errors import OutOfRangeError
from blobstream.serde import as_str_object_dict, optional_bool, require_bool, require_int
from blobstream.types import PAGE_SIZE, BlobType, validate_blob_type

KB = 1024
MB = 1024 * KB

DEFAULT_STREAM_WRITE_SIZE = 4 * MB
DEFAULT_MINIMUM_READ_SIZE = 4 * MB
MIN_STREAM_SIZE = 16 * KB
MAX_BLOCK_SIZE = 100 * MB
MAX_APPEND_BLOCK_SIZE = 4 * MB
MAX_PAGE_WRITE_SIZE = 4 * MB
MAX_RANGE_CHECKSUM_SIZE = 4 * MB

_WRITE_SIZE_BOUNDS: dict[str, tuple[int, int]] = {
    "block": (MIN_STREAM_SIZE, MAX_BLOCK_SIZE),
    "append": (MIN_STREAM_SIZE, MAX_APPEND_BLOCK_SIZE),
    "page": (PAGE_SIZE, MAX_PAGE_WRITE_SIZE),
}


def _check_bounds(value: int, *, low: int, high: int | None, field_name: str) -> None:
    if value < low or (high is not None and value > high):
        upper = "unbounded" if high is None else str(high)
        msg = f"{field_name} must be in [{low}, {upper}]; got {value}."
        raise OutOfRangeError(msg)


@dataclass(frozen=True, slots=True)
class BlobRequestOptions:
    """Per-request stream settings.

    ``store_content_md5`` and ``store_content_crc64`` default to ``None``,
    meaning "use the default for the blob type"; call ``resolve`` to obtain
    concrete values before opening a stream.
    """

    stream_write_size_in_bytes: int = DEFAULT_STREAM_WRITE_SIZE
    stream_minimum_read_size_in_bytes: int = DEFAULT_MINIMUM_READ_SIZE
    store_content_md5: bool | None = None
    store_content_crc64: bool | None = None
    use_transactional_md5: bool = False
    use_transactional_crc64: bool = False
    disable_content_md5_validation: bool = False
    disable_content_crc64_validation: bool = False
    parallel_operation_thread_count: int = 1
    read_cache_chunks: int = 4
    validate_cached_reads: bool = True

    def __post_init__(self) -> None:
        bounds: tuple[tuple[str, int, int | None], ...] = (
            ("stream_write_size_in_bytes", PAGE_SIZE, MAX_BLOCK_SIZE),
            ("stream_minimum_read_size_in_bytes", MIN_STREAM_SIZE, None),
            ("parallel_operation_thread_count", 1, 64),
            ("read_cache_chunks", 1, None),
        )
        for name, low, high in bounds:
            value = require_int(getattr(self, name), field_name=f"BlobRequestOptions.{name}")
            _check_bounds(value, low=low, high=high, field_name=name)

    @property
    def use_transactional_checksum(self) -> bool:
        return self.use_transactional_md5 or self.use_transactional_crc64

    def resolve(self, blob_type: BlobType) -> BlobRequestOptions:
        """Fill blob-type defaults and validate the write size for ``blob_type``.

        Block blobs store a whole-blob MD5 unless told otherwise; page and
        append blobs do not. Append streams never upload in parallel.
        """
        validate_blob_type(blob_type)
        low, high = _WRITE_SIZE_BOUNDS[blob_type]
        _check_bounds(self.stream_write_size_in_bytes, low=low, high=high, field_name="stream_write_size_in_bytes")
        if blob_type == "page" and self.stream_write_size_in_bytes % PAGE_SIZE:
            msg = f"stream_write_size_in_bytes must be a multiple of {PAGE_SIZE} for page blobs."
            raise OutOfRangeError(msg)
        if self.use_transactional_checksum and self.stream_minimum_read_size_in_bytes > MAX_RANGE_CHECKSUM_SIZE:
            msg = (
                "stream_minimum_read_size_in_bytes must not exceed "
                f"{MAX_RANGE_CHECKSUM_SIZE} when transactional hashing is enabled."
            )
            raise OutOfRangeError(msg)

        return replace(
            self,
            store_content_md5=(blob_type == "block") if self.store_content_md5 is None else self.store_content_md5,
            store_content_crc64=False if self.store_content_crc64 is None else self.store_content_crc64,
            parallel_operation_thread_count=1 if blob_type == "append" else self.parallel_operation_thread_count,
        )

    def to_dict(self) -> dict[str, object]:
        """Serialize BlobRequestOptions to a plain dictionary."""
        return {
            "stream_write_size_in_bytes": self.stream_write_size_in_bytes,
            "stream_minimum_read_size_in_bytes": self.stream_minimum_read_size_in_bytes,
            "store_content_md5": self.store_content_md5,
            "store_content_crc64": self.store_content_crc64,
            "use_transactional_md5": self.use_transactional_md5,
            "use_transactional_crc64": self.use_transactional_crc64,
            "disable_content_md5_validation": self.disable_content_md5_validation,
            "disable_content_crc64_validation": self.disable_content_crc64_validation,
            "parallel_operation_thread_count": self.parallel_operation_thread_count,
            "read_cache_chunks": self.read_cache_chunks,
            "validate_cached_reads": self.validate_cached_reads,
        }

    @classmethod
    def from_dict(cls, value: Mapping[str, object]) -> BlobRequestOptions:
        """Deserialize BlobRequestOptions from a plain dictionary; missing keys take defaults."""
        data = as_str_object_dict(value, field_name="BlobRequestOptions")
        defaults = cls()

        def _int(name: str) -> int:
            return require_int(data.get(name, getattr(defaults, name)), field_name=f"BlobRequestOptions.{name}")

        def _bool(name: str) -> bool:
            return require_bool(data.get(name, getattr(defaults, name)), field_name=f"BlobRequestOptions.{name}")

        return cls(
            stream_write_size_in_bytes=_int("stream_write_size_in_bytes"),
            stream_minimum_read_size_in_bytes=_int("stream_minimum_read_size_in_bytes"),
            store_content_md5=optional_bool(
                data.get("store_content_md5"),
                field_name="BlobRequestOptions.store_content_md5",
            ),
            store_content_crc64=optional_bool(
                data.get("store_content_crc64"),
                field_name="BlobRequestOptions.store_content_crc64",
            ),
            use_transactional_md5=_bool("use_transactional_md5"),
            use_transactional_crc64=_bool("use_transactional_crc64"),
            disable_content_md5_validation=_bool("disable_content_md5_validation"),
            disable_content_crc64_validation=_bool("disable_content_crc64_validation"),
            parallel_operation_thread_count=_int("parallel_operation_thread_count"),
            read_cache_chunks=_int("read_cache_chunks"),
            validate_cached_reads=_bool("validate_cached_reads"),
        )
