"""Core data types: BlobHandle, BlobProperties, RequestResult, OperationContext."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Literal, TypeVar, get_args

from blobstream.checksum import ContentChecksum
from blobstream.errors import StorageError
from blobstream.serde import (
    as_str_object_dict,
    optional_string,
    require_int,
    require_string,
    require_timestamp,
    string_mapping,
    to_utc,
)

if TYPE_CHECKING:
    from collections.abc import Callable

BlobType = Literal["block", "page", "append"]
BytesLike = bytes | bytearray | memoryview

PAGE_SIZE = 512

_BLOB_TYPES: tuple[str, ...] = get_args(BlobType)
_T = TypeVar("_T")


def utc_now() -> datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def validate_blob_type(value: object) -> BlobType:
    """Validate a blob type literal."""
    if value not in _BLOB_TYPES:
        msg = f"blob_type must be one of {', '.join(_BLOB_TYPES)}; got {value!r}."
        raise ValueError(msg)
    return value  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class BlobHandle:
    """Address of a remote blob, optionally pinned to a read-only snapshot."""

    container: str
    name: str
    snapshot: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.container, str) or not self.container:
            msg = "BlobHandle.container must be a non-empty string."
            raise ValueError(msg)
        if not isinstance(self.name, str) or not self.name:
            msg = "BlobHandle.name must be a non-empty string."
            raise ValueError(msg)
        if self.snapshot is not None and (not isinstance(self.snapshot, str) or not self.snapshot):
            msg = "BlobHandle.snapshot must be a non-empty string or None."
            raise ValueError(msg)

    @property
    def is_snapshot(self) -> bool:
        return self.snapshot is not None

    def with_snapshot(self, snapshot: str) -> BlobHandle:
        """Return a handle to the given snapshot of this blob."""
        return BlobHandle(container=self.container, name=self.name, snapshot=snapshot)

    def base(self) -> BlobHandle:
        """Return the handle of the live (non-snapshot) blob."""
        if self.snapshot is None:
            return self
        return BlobHandle(container=self.container, name=self.name)

    def __str__(self) -> str:
        path = f"{self.container}/{self.name}"
        if self.snapshot is None:
            return path
        return f"{path}?snapshot={self.snapshot}"


@dataclass(frozen=True, slots=True)
class BlobProperties:
    """Service-side attributes of a blob as returned by a properties request.

    ``last_modified`` has whole-second resolution, like HTTP dates. Content
    hashes are base64 strings exactly as the service stores them.
    """

    blob_type: BlobType
    length: int
    etag: str
    last_modified: datetime
    content_md5: str | None = None
    content_crc64: str | None = None
    content_type: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    sequence_number: int = 0
    committed_block_count: int = 0

    def __post_init__(self) -> None:
        validate_blob_type(self.blob_type)
        if self.length < 0:
            msg = "BlobProperties.length must be >= 0."
            raise ValueError(msg)
        object.__setattr__(self, "last_modified", to_utc(self.last_modified))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def content_checksum(self) -> ContentChecksum:
        """Return the stored whole-blob hashes."""
        return ContentChecksum(md5=self.content_md5, crc64=self.content_crc64)

    def to_dict(self) -> dict[str, object]:
        """Serialize BlobProperties to a plain dictionary."""
        return {
            "blob_type": self.blob_type,
            "length": self.length,
            "etag": self.etag,
            "last_modified": self.last_modified.isoformat(),
            "content_md5": self.content_md5,
            "content_crc64": self.content_crc64,
            "content_type": self.content_type,
            "metadata": dict(self.metadata),
            "sequence_number": self.sequence_number,
            "committed_block_count": self.committed_block_count,
        }

    @classmethod
    def from_dict(cls, value: Mapping[str, object]) -> BlobProperties:
        """Deserialize BlobProperties from a plain dictionary."""
        data = as_str_object_dict(value, field_name="BlobProperties")
        return cls(
            blob_type=validate_blob_type(data.get("blob_type")),
            length=require_int(data.get("length"), field_name="BlobProperties.length"),
            etag=require_string(data.get("etag"), field_name="BlobProperties.etag"),
            last_modified=require_timestamp(data.get("last_modified"), field_name="BlobProperties.last_modified"),
            content_md5=optional_string(data.get("content_md5"), field_name="BlobProperties.content_md5"),
            content_crc64=optional_string(data.get("content_crc64"), field_name="BlobProperties.content_crc64"),
            content_type=optional_string(data.get("content_type"), field_name="BlobProperties.content_type"),
            metadata=string_mapping(data.get("metadata"), field_name="BlobProperties.metadata"),
            sequence_number=require_int(data.get("sequence_number", 0), field_name="BlobProperties.sequence_number"),
            committed_block_count=require_int(
                data.get("committed_block_count", 0),
                field_name="BlobProperties.committed_block_count",
            ),
        )


@dataclass(frozen=True, slots=True)
class RequestResult:
    """One service request as observed by the caller."""

    operation: str
    status: int
    etag: str | None = None
    error_code: str | None = None
    completed_at: datetime = field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status < 300


_SUCCESS_STATUS: dict[str, int] = {
    "get_properties": 200,
    "get_range": 206,
    "put_block": 201,
    "put_block_list": 201,
    "append_block": 201,
    "write_pages": 201,
    "clear_pages": 201,
    "create_page_blob": 201,
    "create_append_blob": 201,
    "create_snapshot": 201,
    "set_properties": 200,
    "set_metadata": 200,
    "delete_blob": 202,
}


class OperationContext:
    """Append-only, thread-safe log of the service requests made on behalf of a caller.

    Streams record every request they issue here, so
    ``len(ctx.request_results)`` is the observable request count.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: list[RequestResult] = []

    @property
    def request_results(self) -> tuple[RequestResult, ...]:
        with self._lock:
            return tuple(self._results)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def record(
        self,
        operation: str,
        *,
        status: int,
        etag: str | None = None,
        error_code: str | None = None,
    ) -> RequestResult:
        """Append one request result and return it."""
        result = RequestResult(operation=operation, status=status, etag=etag, error_code=error_code)
        with self._lock:
            self._results.append(result)
        return result

    def count(self, operation: str | None = None) -> int:
        """Count recorded requests, optionally only those of one operation."""
        with self._lock:
            if operation is None:
                return len(self._results)
            return sum(1 for result in self._results if result.operation == operation)

    def call(self, operation: str, func: Callable[[], _T]) -> _T:
        """Run one service request and record its outcome.

        Failures are recorded before propagating: a ``StorageError`` with its
        status and error code, anything else raised by the call with status 0
        and the exception class name as the error code.
        """
        try:
            result = func()
        except StorageError as exc:
            self.record(operation, status=exc.status, error_code=exc.error_code)
            raise
        except Exception as exc:
            self.record(operation, status=0, error_code=type(exc).__name__)
            raise
        etag = getattr(result, "etag", None)
        self.record(operation, status=_SUCCESS_STATUS.get(operation, 200), etag=etag if isinstance(etag, str) else None)
        return result
