"""Typed errors for blobstream."""

import io


class BlobStreamError(Exception):
    """Base exception for all blobstream errors."""


class StorageError(BlobStreamError):
    """Raised when the blob service rejects a request.

    ``status`` is the HTTP-equivalent status code and ``error_code`` names the
    failing condition or service error (e.g. ``ConditionNotMet``).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int,
        error_code: str | None = None,
        resource: str | None = None,
    ) -> None:
        """Initialize with the service status, error code, and affected resource."""
        self.status = status
        self.error_code = error_code
        self.resource = resource
        super().__init__(message)


class BlobNotFoundError(StorageError):
    """Raised when the addressed blob does not exist."""

    def __init__(self, resource: str) -> None:
        """Initialize with the missing blob's resource name."""
        super().__init__(f"Blob not found: {resource}", status=404, error_code="BlobNotFound", resource=resource)


class PreconditionFailedError(StorageError):
    """Raised when an access condition is not met (HTTP 412)."""

    def __init__(self, resource: str, *, error_code: str = "ConditionNotMet", detail: str | None = None) -> None:
        """Initialize with the resource and the name of the failing condition."""
        message = f"Precondition failed for {resource}: {error_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, status=412, error_code=error_code, resource=resource)


class NotModifiedError(StorageError):
    """Raised when a read-side If-None-Match / If-Modified-Since condition short-circuits (HTTP 304)."""

    def __init__(self, resource: str) -> None:
        """Initialize with the resource name."""
        super().__init__(f"Blob not modified: {resource}", status=304, error_code="ConditionNotMet", resource=resource)


class ConflictError(StorageError):
    """Raised when the request conflicts with the blob's current state (HTTP 409)."""

    def __init__(self, resource: str, *, error_code: str = "BlobAlreadyExists") -> None:
        """Initialize with the resource and the conflict kind."""
        super().__init__(f"Conflict for {resource}: {error_code}", status=409, error_code=error_code, resource=resource)


class BlobIntegrityError(BlobStreamError, OSError):
    """Raised when blob data does not match its stored or transmitted content hash."""

    def __init__(self, resource: str, *, algorithm: str, expected: str, actual: str) -> None:
        """Initialize with the resource, hash algorithm, and mismatched digests."""
        self.resource = resource
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Blob data corrupted (integrity check failed) for {resource}: "
            f"expected {algorithm}={expected!r}, retrieved {actual!r}"
        )


class MaxSizeConditionError(BlobStreamError, OSError):
    """Raised client-side when an append would exceed the max-size condition."""

    def __init__(self, resource: str, *, limit: int, size: int) -> None:
        """Initialize with the resource, the size limit, and the size the append would reach."""
        self.resource = resource
        self.limit = limit
        self.size = size
        super().__init__("Append block data should not exceed the maximum blob size condition value.")


class OutOfRangeError(BlobStreamError, ValueError):
    """Raised for offsets, sizes, or alignments outside the permitted range."""


class UnsupportedOperationError(BlobStreamError, io.UnsupportedOperation):
    """Raised for operations the stream's blob type does not support (e.g. seeking a block write stream)."""


class StreamClosedError(BlobStreamError, ValueError):
    """Raised when a stream is used after it was committed or closed."""


class OperationCancelledError(BlobStreamError):
    """Raised when a chunked transfer observes its cancellation signal."""
