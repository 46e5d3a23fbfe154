"""Tests for blobstream.errors."""

import io

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


def test_blobstream_error_is_exception() -> None:
    assert issubclass(BlobStreamError, Exception)


def test_storage_errors_share_base() -> None:
    for cls in (BlobNotFoundError, PreconditionFailedError, NotModifiedError, ConflictError):
        assert issubclass(cls, StorageError)
        assert issubclass(cls, BlobStreamError)


def test_client_side_errors_keep_builtin_bases() -> None:
    assert issubclass(BlobIntegrityError, OSError)
    assert issubclass(MaxSizeConditionError, OSError)
    assert issubclass(OutOfRangeError, ValueError)
    assert issubclass(StreamClosedError, ValueError)
    assert issubclass(UnsupportedOperationError, io.UnsupportedOperation)
    assert issubclass(OperationCancelledError, BlobStreamError)


def test_storage_error_carries_status_and_code() -> None:
    err = StorageError("boom", status=400, error_code="InvalidBlockList", resource="c/b")
    assert err.status == 400
    assert err.error_code == "InvalidBlockList"
    assert err.resource == "c/b"
    assert str(err) == "boom"


def test_blob_not_found_status() -> None:
    err = BlobNotFoundError("c/missing")
    assert err.status == 404
    assert err.error_code == "BlobNotFound"
    assert "c/missing" in str(err)


def test_precondition_failed_names_condition() -> None:
    err = PreconditionFailedError("c/b", error_code="AppendPositionConditionNotMet", detail="offset 3")
    assert err.status == 412
    assert err.error_code == "AppendPositionConditionNotMet"
    assert "offset 3" in str(err)


def test_not_modified_and_conflict_status() -> None:
    assert NotModifiedError("c/b").status == 304
    conflict = ConflictError("c/b", error_code="InvalidBlobType")
    assert conflict.status == 409
    assert conflict.error_code == "InvalidBlobType"


def test_blob_integrity_carries_attributes() -> None:
    err = BlobIntegrityError("c/b", algorithm="md5", expected="aaa", actual="bbb")
    assert err.resource == "c/b"
    assert err.algorithm == "md5"
    assert err.expected == "aaa"
    assert err.actual == "bbb"
    msg = str(err)
    assert msg.startswith("Blob data corrupted (integrity check failed)")
    assert "aaa" in msg
    assert "bbb" in msg


def test_max_size_condition_message() -> None:
    err = MaxSizeConditionError("c/b", limit=10, size=12)
    assert str(err) == "Append block data should not exceed the maximum blob size condition value."
    assert err.limit == 10
    assert err.size == 12
