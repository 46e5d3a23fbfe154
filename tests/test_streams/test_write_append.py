"""Tests for BlobWriteStream over append blobs."""

import os
from dataclasses import replace

import pytest

from blobstream.buffers import BufferPool
from blobstream.client import BlobClient
from blobstream.conditions import AccessCondition
from blobstream.errors import (
    ConflictError,
    MaxSizeConditionError,
    PreconditionFailedError,
    UnsupportedOperationError,
)
from blobstream.options import KB, BlobRequestOptions
from blobstream.services import InMemoryBlobService
from blobstream.types import BlobHandle, OperationContext

HANDLE = BlobHandle("container", "log")
CHUNK = 16 * KB
APPEND_WRITES = BlobRequestOptions(stream_write_size_in_bytes=CHUNK, stream_minimum_read_size_in_bytes=CHUNK)


def _client() -> tuple[BlobClient, InMemoryBlobService, BufferPool]:
    service = InMemoryBlobService()
    pool = BufferPool()
    return BlobClient(service, default_options=APPEND_WRITES, buffer_pool=pool), service, pool


@pytest.mark.parametrize(("size", "appends"), [(0, 0), (1, 1), (CHUNK, 1), (CHUNK + 1, 2), (3 * CHUNK, 3)])
def test_round_trip_sizes(size: int, appends: int) -> None:
    client, service, pool = _client()
    data = os.urandom(size)
    ctx = OperationContext()
    with client.open_write(HANDLE, blob_type="append", operation_context=ctx) as stream:
        stream.write(data)
    assert ctx.count("create_append_blob") == 1
    assert ctx.count("append_block") == appends
    assert ctx.count("set_properties") == 0
    props = service.get_properties(HANDLE)
    assert props.blob_type == "append"
    assert props.committed_block_count == appends
    assert client.download_bytes(HANDLE) == data
    assert pool.outstanding == 0


def test_append_streams_are_sequential_and_not_seekable() -> None:
    client, _service, _pool = _client()
    options = replace(APPEND_WRITES, parallel_operation_thread_count=8)
    stream = client.open_write(HANDLE, blob_type="append", options=options)
    assert stream.options.parallel_operation_thread_count == 1
    assert stream.seekable() is False
    with pytest.raises(UnsupportedOperationError):
        stream.seek(0)
    stream.abort()


def test_max_size_condition_fails_client_side() -> None:
    client, service, pool = _client()
    ctx = OperationContext()
    stream = client.open_write(
        HANDLE,
        blob_type="append",
        condition=AccessCondition.max_size(40 * KB),
        operation_context=ctx,
    )
    stream.write(os.urandom(CHUNK))
    stream.write(os.urandom(CHUNK))
    with pytest.raises(MaxSizeConditionError) as exc_info:
        stream.write(os.urandom(CHUNK))
    assert str(exc_info.value) == "Append block data should not exceed the maximum blob size condition value."
    assert ctx.count("append_block") == 2
    assert service.get_properties(HANDLE).length == 2 * CHUNK

    with pytest.raises(MaxSizeConditionError):
        stream.flush()
    stream.abort()
    assert pool.outstanding == 0
    assert service.get_properties(HANDLE).length == 2 * CHUNK


def test_max_size_condition_on_final_flush() -> None:
    client, service, _pool = _client()
    stream = client.open_write(HANDLE, blob_type="append", condition=AccessCondition.max_size(CHUNK + 10))
    stream.write(os.urandom(CHUNK + 20))
    with pytest.raises(MaxSizeConditionError):
        stream.close()
    assert stream.closed is True
    assert service.get_properties(HANDLE).length == CHUNK


def test_concurrent_append_breaks_position_condition() -> None:
    client, service, _pool = _client()
    stream = client.open_write(HANDLE, blob_type="append")
    stream.write(os.urandom(CHUNK))
    service.append_block(HANDLE, b"intruder")
    with pytest.raises(PreconditionFailedError) as exc_info:
        stream.write(os.urandom(CHUNK))
    assert exc_info.value.error_code == "AppendPositionConditionNotMet"
    stream.abort()
    assert service.get_properties(HANDLE).length == CHUNK + len(b"intruder")


def test_continue_existing_append_blob() -> None:
    client, _service, _pool = _client()
    client.upload_bytes(HANDLE, b"first|", blob_type="append")
    with client.open_write(HANDLE, blob_type="append", create_new=False) as stream:
        assert stream.position == len(b"first|")
        stream.write(b"second")
    assert client.download_bytes(HANDLE) == b"first|second"


def test_continue_at_explicit_append_position() -> None:
    client, _service, _pool = _client()
    client.upload_bytes(HANDLE, b"abc", blob_type="append")
    with pytest.raises(PreconditionFailedError):
        with client.open_write(
            HANDLE,
            blob_type="append",
            create_new=False,
            condition=AccessCondition.append_position(1),
        ) as stream:
            assert stream.position == 1
            stream.write(b"x")
    assert client.download_bytes(HANDLE) == b"abc"


def test_continue_rejects_whole_blob_hash_and_wrong_type() -> None:
    client, service, _pool = _client()
    client.upload_bytes(HANDLE, b"abc", blob_type="append")
    options = replace(APPEND_WRITES, store_content_md5=True)
    with pytest.raises(ValueError, match="existing blob"):
        client.open_write(HANDLE, blob_type="append", create_new=False, options=options)

    block = BlobHandle("container", "block")
    service.put_bytes(block, b"data")
    with pytest.raises(ConflictError):
        client.open_write(block, blob_type="append", create_new=False)


def test_whole_blob_md5_for_new_append_blob() -> None:
    client, service, _pool = _client()
    data = os.urandom(CHUNK + 100)
    options = replace(APPEND_WRITES, store_content_md5=True)
    ctx = OperationContext()
    with client.open_write(HANDLE, blob_type="append", options=options, operation_context=ctx) as stream:
        stream.write(data)
    assert ctx.count("set_properties") == 1
    assert service.get_properties(HANDLE).content_md5 is not None
    assert client.download_bytes(HANDLE) == data


def test_transactional_crc64_append() -> None:
    client, _service, _pool = _client()
    options = replace(APPEND_WRITES, use_transactional_crc64=True)
    data = os.urandom(2 * KB)
    with client.open_write(HANDLE, blob_type="append", options=options) as stream:
        stream.write(data)
    assert client.download_bytes(HANDLE) == data
