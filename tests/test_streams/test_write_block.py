"""Tests for BlobWriteStream over block blobs."""

import base64
import gc
import hashlib
import os
import threading
import time
from dataclasses import replace

import pytest

from blobstream.buffers import BufferPool
from blobstream.checksum import compute_checksum
from blobstream.client import BlobClient
from blobstream.conditions import AccessCondition
from blobstream.errors import (
    BlobIntegrityError,
    BlobNotFoundError,
    ConflictError,
    PreconditionFailedError,
    StorageError,
    StreamClosedError,
    UnsupportedOperationError,
)
from blobstream.options import KB, MB, BlobRequestOptions
from blobstream.services import InMemoryBlobService, WriteResult
from blobstream.streams import BLOCK, BlobWriteStream
from blobstream.types import BlobHandle, OperationContext

HANDLE = BlobHandle("container", "blocks")
CHUNK = 16 * KB
SMALL_WRITES = BlobRequestOptions(stream_write_size_in_bytes=CHUNK, stream_minimum_read_size_in_bytes=CHUNK)


def _client(service: InMemoryBlobService | None = None) -> tuple[BlobClient, InMemoryBlobService, BufferPool]:
    service = service if service is not None else InMemoryBlobService()
    pool = BufferPool()
    return BlobClient(service, default_options=SMALL_WRITES, buffer_pool=pool), service, pool


def _md5_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


class _WrongEchoService(InMemoryBlobService):
    def put_block(self, *args: object, **kwargs: object) -> WriteResult:
        result = super().put_block(*args, **kwargs)  # type: ignore[arg-type]
        return replace(result, content_md5=_md5_b64(b"not the block"))


class _FailingBlockService(InMemoryBlobService):
    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0
        self._calls_lock = threading.Lock()

    def put_block(self, *args: object, **kwargs: object) -> WriteResult:
        with self._calls_lock:
            self.calls += 1
            call = self.calls
        if call == self.fail_on:
            msg = "injected failure"
            raise StorageError(msg, status=500, error_code="InternalError")
        return super().put_block(*args, **kwargs)  # type: ignore[arg-type]


@pytest.mark.parametrize(("size", "blocks"), [(0, 0), (1, 1), (CHUNK, 1), (CHUNK + 1, 2), (3 * CHUNK + 5, 4)])
def test_round_trip_sizes(size: int, blocks: int) -> None:
    client, _service, pool = _client()
    data = os.urandom(size)
    ctx = OperationContext()
    with client.open_write(HANDLE, operation_context=ctx) as stream:
        assert stream.write(data) == size
        assert stream.position == size
    assert ctx.count("put_block") == blocks
    assert ctx.count("put_block_list") == 1
    assert len(stream.block_ids) == blocks
    assert client.download_bytes(HANDLE) == data
    assert pool.outstanding == 0


def test_one_request_per_threshold_and_redundant_flush_is_free() -> None:
    client, _service, _pool = _client()
    ctx = OperationContext()
    stream = client.open_write(HANDLE, operation_context=ctx)
    half = os.urandom(CHUNK // 2)

    counts = []
    for _ in range(3):
        stream.write(half)
        counts.append(ctx.count("put_block"))
    stream.flush()
    counts.append(ctx.count("put_block"))
    stream.flush()
    counts.append(ctx.count("put_block"))
    assert counts == [0, 1, 1, 2, 2]

    stream.commit()
    assert ctx.count("put_block") == 2
    assert ctx.count("put_block_list") == 1
    assert len(ctx) == 3


def test_block_ids_are_base64_of_prefix_and_index() -> None:
    client, _service, _pool = _client()
    stream = client.open_write(HANDLE)
    stream.write(os.urandom(2 * CHUNK))
    first, second = (base64.b64decode(block_id).decode("ascii") for block_id in stream.block_ids)
    prefix, index = first.rsplit("-", 1)
    assert index == "000000"
    assert second == f"{prefix}-000001"
    stream.abort()


def test_nothing_visible_before_commit() -> None:
    client, service, _pool = _client()
    stream = client.open_write(HANDLE)
    stream.write(os.urandom(2 * CHUNK))
    assert service.staged_block_count(HANDLE) == 2
    with pytest.raises(BlobNotFoundError):
        service.get_properties(HANDLE)
    stream.commit()
    assert service.get_properties(HANDLE).length == 2 * CHUNK


def test_stored_md5_matches_local_digest_for_multi_block_upload() -> None:
    service = InMemoryBlobService()
    client = BlobClient(service)
    chunks = [os.urandom(3 * MB) for _ in range(3)]
    ctx = OperationContext()
    with client.open_write(HANDLE, operation_context=ctx) as stream:
        for chunk in chunks:
            stream.write(chunk)
    expected = b"".join(chunks)
    assert ctx.count("put_block") == 3
    props = service.get_properties(HANDLE)
    assert props.content_md5 == _md5_b64(expected)
    assert client.download_bytes(HANDLE) == expected


def test_store_crc64_and_skip_md5() -> None:
    client, service, _pool = _client()
    data = os.urandom(100)
    options = replace(SMALL_WRITES, store_content_md5=False, store_content_crc64=True)
    with client.open_write(HANDLE, options=options) as stream:
        stream.write(data)
    props = service.get_properties(HANDLE)
    assert props.content_md5 is None
    assert props.content_crc64 == compute_checksum(data, md5=False, crc64=True).crc64


def test_seek_and_length_are_unsupported() -> None:
    client, _service, _pool = _client()
    stream = client.open_write(HANDLE)
    assert stream.seekable() is False
    assert stream.writable() is True
    assert stream.readable() is False
    with pytest.raises(UnsupportedOperationError):
        stream.seek(0)
    with pytest.raises(UnsupportedOperationError):
        _ = stream.length
    stream.abort()


def test_stream_is_single_use() -> None:
    client, _service, _pool = _client()
    stream = client.open_write(HANDLE)
    stream.write(b"abc")
    stream.commit()
    assert stream.committed is True
    with pytest.raises(StreamClosedError, match="committed once"):
        stream.write(b"more")
    with pytest.raises(StreamClosedError):
        stream.flush()
    with pytest.raises(StreamClosedError):
        stream.commit()
    stream.close()
    assert stream.closed is True


def test_abort_discards_and_closes() -> None:
    client, service, pool = _client()
    stream = client.open_write(HANDLE)
    stream.write(os.urandom(CHUNK + 10))
    stream.abort()
    assert pool.outstanding == 0
    assert service.blob_count() == 0
    with pytest.raises(StreamClosedError, match="closed"):
        stream.write(b"x")
    stream.abort()


def test_exception_in_context_manager_aborts() -> None:
    client, service, pool = _client()
    with pytest.raises(RuntimeError), client.open_write(HANDLE) as stream:
        stream.write(os.urandom(CHUNK))
        raise RuntimeError
    assert stream.closed is True
    assert stream.committed is False
    assert service.blob_count() == 0
    assert service.staged_block_count(HANDLE) == 1
    assert pool.outstanding == 0


def test_if_not_exists_fails_at_open_for_existing_blob() -> None:
    client, service, _pool = _client()
    service.put_bytes(HANDLE, b"existing")
    ctx = OperationContext()
    with pytest.raises(ConflictError):
        client.open_write(HANDLE, condition=AccessCondition.not_exists(), operation_context=ctx)
    assert ctx.count("put_block") == 0


def test_if_match_checked_at_open() -> None:
    client, service, _pool = _client()
    service.put_bytes(HANDLE, b"existing")
    with pytest.raises(PreconditionFailedError):
        client.open_write(HANDLE, condition=AccessCondition.match('"0xSTALE"'))
    with pytest.raises(BlobNotFoundError):
        client.open_write(BlobHandle("container", "missing"), condition=AccessCondition.exists())


def test_if_not_exists_on_missing_blob_succeeds() -> None:
    client, _service, _pool = _client()
    with client.open_write(HANDLE, condition=AccessCondition.not_exists()) as stream:
        stream.write(b"fresh")
    assert client.download_bytes(HANDLE) == b"fresh"


def test_condition_rechecked_at_commit() -> None:
    client, service, _pool = _client()
    etag = service.put_bytes(HANDLE, b"v1").etag
    stream = client.open_write(HANDLE, condition=AccessCondition.match(etag))
    stream.write(b"v2")
    service.put_bytes(HANDLE, b"concurrent")
    with pytest.raises(PreconditionFailedError):
        stream.commit()
    stream.close()
    assert client.download_bytes(HANDLE) == b"concurrent"


def test_if_not_exists_rechecked_at_commit() -> None:
    client, service, pool = _client()
    stream = client.open_write(HANDLE, condition=AccessCondition.not_exists())
    stream.write(b"mine")
    service.put_bytes(HANDLE, b"theirs")
    with pytest.raises(ConflictError):
        stream.close()
    assert stream.closed is True
    assert pool.outstanding == 0


def test_transactional_md5_is_sent_and_verified() -> None:
    client, _service, _pool = _client()
    options = replace(SMALL_WRITES, use_transactional_md5=True)
    with client.open_write(HANDLE, options=options) as stream:
        stream.write(os.urandom(CHUNK + 1))
    assert len(stream.block_ids) == 2


def test_transactional_echo_mismatch_is_sticky() -> None:
    client, _service, pool = _client(_WrongEchoService())
    options = replace(SMALL_WRITES, use_transactional_md5=True)
    stream = client.open_write(HANDLE, options=options)
    with pytest.raises(BlobIntegrityError):
        stream.write(os.urandom(CHUNK))
    with pytest.raises(BlobIntegrityError):
        stream.write(b"x")
    stream.abort()
    assert pool.outstanding == 0


def test_parallel_uploads_keep_block_order() -> None:
    client, _service, pool = _client()
    options = replace(SMALL_WRITES, parallel_operation_thread_count=4)
    data = os.urandom(5 * CHUNK + 3)
    ctx = OperationContext()
    with client.open_write(HANDLE, options=options, operation_context=ctx) as stream:
        for start in range(0, len(data), 1000):
            stream.write(data[start : start + 1000])
    assert ctx.count("put_block") == 6
    assert client.download_bytes(HANDLE) == data
    assert pool.outstanding == 0


def test_parallel_failure_surfaces_at_next_operation() -> None:
    service = _FailingBlockService(fail_on=2)
    client, _service, pool = _client(service)
    options = replace(SMALL_WRITES, parallel_operation_thread_count=3)
    stream = client.open_write(HANDLE, options=options)
    with pytest.raises(StorageError, match="injected failure"):
        stream.write(os.urandom(3 * CHUNK))
        stream.flush()
    with pytest.raises(StorageError):
        stream.commit()
    stream.abort()
    assert pool.outstanding == 0
    assert service.blob_count() == 0


def test_sequential_failure_releases_buffer() -> None:
    service = _FailingBlockService(fail_on=1)
    client, _service, pool = _client(service)
    ctx = OperationContext()
    stream = client.open_write(HANDLE, operation_context=ctx)
    with pytest.raises(StorageError):
        stream.write(os.urandom(CHUNK))
    assert ctx.request_results[-1].status == 500
    assert ctx.request_results[-1].error_code == "InternalError"
    stream.abort()
    assert pool.outstanding == 0


def test_direct_construction_uses_capabilities() -> None:
    service = InMemoryBlobService()
    pool = BufferPool()
    stream = BlobWriteStream(service, HANDLE, capabilities=BLOCK, options=SMALL_WRITES, buffer_pool=pool)
    assert stream.capabilities is BLOCK
    assert stream.options.store_content_md5 is True
    stream.write(b"direct")
    stream.close()
    assert service.get_range(HANDLE, 0, 10).data == b"direct"


def test_unclosed_stream_is_released_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    client, service, pool = _client()
    stream = client.open_write(HANDLE)
    stream.write(b"pending")
    assert pool.outstanding == 1
    with caplog.at_level("WARNING", logger="blobstream.streams._write"):
        del stream
        gc.collect()
    assert pool.outstanding == 0
    assert service.blob_count() == 0
    assert any("never closed" in record.getMessage() for record in caplog.records)


class _BlockingBlockService(InMemoryBlobService):
    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.gate = threading.Event()

    def put_block(self, *args: object, **kwargs: object) -> WriteResult:
        self.started.set()
        self.gate.wait(timeout=5)
        return super().put_block(*args, **kwargs)  # type: ignore[arg-type]


def test_finalizer_does_not_join_upload_threads() -> None:
    service = _BlockingBlockService()
    client, _service, pool = _client(service)
    options = replace(SMALL_WRITES, parallel_operation_thread_count=2)
    stream = client.open_write(HANDLE, options=options)
    stream.write(b"x" * CHUNK)
    assert service.started.wait(timeout=5)

    stream.__del__()
    assert service.staged_block_count(HANDLE) == 0

    service.gate.set()
    deadline = time.monotonic() + 5
    while pool.outstanding and time.monotonic() < deadline:
        time.sleep(0.01)
    assert pool.outstanding == 0
    assert service.blob_count() == 0
