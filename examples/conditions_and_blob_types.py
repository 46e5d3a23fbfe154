"""ETag locking, access conditions, page and append blobs."""

import tempfile

from blobstream import (
    PAGE_SIZE,
    AccessCondition,
    BlobClient,
    BlobHandle,
    BlobRequestOptions,
    ConflictError,
    FileBlobService,
    InMemoryBlobService,
    MaxSizeConditionError,
    OperationContext,
    PreconditionFailedError,
)

client = BlobClient(InMemoryBlobService())
options = BlobRequestOptions(stream_minimum_read_size_in_bytes=16 * 1024, validate_cached_reads=False)
handle = BlobHandle("data", "large.bin")
client.upload_bytes(handle, b"x" * 64 * 1024)

# ---- ETag lock on read ----
# A write that lands mid-read surfaces on the next range request.

with client.open_read(handle, options=options) as reader:
    reader.read(16 * 1024)
    client.upload_bytes(handle, b"y" * 64 * 1024)
    try:
        reader.read(16 * 1024)
    except PreconditionFailedError as exc:
        print(f"[lock] {type(exc).__name__}: status={exc.status}, code={exc.error_code}")

# ---- If-None-Match: * ----

try:
    client.upload_bytes(handle, b"z", condition=AccessCondition.not_exists())
except ConflictError as exc:
    print(f"[create-only] {type(exc).__name__}: code={exc.error_code}")

# ---- Page blob ----
# Writes must land on 512-byte boundaries; seek moves the write cursor.

page = BlobHandle("data", "disk.vhd")
context = OperationContext()
with client.open_write(page, blob_type="page", size=4 * PAGE_SIZE, operation_context=context) as stream:
    stream.seek(2 * PAGE_SIZE)
    stream.write(b"p" * PAGE_SIZE)
print(f"[page] requests = {[result.operation for result in context.request_results]}")
print(f"[page] third page starts with {client.download_bytes(page)[2 * PAGE_SIZE : 2 * PAGE_SIZE + 4]!r}")

# ---- Append blob with a max-size condition ----

log = BlobHandle("data", "events.log")
with client.open_write(log, blob_type="append", condition=AccessCondition.max_size(32)) as stream:
    stream.write(b"event-1\n")
try:
    with client.open_write(log, blob_type="append", create_new=False, condition=AccessCondition.max_size(32)) as stream:
        stream.write(b"e" * 40)
except MaxSizeConditionError as exc:
    print(f"[append] {type(exc).__name__}: {exc}")
print(f"[append] content = {client.download_bytes(log)!r}")

# ---- FileBlobService ----
# Same streams over a directory on disk.

with tempfile.TemporaryDirectory() as tmpdir:
    file_client = BlobClient(FileBlobService(tmpdir))
    stored = file_client.upload_bytes(BlobHandle("backups", "db.dump"), b"dump" * 1000)
    snapshot = file_client.create_snapshot(BlobHandle("backups", "db.dump"))
    print(f"\n[file] length={stored.length}, snapshot={snapshot}")
    print(f"[file] snapshot bytes = {len(file_client.download_bytes(snapshot))}")
