"""Write and read a block blob through streams."""

import io

from blobstream import BlobClient, BlobHandle, BlobRequestOptions, InMemoryBlobService

service = InMemoryBlobService()
options = BlobRequestOptions(stream_write_size_in_bytes=16 * 1024, store_content_md5=True)
client = BlobClient(service, default_options=options)
handle = BlobHandle("docs", "report.txt")

# ---- Write ----
# Bytes are buffered and uploaded as blocks; close() commits the block list.

with client.open_write(handle) as stream:
    for line in range(5000):
        stream.write(f"line {line}\n".encode())
    print(f"[write] staged blocks before commit = {len(stream.block_ids)}")

props = client.get_properties(handle)
print(f"[write] length={props.length}, etag={props.etag}, md5={props.content_md5}")

# ---- Read ----
# The read stream is pinned to the ETag seen at open and checks the stored MD5 at EOF.

with client.open_read(handle) as reader:
    head = reader.read(12)
    print(f"[read] first bytes = {head!r}")
    reader.seek(-9, io.SEEK_END)
    print(f"[read] last bytes = {reader.read()!r}")

# ---- Helpers ----

client.upload_bytes(BlobHandle("docs", "small.bin"), b"\x00\x01\x02")
print(f"[helpers] download_bytes() = {client.download_bytes(BlobHandle('docs', 'small.bin'))!r}")

target = io.BytesIO()
copied = client.download_to_stream(handle, target)
print(f"[helpers] download_to_stream() copied {copied} bytes")
