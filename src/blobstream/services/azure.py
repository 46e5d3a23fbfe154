"""AzureBlobService: BlobService adapter over the ``azure-storage-blob`` SDK.

Requires the ``azure`` extra. Example:

    from azure.storage.blob import BlobServiceClient
    from blobstream import BlobClient
    from blobstream.services.azure import AzureBlobService

    sdk = BlobServiceClient.from_connection_string(conn_str)
    client = BlobClient(AzureBlobService(sdk))
"""

from __future__ import annotations

import base64
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from azure.core import MatchConditions
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ResourceNotModifiedError,
)
from azure.storage.blob import ContentSettings

from blobstream.checksum import compute_checksum, encode_digest
from blobstream.conditions import ANY_ETAG
from blobstream.errors import (
    BlobNotFoundError,
    ConflictError,
    NotModifiedError,
    PreconditionFailedError,
    StorageError,
    UnsupportedOperationError,
)
from blobstream.services._base import ChecksumRequest, RangeResult, WriteResult
from blobstream.types import BlobHandle, BlobProperties

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from azure.storage.blob import BlobClient as AzureBlobClient
    from azure.storage.blob import BlobServiceClient

    from blobstream.checksum import ContentChecksum
    from blobstream.conditions import AccessCondition
    from blobstream.types import BytesLike

_BLOB_TYPES: dict[str, str] = {"BlockBlob": "block", "PageBlob": "page", "AppendBlob": "append"}


def translate_error(exc: HttpResponseError, handle: BlobHandle) -> StorageError:
    """Map an ``azure.core`` HTTP error onto the blobstream error taxonomy."""
    resource = str(handle)
    status = exc.status_code or 0
    error_code = getattr(exc, "error_code", None)
    code = str(error_code) if error_code else None

    if isinstance(exc, ResourceNotModifiedError) or status == 304:
        return NotModifiedError(resource)
    if isinstance(exc, ResourceNotFoundError) or status == 404:
        return BlobNotFoundError(resource)
    if isinstance(exc, ResourceModifiedError) or status == 412:
        return PreconditionFailedError(resource, error_code=code or "ConditionNotMet")
    if isinstance(exc, ResourceExistsError) or status == 409:
        return ConflictError(resource, error_code=code or "BlobAlreadyExists")
    message = exc.message if isinstance(exc.message, str) else str(exc)
    return StorageError(message, status=status, error_code=code, resource=resource)


@contextmanager
def _translated(handle: BlobHandle) -> Iterator[None]:
    try:
        yield
    except HttpResponseError as exc:
        raise translate_error(exc, handle) from exc


def _reject_crc64(requested: bool, handle: BlobHandle) -> None:
    if requested:
        msg = f"Transactional CRC64 is not available through the Azure SDK ({handle}); use MD5 instead."
        raise UnsupportedOperationError(msg)


def condition_kwargs(condition: AccessCondition | None) -> dict[str, Any]:
    """Translate ETag and date conditions into SDK keyword arguments."""
    kwargs: dict[str, Any] = {}
    if condition is None:
        return kwargs
    if condition.if_match is not None and condition.if_none_match is not None:
        msg = "The Azure SDK cannot send If-Match and If-None-Match on the same request."
        raise ValueError(msg)
    if condition.if_match == ANY_ETAG:
        kwargs["match_condition"] = MatchConditions.IfPresent
    elif condition.if_match is not None:
        kwargs["etag"] = condition.if_match
        kwargs["match_condition"] = MatchConditions.IfNotModified
    if condition.if_none_match == ANY_ETAG:
        kwargs["match_condition"] = MatchConditions.IfMissing
    elif condition.if_none_match is not None:
        kwargs["etag"] = condition.if_none_match
        kwargs["match_condition"] = MatchConditions.IfModified
    if condition.if_modified_since is not None:
        kwargs["if_modified_since"] = condition.if_modified_since
    if condition.if_unmodified_since is not None:
        kwargs["if_unmodified_since"] = condition.if_unmodified_since
    return kwargs


def _page_kwargs(condition: AccessCondition | None) -> dict[str, Any]:
    kwargs = condition_kwargs(condition)
    if condition is not None:
        for name, keyword in (
            ("if_sequence_number_le", "if_sequence_number_lte"),
            ("if_sequence_number_lt", "if_sequence_number_lt"),
            ("if_sequence_number_eq", "if_sequence_number_eq"),
        ):
            value = getattr(condition, name)
            if value is not None:
                kwargs[keyword] = value
    return kwargs


def _append_kwargs(condition: AccessCondition | None) -> dict[str, Any]:
    kwargs = condition_kwargs(condition)
    if condition is not None:
        if condition.if_append_position_equal is not None:
            kwargs["appendpos_condition"] = condition.if_append_position_equal
        if condition.if_max_size_le is not None:
            kwargs["maxsize_condition"] = condition.if_max_size_le
    return kwargs


def _encoded(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return encode_digest(bytes(value))
    return None


def _write_result(response: Mapping[str, Any]) -> WriteResult:
    offset = response.get("blob_append_offset")
    return WriteResult(
        etag=response.get("etag"),
        last_modified=response.get("last_modified"),
        content_md5=_encoded(response.get("content_md5")),
        content_crc64=_encoded(response.get("content_crc64")),
        append_offset=int(offset) if offset is not None else None,
        sequence_number=response.get("blob_sequence_number"),
    )


def properties_from_sdk(props: Any) -> BlobProperties:
    """Convert an SDK ``BlobProperties`` object into ``BlobProperties``."""
    raw_type = getattr(props.blob_type, "value", props.blob_type)
    settings = props.content_settings
    md5 = settings.content_md5 if settings is not None else None
    return BlobProperties(
        blob_type=_BLOB_TYPES.get(str(raw_type), "block"),  # type: ignore[arg-type]
        length=int(props.size or 0),
        etag=props.etag,
        last_modified=props.last_modified,
        content_md5=_encoded(md5),
        content_type=settings.content_type if settings is not None else None,
        metadata=dict(props.metadata or {}),
        sequence_number=int(getattr(props, "page_blob_sequence_number", None) or 0),
        committed_block_count=int(getattr(props, "append_blob_committed_block_count", None) or 0),
    )


class AzureBlobService:
    """BlobService backed by an ``azure.storage.blob.BlobServiceClient``.

    Transactional MD5 is delegated to the SDK's ``validate_content``, which
    fails the request when the body does not match. The SDK has no CRC64
    equivalent, so requests for transactional CRC64 raise
    ``UnsupportedOperationError`` instead of going out unchecked, and CRC64
    values are never stored as blob properties.

    Put Block takes no access conditions on Azure; a conditional
    ``put_block`` raises ``UnsupportedOperationError``. Condition the
    ``put_block_list`` commit instead.
    """

    def __init__(self, service_client: BlobServiceClient) -> None:
        """Initialize with an authenticated SDK service client."""
        self._client = service_client

    def _blob(self, handle: BlobHandle) -> AzureBlobClient:
        return self._client.get_blob_client(handle.container, handle.name, snapshot=handle.snapshot)

    def get_properties(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobProperties:
        with _translated(handle):
            props = self._blob(handle).get_blob_properties(**condition_kwargs(condition))
        return properties_from_sdk(props)

    def get_range(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
        checksum: ChecksumRequest | None = None,
    ) -> RangeResult:
        request = checksum or ChecksumRequest()
        _reject_crc64(request.crc64, handle)
        with _translated(handle):
            downloader = self._blob(handle).download_blob(
                offset=offset,
                length=length,
                validate_content=request.md5,
                **condition_kwargs(condition),
            )
            data = downloader.readall()
        # validate_content has checked the service Content-MD5 against these bytes
        content_md5 = compute_checksum(data).md5 if request.md5 else None
        return RangeResult(data=data, properties=properties_from_sdk(downloader.properties), content_md5=content_md5)

    def create_page_blob(
        self,
        handle: BlobHandle,
        size: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        with _translated(handle):
            response = self._blob(handle).create_page_blob(size, **condition_kwargs(condition))
        return _write_result(response)

    def create_append_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> WriteResult:
        with _translated(handle):
            response = self._blob(handle).create_append_blob(**condition_kwargs(condition))
        return _write_result(response)

    def put_block(
        self,
        handle: BlobHandle,
        block_id: str,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        if condition is not None and condition.is_conditional:
            msg = f"Put Block does not accept access conditions ({handle}); condition the block list commit."
            raise UnsupportedOperationError(msg)
        _reject_crc64(checksum is not None and checksum.crc64 is not None, handle)
        body = bytes(data)
        with _translated(handle):
            response = self._blob(handle).stage_block(
                block_id,
                body,
                length=len(body),
                validate_content=checksum is not None and checksum.md5 is not None,
            )
        return _write_result(response or {})

    def put_block_list(
        self,
        handle: BlobHandle,
        block_ids: Sequence[str],
        *,
        content_checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        settings = None
        if content_checksum is not None and content_checksum.md5 is not None:
            settings = ContentSettings(content_md5=bytearray(base64.b64decode(content_checksum.md5)))
        with _translated(handle):
            response = self._blob(handle).commit_block_list(
                list(block_ids),
                content_settings=settings,
                **condition_kwargs(condition),
            )
        return _write_result(response)

    def append_block(
        self,
        handle: BlobHandle,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        _reject_crc64(checksum is not None and checksum.crc64 is not None, handle)
        body = bytes(data)
        with _translated(handle):
            response = self._blob(handle).append_block(
                body,
                length=len(body),
                validate_content=checksum is not None and checksum.md5 is not None,
                **_append_kwargs(condition),
            )
        return _write_result(response)

    def write_pages(
        self,
        handle: BlobHandle,
        offset: int,
        data: BytesLike,
        *,
        checksum: ContentChecksum | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        _reject_crc64(checksum is not None and checksum.crc64 is not None, handle)
        body = bytes(data)
        with _translated(handle):
            response = self._blob(handle).upload_page(
                body,
                offset=offset,
                length=len(body),
                validate_content=checksum is not None and checksum.md5 is not None,
                **_page_kwargs(condition),
            )
        return _write_result(response)

    def clear_pages(
        self,
        handle: BlobHandle,
        offset: int,
        length: int,
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        with _translated(handle):
            response = self._blob(handle).clear_page(offset=offset, length=length, **_page_kwargs(condition))
        return _write_result(response)

    def set_properties(
        self,
        handle: BlobHandle,
        *,
        content_checksum: ContentChecksum | None = None,
        content_type: str | None = None,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        blob = self._blob(handle)
        with _translated(handle):
            current = blob.get_blob_properties(**condition_kwargs(condition)).content_settings
            md5 = current.content_md5
            if content_checksum is not None:
                md5 = bytearray(base64.b64decode(content_checksum.md5)) if content_checksum.md5 is not None else None
            settings = ContentSettings(
                content_type=content_type if content_type is not None else current.content_type,
                content_encoding=current.content_encoding,
                content_language=current.content_language,
                content_disposition=current.content_disposition,
                cache_control=current.cache_control,
                content_md5=md5,
            )
            response = blob.set_http_headers(content_settings=settings, **condition_kwargs(condition))
        return _write_result(response)

    def set_metadata(
        self,
        handle: BlobHandle,
        metadata: Mapping[str, str],
        *,
        condition: AccessCondition | None = None,
    ) -> WriteResult:
        with _translated(handle):
            response = self._blob(handle).set_blob_metadata(dict(metadata), **condition_kwargs(condition))
        return _write_result(response)

    def create_snapshot(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> BlobHandle:
        with _translated(handle):
            response = self._blob(handle).create_snapshot(**condition_kwargs(condition))
        return handle.with_snapshot(str(response["snapshot"]))

    def delete_blob(self, handle: BlobHandle, *, condition: AccessCondition | None = None) -> None:
        kwargs = condition_kwargs(condition)
        if not handle.is_snapshot:
            kwargs["delete_snapshots"] = "include"
        with _translated(handle):
            self._blob(handle).delete_blob(**kwargs)
