"""FileBlobService: file-system-backed blob service."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from blobstream.serde import as_str_object_dict, optional_string, require_string
from blobstream.services._memory import BlobKey, BlobRecord, InMemoryBlobService
from blobstream.types import BlobProperties, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

logger = logging.getLogger(__name__)

_PAYLOAD_SUFFIX = ".blob"
_META_SUFFIX = ".meta.json"


class FileBlobService(InMemoryBlobService):
    """File-system-backed blob service.

    Each committed blob or snapshot is stored as ``<id>.blob`` with a
    ``<id>.meta.json`` sidecar under a root directory, where ``<id>`` is the
    SHA-256 of the blob's address. Staged (uncommitted) blocks and committed
    block IDs are kept in memory only and do not survive a restart.
    """

    def __init__(self, root: str | Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        """Initialize with a root directory, creating it if needed, and load existing blobs."""
        super().__init__(clock=clock)
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._load_records()

    @property
    def root(self) -> Path:
        """Return the root directory path."""
        return self._root

    @staticmethod
    def _file_id(key: BlobKey) -> str:
        return hashlib.sha256(json.dumps(list(key)).encode("utf-8")).hexdigest()

    def _resolve_path(self, file_id: str, *, suffix: str) -> Path:
        """Resolve a storage path and ensure it stays under the service root."""
        root = self._root.resolve()
        candidate = (self._root / f"{file_id}{suffix}").resolve()
        try:
            candidate.relative_to(root)
        except ValueError as exc:
            msg = f"Blob file {file_id!r} resolves outside the service root."
            raise ValueError(msg) from exc
        return candidate

    def _record_to_payload(self, key: BlobKey, record: BlobRecord) -> dict[str, object]:
        container, name, snapshot = key
        return {
            "container": container,
            "name": name,
            "snapshot": snapshot,
            "properties": record.properties.to_dict(),
        }

    def _record_from_payload(self, payload: object, data: bytes) -> tuple[BlobKey, BlobRecord] | None:
        """Deserialize one sidecar; return ``None`` when it is invalid or disagrees with the payload."""
        try:
            raw = as_str_object_dict(payload, field_name="sidecar")
            container = require_string(raw.get("container"), field_name="sidecar.container")
            name = require_string(raw.get("name"), field_name="sidecar.name")
            snapshot = optional_string(raw.get("snapshot"), field_name="sidecar.snapshot")
            properties = BlobProperties.from_dict(as_str_object_dict(raw.get("properties"), field_name="properties"))
        except (TypeError, ValueError):
            return None
        if properties.length != len(data):
            return None
        return (container, name, snapshot), BlobRecord(properties=properties, data=bytearray(data))

    def _load_records(self) -> None:
        """Load sidecars and payloads into the in-memory index."""
        for meta_path in self._root.glob(f"*{_META_SUFFIX}"):
            file_id = meta_path.name[: -len(_META_SUFFIX)]
            payload_path = self._resolve_path(file_id, suffix=_PAYLOAD_SUFFIX)
            if not payload_path.exists():
                continue

            try:
                raw = json.loads(meta_path.read_text(encoding="utf-8"))
                data = payload_path.read_bytes()
            except (OSError, json.JSONDecodeError):
                logger.warning("skipping unreadable blob files for %s", file_id)
                continue

            loaded = self._record_from_payload(raw, data)
            if loaded is None:
                logger.warning("skipping invalid blob sidecar %s", meta_path.name)
                continue
            key, record = loaded
            self._blobs[key] = record

    def _store_record(self, key: BlobKey, record: BlobRecord) -> None:
        super()._store_record(key, record)
        file_id = self._file_id(key)
        self._resolve_path(file_id, suffix=_PAYLOAD_SUFFIX).write_bytes(bytes(record.data))
        self._resolve_path(file_id, suffix=_META_SUFFIX).write_text(
            json.dumps(self._record_to_payload(key, record), ensure_ascii=False),
            encoding="utf-8",
        )

    def _forget_record(self, key: BlobKey) -> None:
        super()._forget_record(key)
        file_id = self._file_id(key)
        for suffix in (_PAYLOAD_SUFFIX, _META_SUFFIX):
            path = self._resolve_path(file_id, suffix=suffix)
            if path.exists():
                path.unlink()
