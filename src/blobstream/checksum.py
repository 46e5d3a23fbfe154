"""Content hashing: whole-blob and per-chunk MD5 / CRC64 digests."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from blobstream.errors import BlobIntegrityError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from blobstream.types import BytesLike

_CRC64_POLY = 0x9A6C9329AC4BC9B5
_CRC64_MASK = 0xFFFFFFFFFFFFFFFF


def _build_crc64_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ _CRC64_POLY if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC64_TABLE = _build_crc64_table()


class Crc64:
    """Incremental CRC64 in the Azure storage flavour, with a ``hashlib``-style interface.

    The reflected polynomial ``0x9A6C9329AC4BC9B5`` is used with inverted
    initial and final values; ``digest()`` is the 8-byte little-endian CRC.
    """

    name = "crc64"
    digest_size = 8

    __slots__ = ("_crc",)

    def __init__(self, data: BytesLike = b"") -> None:
        self._crc = 0
        if data:
            self.update(data)

    def update(self, data: BytesLike) -> None:
        """Feed more bytes into the running CRC."""
        table = _CRC64_TABLE
        crc = ~self._crc & _CRC64_MASK
        for byte in memoryview(data).cast("B"):
            crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
        self._crc = ~crc & _CRC64_MASK

    @property
    def value(self) -> int:
        """Return the current CRC as an integer."""
        return self._crc

    def digest(self) -> bytes:
        return self._crc.to_bytes(8, "little")

    def hexdigest(self) -> str:
        return self.digest().hex()

    def copy(self) -> Crc64:
        clone = Crc64()
        clone._crc = self._crc
        return clone


def encode_digest(digest: bytes) -> str:
    """Encode a raw digest the way the blob service reports it (base64)."""
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True, slots=True)
class ContentChecksum:
    """Base64-encoded MD5 and/or CRC64 digests of some content."""

    md5: str | None = None
    crc64: str | None = None

    @classmethod
    def none(cls) -> ContentChecksum:
        """Return an empty checksum."""
        return cls()

    @property
    def has_any(self) -> bool:
        """Return whether at least one digest is present."""
        return self.md5 is not None or self.crc64 is not None

    def pairs(self) -> tuple[tuple[str, str], ...]:
        """Return ``(algorithm, digest)`` pairs for the digests present."""
        result: list[tuple[str, str]] = []
        if self.md5 is not None:
            result.append(("md5", self.md5))
        if self.crc64 is not None:
            result.append(("crc64", self.crc64))
        return tuple(result)


class ChecksumHasher:
    """Running MD5 / CRC64 hasher over a sequence of chunks."""

    __slots__ = ("_crc64", "_md5")

    def __init__(self, *, md5: bool, crc64: bool) -> None:
        self._md5 = hashlib.md5(usedforsecurity=False) if md5 else None
        self._crc64 = Crc64() if crc64 else None

    @property
    def has_any(self) -> bool:
        return self._md5 is not None or self._crc64 is not None

    def update(self, data: BytesLike) -> None:
        if self._md5 is not None:
            self._md5.update(data)
        if self._crc64 is not None:
            self._crc64.update(data)

    def checksum(self) -> ContentChecksum:
        """Return the digests of everything fed so far; hashing can continue afterwards."""
        return ContentChecksum(
            md5=encode_digest(self._md5.copy().digest()) if self._md5 is not None else None,
            crc64=encode_digest(self._crc64.digest()) if self._crc64 is not None else None,
        )


def compute_checksum(data: BytesLike, *, md5: bool = True, crc64: bool = False) -> ContentChecksum:
    """Compute the requested digests of ``data`` in one shot."""
    hasher = ChecksumHasher(md5=md5, crc64=crc64)
    hasher.update(data)
    return hasher.checksum()


def checksum_of_chunks(chunks: Iterable[BytesLike], *, md5: bool = True, crc64: bool = False) -> ContentChecksum:
    """Compute the requested digests over several chunks in order."""
    hasher = ChecksumHasher(md5=md5, crc64=crc64)
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.checksum()


def verify_checksum(
    expected: ContentChecksum,
    actual: ContentChecksum,
    *,
    resource: str,
    require_expected: bool = False,
) -> None:
    """Raise ``BlobIntegrityError`` for the first algorithm present on both sides that differs.

    With ``require_expected`` an algorithm present in ``actual`` but missing
    from ``expected`` fails too, so an unverifiable digest is never accepted.
    """
    actual_digests = dict(actual.pairs())
    if require_expected:
        expected_algorithms = {algorithm for algorithm, _digest in expected.pairs()}
        for algorithm, actual_digest in actual.pairs():
            if algorithm not in expected_algorithms:
                raise BlobIntegrityError(resource, algorithm=algorithm, expected="<not returned>", actual=actual_digest)
    for algorithm, expected_digest in expected.pairs():
        actual_digest = actual_digests.get(algorithm)
        if actual_digest is not None and actual_digest != expected_digest:
            raise BlobIntegrityError(resource, algorithm=algorithm, expected=expected_digest, actual=actual_digest)
