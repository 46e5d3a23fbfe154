"""AccessCondition: optimistic-concurrency preconditions and their server-side evaluation."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING

from blobstream.errors import ConflictError, NotModifiedError, PreconditionFailedError
from blobstream.serde import to_utc

if TYPE_CHECKING:
    from datetime import datetime

    from blobstream.types import BlobProperties

ANY_ETAG = "*"


@dataclass(frozen=True, slots=True)
class AccessCondition:
    """Preconditions attached to a blob request.

    ETag and date conditions follow HTTP semantics. The sequence-number
    conditions apply to page writes and the append-position / max-size
    conditions to append blocks.
    """

    if_match: str | None = None
    if_none_match: str | None = None
    if_modified_since: datetime | None = None
    if_unmodified_since: datetime | None = None
    if_sequence_number_le: int | None = None
    if_sequence_number_lt: int | None = None
    if_sequence_number_eq: int | None = None
    if_append_position_equal: int | None = None
    if_max_size_le: int | None = None

    def __post_init__(self) -> None:
        if self.if_modified_since is not None:
            object.__setattr__(self, "if_modified_since", to_utc(self.if_modified_since))
        if self.if_unmodified_since is not None:
            object.__setattr__(self, "if_unmodified_since", to_utc(self.if_unmodified_since))
        for name in ("if_append_position_equal", "if_max_size_le"):
            value = getattr(self, name)
            if value is not None and value < 0:
                msg = f"AccessCondition.{name} must be >= 0."
                raise ValueError(msg)

    @classmethod
    def match(cls, etag: str) -> AccessCondition:
        """Succeed only while the blob's ETag equals ``etag``."""
        return cls(if_match=etag)

    @classmethod
    def none_match(cls, etag: str) -> AccessCondition:
        """Succeed only when the blob's ETag differs from ``etag``."""
        return cls(if_none_match=etag)

    @classmethod
    def exists(cls) -> AccessCondition:
        """Succeed only when the blob exists."""
        return cls(if_match=ANY_ETAG)

    @classmethod
    def not_exists(cls) -> AccessCondition:
        """Succeed only when the blob does not exist."""
        return cls(if_none_match=ANY_ETAG)

    @classmethod
    def modified_since(cls, when: datetime) -> AccessCondition:
        return cls(if_modified_since=when)

    @classmethod
    def unmodified_since(cls, when: datetime) -> AccessCondition:
        return cls(if_unmodified_since=when)

    @classmethod
    def max_size(cls, size: int) -> AccessCondition:
        """Fail appends that would grow the blob beyond ``size`` bytes."""
        return cls(if_max_size_le=size)

    @classmethod
    def append_position(cls, offset: int) -> AccessCondition:
        """Succeed only when the append blob's current length equals ``offset``."""
        return cls(if_append_position_equal=offset)

    @classmethod
    def sequence_number_le(cls, value: int) -> AccessCondition:
        return cls(if_sequence_number_le=value)

    @classmethod
    def sequence_number_lt(cls, value: int) -> AccessCondition:
        return cls(if_sequence_number_lt=value)

    @classmethod
    def sequence_number_eq(cls, value: int) -> AccessCondition:
        return cls(if_sequence_number_eq=value)

    @property
    def is_conditional(self) -> bool:
        """Return whether any ETag or date condition is set."""
        return (
            self.if_match is not None
            or self.if_none_match is not None
            or self.if_modified_since is not None
            or self.if_unmodified_since is not None
        )

    @property
    def is_if_not_exists(self) -> bool:
        return self.if_none_match == ANY_ETAG

    def without_if_not_exists(self) -> AccessCondition:
        """Return a copy with an ``If-None-Match: *`` condition removed."""
        if not self.is_if_not_exists:
            return self
        return replace(self, if_none_match=None)

    def append_only(self) -> AccessCondition:
        """Return only the append-position and max-size conditions."""
        return AccessCondition(
            if_append_position_equal=self.if_append_position_equal,
            if_max_size_le=self.if_max_size_le,
        )

    def describe(self) -> tuple[str, ...]:
        """Return the names of the conditions that are set."""
        return tuple(item.name for item in fields(self) if getattr(self, item.name) is not None)


def _etag_matches(condition_etag: str, etag: str) -> bool:
    return condition_etag in (ANY_ETAG, etag)


def check_header_conditions(
    condition: AccessCondition | None,
    properties: BlobProperties | None,
    *,
    is_read: bool,
    resource: str,
) -> None:
    """Evaluate ETag and date conditions against the blob's current state.

    ``properties`` is ``None`` when the blob does not exist. Reads report a
    satisfied If-None-Match / failed If-Modified-Since as "not modified";
    writes report them as precondition failures, except ``If-None-Match: *``
    on an existing blob, which is a conflict.
    """
    if condition is None:
        return

    if properties is None:
        if condition.if_match is not None:
            raise PreconditionFailedError(resource, detail="if_match on a missing blob")
        return

    if condition.if_match is not None and not _etag_matches(condition.if_match, properties.etag):
        raise PreconditionFailedError(resource, detail="if_match")

    if condition.if_none_match is not None and _etag_matches(condition.if_none_match, properties.etag):
        if is_read:
            raise NotModifiedError(resource)
        if condition.if_none_match == ANY_ETAG:
            raise ConflictError(resource, error_code="BlobAlreadyExists")
        raise PreconditionFailedError(resource, detail="if_none_match")

    if condition.if_modified_since is not None and properties.last_modified <= condition.if_modified_since:
        if is_read:
            raise NotModifiedError(resource)
        raise PreconditionFailedError(resource, detail="if_modified_since")

    if condition.if_unmodified_since is not None and properties.last_modified > condition.if_unmodified_since:
        raise PreconditionFailedError(resource, detail="if_unmodified_since")


def check_append_conditions(
    condition: AccessCondition | None,
    properties: BlobProperties,
    *,
    block_size: int,
    resource: str,
) -> None:
    """Evaluate the max-size and append-position conditions of one append block."""
    if condition is None:
        return
    if condition.if_max_size_le is not None and properties.length + block_size > condition.if_max_size_le:
        raise PreconditionFailedError(resource, error_code="MaxBlobSizeConditionNotMet")
    if condition.if_append_position_equal is not None and properties.length != condition.if_append_position_equal:
        raise PreconditionFailedError(resource, error_code="AppendPositionConditionNotMet")


def check_sequence_conditions(condition: AccessCondition | None, properties: BlobProperties, *, resource: str) -> None:
    """Evaluate the page-blob sequence-number conditions."""
    if condition is None:
        return
    current = properties.sequence_number
    if (
        (condition.if_sequence_number_le is not None and not current <= condition.if_sequence_number_le)
        or (condition.if_sequence_number_lt is not None and not current < condition.if_sequence_number_lt)
        or (condition.if_sequence_number_eq is not None and current != condition.if_sequence_number_eq)
    ):
        raise PreconditionFailedError(resource, error_code="SequenceNumberConditionNotMet")
