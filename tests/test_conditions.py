"""Tests for blobstream.conditions."""

from datetime import datetime, timedelta, timezone

import pytest

from blobstream.conditions import (
    ANY_ETAG,
    AccessCondition,
    check_append_conditions,
    check_header_conditions,
    check_sequence_conditions,
)
from blobstream.errors import ConflictError, NotModifiedError, PreconditionFailedError
from blobstream.types import BlobProperties

_WHEN = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _props(**changes: object) -> BlobProperties:
    values: dict[str, object] = {"blob_type": "block", "length": 100, "etag": '"0xA"', "last_modified": _WHEN}
    values.update(changes)
    return BlobProperties(**values)  # type: ignore[arg-type]


def test_factories() -> None:
    assert AccessCondition.match('"0xA"').if_match == '"0xA"'
    assert AccessCondition.none_match('"0xA"').if_none_match == '"0xA"'
    assert AccessCondition.exists().if_match == ANY_ETAG
    assert AccessCondition.not_exists().is_if_not_exists is True
    assert AccessCondition.max_size(10).if_max_size_le == 10
    assert AccessCondition.append_position(5).if_append_position_equal == 5
    assert AccessCondition.sequence_number_le(1).if_sequence_number_le == 1
    assert AccessCondition.sequence_number_lt(2).if_sequence_number_lt == 2
    assert AccessCondition.sequence_number_eq(3).if_sequence_number_eq == 3


def test_datetimes_are_normalized_to_utc() -> None:
    local = datetime(2024, 6, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    condition = AccessCondition.modified_since(local)
    assert condition.if_modified_since == _WHEN
    assert AccessCondition.unmodified_since(datetime(2024, 6, 1, 12)).if_unmodified_since == _WHEN


def test_negative_append_conditions_rejected() -> None:
    with pytest.raises(ValueError, match="if_max_size_le"):
        AccessCondition(if_max_size_le=-1)
    with pytest.raises(ValueError, match="if_append_position_equal"):
        AccessCondition(if_append_position_equal=-1)


def test_is_conditional_ignores_append_and_sequence() -> None:
    assert AccessCondition().is_conditional is False
    assert AccessCondition(if_max_size_le=1, if_sequence_number_eq=0).is_conditional is False
    assert AccessCondition.unmodified_since(_WHEN).is_conditional is True


def test_without_if_not_exists_and_append_only() -> None:
    condition = AccessCondition(if_none_match=ANY_ETAG, if_modified_since=_WHEN)
    stripped = condition.without_if_not_exists()
    assert stripped.if_none_match is None
    assert stripped.if_modified_since == _WHEN

    plain = AccessCondition.match('"0xA"')
    assert plain.without_if_not_exists() is plain

    append = AccessCondition(if_match='"0xA"', if_max_size_le=9, if_append_position_equal=3).append_only()
    assert append == AccessCondition(if_max_size_le=9, if_append_position_equal=3)


def test_describe_lists_active_conditions() -> None:
    condition = AccessCondition(if_match='"0xA"', if_max_size_le=9)
    assert condition.describe() == ("if_match", "if_max_size_le")


def test_header_conditions_none_passes() -> None:
    check_header_conditions(None, None, is_read=True, resource="c/b")
    check_header_conditions(AccessCondition(), _props(), is_read=False, resource="c/b")


def test_if_match_mismatch_and_missing_blob() -> None:
    with pytest.raises(PreconditionFailedError):
        check_header_conditions(AccessCondition.match('"0xB"'), _props(), is_read=True, resource="c/b")
    with pytest.raises(PreconditionFailedError):
        check_header_conditions(AccessCondition.exists(), None, is_read=False, resource="c/b")
    check_header_conditions(AccessCondition.exists(), _props(), is_read=False, resource="c/b")
    check_header_conditions(AccessCondition.not_exists(), None, is_read=False, resource="c/b")


def test_if_none_match_read_vs_write() -> None:
    with pytest.raises(NotModifiedError):
        check_header_conditions(AccessCondition.none_match('"0xA"'), _props(), is_read=True, resource="c/b")
    with pytest.raises(PreconditionFailedError):
        check_header_conditions(AccessCondition.none_match('"0xA"'), _props(), is_read=False, resource="c/b")
    with pytest.raises(ConflictError) as exc_info:
        check_header_conditions(AccessCondition.not_exists(), _props(), is_read=False, resource="c/b")
    assert exc_info.value.error_code == "BlobAlreadyExists"
    check_header_conditions(AccessCondition.none_match('"0xB"'), _props(), is_read=True, resource="c/b")


def test_modified_since_read_vs_write() -> None:
    condition = AccessCondition.modified_since(_WHEN)
    with pytest.raises(NotModifiedError):
        check_header_conditions(condition, _props(), is_read=True, resource="c/b")
    with pytest.raises(PreconditionFailedError):
        check_header_conditions(condition, _props(), is_read=False, resource="c/b")
    earlier = AccessCondition.modified_since(_WHEN - timedelta(seconds=1))
    check_header_conditions(earlier, _props(), is_read=True, resource="c/b")


def test_unmodified_since() -> None:
    check_header_conditions(AccessCondition.unmodified_since(_WHEN), _props(), is_read=False, resource="c/b")
    earlier = AccessCondition.unmodified_since(_WHEN - timedelta(seconds=1))
    with pytest.raises(PreconditionFailedError):
        check_header_conditions(earlier, _props(), is_read=True, resource="c/b")


def test_append_conditions() -> None:
    props = _props(blob_type="append", length=10)
    within = AccessCondition(if_max_size_le=15, if_append_position_equal=10)
    check_append_conditions(within, props, block_size=5, resource="c/b")
    with pytest.raises(PreconditionFailedError) as size_exc:
        check_append_conditions(AccessCondition.max_size(14), props, block_size=5, resource="c/b")
    assert size_exc.value.error_code == "MaxBlobSizeConditionNotMet"
    with pytest.raises(PreconditionFailedError) as pos_exc:
        check_append_conditions(AccessCondition.append_position(9), props, block_size=1, resource="c/b")
    assert pos_exc.value.error_code == "AppendPositionConditionNotMet"


@pytest.mark.parametrize(
    ("condition", "passes"),
    [
        (AccessCondition.sequence_number_le(4), True),
        (AccessCondition.sequence_number_le(3), False),
        (AccessCondition.sequence_number_lt(5), True),
        (AccessCondition.sequence_number_lt(4), False),
        (AccessCondition.sequence_number_eq(4), True),
        (AccessCondition.sequence_number_eq(0), False),
    ],
)
def test_sequence_conditions(condition: AccessCondition, passes: bool) -> None:
    props = _props(blob_type="page", length=512, sequence_number=4)
    if passes:
        check_sequence_conditions(condition, props, resource="c/b")
        return
    with pytest.raises(PreconditionFailedError) as exc_info:
        check_sequence_conditions(condition, props, resource="c/b")
    assert exc_info.value.error_code == "SequenceNumberConditionNotMet"
