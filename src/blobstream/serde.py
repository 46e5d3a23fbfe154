"""Shared serialization and validation utilities for to_dict / from_dict round-trips."""

from collections.abc import Mapping
from datetime import datetime, timezone


def as_str_object_dict(value: object, *, field_name: str) -> dict[str, object]:
    """Validate and normalize a mapping value into ``dict[str, object]``."""
    if not isinstance(value, Mapping):
        msg = f"{field_name} must be a mapping."
        raise TypeError(msg)
    return {str(key): item for key, item in value.items()}


def string_mapping(value: object, *, field_name: str) -> dict[str, str]:
    """Validate an optional mapping of string keys to string values."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        msg = f"{field_name} must be a mapping of strings."
        raise TypeError(msg)

    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            msg = f"{field_name}[{key!r}] must map a string to a string."
            raise TypeError(msg)
        result[key] = item
    return result


def optional_string(value: object, *, field_name: str) -> str | None:
    """Validate an optional string field."""
    if value is None:
        return None
    if not isinstance(value, str):
        msg = f"{field_name} must be a string or None."
        raise TypeError(msg)
    return value


def require_string(value: object, *, field_name: str) -> str:
    """Validate a required non-empty string field."""
    if not isinstance(value, str) or not value:
        msg = f"{field_name} must be a non-empty string."
        raise TypeError(msg)
    return value


def require_int(value: object, *, field_name: str) -> int:
    """Validate a required integer field (rejects booleans)."""
    if not isinstance(value, int) or isinstance(value, bool):
        msg = f"{field_name} must be an int."
        raise TypeError(msg)
    return value


def optional_bool(value: object, *, field_name: str) -> bool | None:
    """Validate an optional boolean field."""
    if value is None:
        return None
    if not isinstance(value, bool):
        msg = f"{field_name} must be a bool or None."
        raise TypeError(msg)
    return value


def require_bool(value: object, *, field_name: str) -> bool:
    """Validate a required boolean field."""
    if not isinstance(value, bool):
        msg = f"{field_name} must be a bool."
        raise TypeError(msg)
    return value


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime into timezone-aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_timestamp(value: object, *, field_name: str) -> datetime:
    """Parse a required ISO-8601 timestamp string into UTC."""
    if not isinstance(value, str):
        msg = f"{field_name} must be an ISO-8601 string."
        raise TypeError(msg)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        msg = f"{field_name} is not a valid ISO-8601 timestamp: {value!r}."
        raise ValueError(msg) from exc
    return to_utc(parsed)
