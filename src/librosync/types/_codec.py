# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Flat string encoding shared by the record types.

Records are persisted as flat ``dict[str, str]`` mappings so the same layout
works for Redis hashes and for the in-memory backend. Empty strings stand in
for ``None``.
"""

from datetime import datetime, timezone


def encode_datetime(value: datetime | None) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width UTC so encoded values compare lexicographically
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def decode_datetime(value: str | bytes | None) -> datetime | None:
    if isinstance(value, bytes):
        value = value.decode()
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_str(value: str | bytes | None) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return value or ""


def decode_int(value: str | bytes | int | None) -> int:
    if isinstance(value, bytes):
        value = value.decode()
    if value in (None, ""):
        return 0
    return int(value)


def decode_bool(value: str | bytes | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    return decode_str(value) in ("1", "true", "True")


def encode_bool(value: bool) -> str:
    return "1" if value else "0"
