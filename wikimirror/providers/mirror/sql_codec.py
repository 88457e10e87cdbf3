"""Column encoding shared by the SQLite mirror tables.

Timestamps are stored as fixed-width UTC strings
(``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so that lexical order in SQL equals
chronological order.  Tag lists are stored as sorted JSON arrays.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def encode_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)  # noqa: UP017
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)  # noqa: UP017


def decode_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)  # noqa: UP017


def encode_tags(tags: list[str] | None) -> str:
    return json.dumps(sorted(set(tags or [])), ensure_ascii=False)


def decode_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return list(json.loads(value))


def encode_list(values: list[str]) -> str:
    return json.dumps(values, ensure_ascii=False)


def decode_list(value: str | None) -> list[str]:
    if not value:
        return []
    return list(json.loads(value))
