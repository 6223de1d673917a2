from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable


_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(str(value), _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class BaseRepository:
    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def placeholders(values: Iterable[Any]) -> str:
        return ", ".join("?" for _ in values)
