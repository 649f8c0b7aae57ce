from __future__ import annotations

from typing import Any, Iterable

from invoice_sync.core.clock import Clock, SystemClock, iso_utc


class BaseRepository:
    def __init__(self, db, *, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or SystemClock()

    @property
    def db(self):
        return self._db

    def _now_iso(self) -> str:
        return iso_utc(self._clock.now())

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def row_to_dict(row: Any) -> dict[str, Any]:
        if row is None:
            return {}
        if isinstance(row, dict):
            return dict(row)
        return {key: row[key] for key in row.keys()}

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]
