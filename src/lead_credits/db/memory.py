from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from .base import BaseStoreAdapter, Filter, RecordNotFoundError, Row, Sort


class InMemoryStoreAdapter(BaseStoreAdapter):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Each primitive runs without yielding to the event loop, so a single
    `update` is atomic with respect to other coroutines, matching the
    single-row guarantee of real backends.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _table(self, table: str) -> Dict[str, Row]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _matches(row: Row, filter: Filter) -> bool:
        for key, value in filter.items():
            if value is None:
                if row.get(key) is not None:
                    return False
            elif row.get(key) != value:
                return False
        return True

    async def find_one(self, table: str, filter: Filter) -> Optional[Row]:
        for row in self._table(table).values():
            if self._matches(row, filter):
                return copy.deepcopy(row)
        return None

    async def find_many(
        self,
        table: str,
        filter: Filter,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        rows = [copy.deepcopy(r) for r in self._table(table).values() if self._matches(r, filter)]
        # Apply sort keys last-to-first so the first key dominates
        for field, direction in reversed(list(sort or [])):
            rows.sort(
                key=lambda r: (r.get(field) is None, r.get(field)),
                reverse=direction < 0,
            )
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        row = copy.deepcopy(dict(fields))
        if row.get("id") is None:
            row["id"] = self._next_id()
        self._table(table)[row["id"]] = row
        return copy.deepcopy(row)

    async def update(
        self,
        table: str,
        row_id: str,
        fields: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[Row]:
        row = self._table(table).get(row_id)
        if row is None:
            raise RecordNotFoundError(f"{table} row {row_id} not found")
        if expected and not self._matches(row, expected):
            return None
        row.update(copy.deepcopy(dict(fields)))
        return copy.deepcopy(row)

    async def delete(self, table: str, row_id: str) -> bool:
        return self._table(table).pop(row_id, None) is not None
