"""
In-memory remote backend.

Used when no spreadsheet is configured (demos, tests). Rows are deep
copied on the way in and out so callers can never mutate stored state.
"""

import copy
from typing import Any

from tradebook.services.remote.interface import RemoteTableClient


class MemoryTableClient(RemoteTableClient):
    """Remote tables held in a dict of lists."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {}

    async def fetch_rows(self, table: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self.tables.get(table, []))

    async def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.tables.setdefault(table, []).extend(copy.deepcopy(rows))

    async def update_row(self, table: str, row: dict[str, Any]) -> bool:
        rows = self.tables.get(table, [])
        for index, existing in enumerate(rows):
            if existing.get("id") == row["id"]:
                rows[index] = copy.deepcopy(row)
                return True
        return False

    async def delete_rows(self, table: str, row_ids: list[str]) -> int:
        rows = self.tables.get(table, [])
        wanted = set(row_ids)
        kept = [row for row in rows if row.get("id") not in wanted]
        self.tables[table] = kept
        return len(rows) - len(kept)

    async def clear_table(self, table: str) -> int:
        removed = len(self.tables.get(table, []))
        self.tables[table] = []
        return removed
