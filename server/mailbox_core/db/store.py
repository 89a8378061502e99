"""Row store used by the mailbox services.

Filters are plain equality matches. Row-level ownership is enforced by
the database itself; callers still pass ``user_id`` where it applies.
"""

from typing import Any, Dict, List, Optional

from mailbox_core.core.errors import PersistenceError
from mailbox_core.core.logger import get_logger

logger = get_logger(__name__)

Record = Dict[str, Any]


class SupabaseStore:
    def __init__(self, client):
        self._client = client

    def _filtered(self, query, filters: Record):
        for column, value in filters.items():
            query = query.eq(column, value)
        return query

    def get(self, table: str, filters: Record) -> Optional[Record]:
        try:
            query = self._filtered(self._client.table(table).select("*"), filters)
            response = query.limit(1).execute()
        except Exception as e:
            logger.error("Could not read from %s: %s", table, e)
            raise PersistenceError(f"Could not read from {table}.") from e
        return response.data[0] if response.data else None

    def list(self, table: str, filters: Record, columns: str = "*") -> List[Record]:
        try:
            query = self._filtered(self._client.table(table).select(columns), filters)
            response = query.execute()
        except Exception as e:
            logger.error("Could not list %s: %s", table, e)
            raise PersistenceError(f"Could not read from {table}.") from e
        return response.data or []

    def insert(self, table: str, record: Record) -> Record:
        try:
            response = self._client.table(table).insert(record).execute()
        except Exception as e:
            logger.error("Could not insert into %s: %s", table, e)
            raise PersistenceError(f"Could not save to {table}.") from e
        if not response.data:
            raise PersistenceError(f"Insert into {table} returned no row.")
        return response.data[0]

    def update(self, table: str, filters: Record, patch: Record) -> List[Record]:
        try:
            query = self._filtered(self._client.table(table).update(patch), filters)
            response = query.execute()
        except Exception as e:
            logger.error("Could not update %s: %s", table, e)
            raise PersistenceError(f"Could not update {table}.") from e
        return response.data or []
