"""
Job Record Store

Thin layer over the Supabase tables that hold job and job-item records.
Provides read-by-id, filtered reads, conditional updates (optionally guarded
by the current status) and inserts. There are no cross-record transactions;
the only multi-step guarantee is the version-guarded update used for counters.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from enrichment.jobs.errors import JobConcurrencyError, JobNotFoundError
from enrichment.jobs.utils import now_iso
from enrichment.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class JobStore:
    """
    Record access for one table.

    Update methods return the updated row, or None when the row did not
    match (wrong id or status guard failed). Callers decide whether a miss
    is a conflict.
    """

    def __init__(self, table: str, supabase=None, touch_updated_at: bool = True):
        self.table = table
        self.supabase = supabase or get_supabase()
        self.touch_updated_at = touch_updated_at

    def _query(self):
        if self.supabase is None:
            raise RuntimeError("Supabase client is not configured")
        return self.supabase.table(self.table)

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Get full record by ID."""
        result = self._query()\
            .select("*")\
            .eq("id", record_id)\
            .limit(1)\
            .execute()
        return result.data[0] if result.data else None

    def require(self, record_id: str, label: str = "Job") -> Dict[str, Any]:
        record = self.get(record_id)
        if not record:
            raise JobNotFoundError(f"{label} not found")
        return record

    def find(
        self,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lt: Optional[Dict[str, Any]] = None,
        ilike: Optional[Dict[str, str]] = None,
        order_by: Optional[str] = "created_at",
        desc: bool = False,
        limit: Optional[int] = None,
        columns: str = "*"
    ) -> List[Dict[str, Any]]:
        """Filtered read."""
        query = self._query().select(columns)
        for field, value in (eq or {}).items():
            query = query.eq(field, value)
        for field, values in (in_ or {}).items():
            query = query.in_(field, list(values))
        for field, value in (lt or {}).items():
            query = query.lt(field, value)
        for field, pattern in (ilike or {}).items():
            query = query.ilike(field, pattern)
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit:
            query = query.limit(limit)
        result = query.execute()
        return result.data or []

    def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        result = self._query().insert(record).execute()
        return result.data[0] if result.data else record

    def insert_many(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not records:
            return []
        result = self._query().insert(records).execute()
        return result.data or []

    def upsert(self, records: List[Dict[str, Any]], on_conflict: str) -> List[Dict[str, Any]]:
        if not records:
            return []
        result = self._query().upsert(records, on_conflict=on_conflict).execute()
        return result.data or []

    def update(
        self,
        record_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[Iterable[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Update one record. With expected_status, the write only lands if the
        record's current status is one of those values.
        """
        query = self._query()\
            .update(self._stamp(updates))\
            .eq("id", record_id)
        if expected_status is not None:
            query = query.in_("status", list(expected_status))
        result = query.execute()
        return result.data[0] if result.data else None

    def update_where(
        self,
        updates: Dict[str, Any],
        eq: Optional[Dict[str, Any]] = None,
        lt: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None
    ) -> List[Dict[str, Any]]:
        """Bulk conditional update. Returns the rows that were changed."""
        query = self._query().update(self._stamp(updates))
        for field, value in (eq or {}).items():
            query = query.eq(field, value)
        for field, value in (lt or {}).items():
            query = query.lt(field, value)
        for field, values in (in_ or {}).items():
            query = query.in_(field, list(values))
        result = query.execute()
        return result.data or []

    def update_versioned(
        self,
        record_id: str,
        mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
        retries: int = 5
    ) -> Dict[str, Any]:
        """
        Optimistic read-modify-write guarded by the record's `version` column.

        `mutate` receives the freshly read record and returns the fields to
        write (or None for no change). On a version mismatch the record is
        re-read and `mutate` is applied again.
        """
        for attempt in range(1, retries + 1):
            current = self.require(record_id)
            version = current.get("version") or 0
            updates = mutate(dict(current))
            if not updates:
                return current

            updates = dict(updates)
            updates["version"] = version + 1
            result = self._query()\
                .update(self._stamp(updates))\
                .eq("id", record_id)\
                .eq("version", version)\
                .execute()
            if result.data:
                return result.data[0]

            logger.warning(
                f"Version conflict on {self.table} {record_id} "
                f"(attempt {attempt}/{retries}, version {version})"
            )

        raise JobConcurrencyError(
            f"Could not update {self.table} {record_id} after {retries} attempts"
        )

    def delete(self, record_id: str) -> bool:
        result = self._query().delete().eq("id", record_id).execute()
        return bool(result.data)

    def _stamp(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        if not self.touch_updated_at:
            return dict(updates)
        return {**updates, "updated_at": now_iso()}
