"""Process-local store for development runs and tests."""

import copy
from typing import Any, Dict, List, Optional

from docflow.exceptions import JobNotFoundError, StorageError
from docflow.jobs.models import JobRecord, utcnow
from docflow.storage.base import JOBS_TABLE, JobStore


class MemoryStore(JobStore):
    """Keeps Job Records, table rows and file blobs in dictionaries."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._files: Dict[str, bytes] = {}

    # --- Job Records -------------------------------------------------------

    async def create(self, record: JobRecord) -> JobRecord:
        self._jobs[record.id] = record.model_copy(deep=True)
        return record

    async def read(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job record not found: {job_id}")
        data = record.model_dump()
        data.update(fields)
        if "updated_at" not in fields:
            data["updated_at"] = utcnow()
        self._jobs[job_id] = JobRecord.model_validate(data)

    # --- Generic tables ----------------------------------------------------

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        if table == JOBS_TABLE:
            return [r.model_dump() for r in self._jobs.values()]
        return self._tables.setdefault(table, [])

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(row.get(k) == v for k, v in filters.items())

    async def count(self, table: str, **filters: Any) -> int:
        return sum(1 for row in self._rows(table) if self._matches(row, filters))

    async def delete(self, table: str, **filters: Any) -> int:
        if table == JOBS_TABLE:
            doomed = [jid for jid, r in self._jobs.items() if self._matches(r.model_dump(), filters)]
            for jid in doomed:
                del self._jobs[jid]
            return len(doomed)
        rows = self._rows(table)
        kept = [row for row in rows if not self._matches(row, filters)]
        self._tables[table] = kept
        return len(rows) - len(kept)

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if table == JOBS_TABLE:
            for row in rows:
                await self.create(JobRecord.model_validate(row))
            return
        self._rows(table).extend(copy.deepcopy(rows))

    async def select_one(self, table: str, **filters: Any) -> Optional[Dict[str, Any]]:
        for row in self._rows(table):
            if self._matches(row, filters):
                return copy.deepcopy(row)
        return None

    async def update_rows(self, table: str, fields: Dict[str, Any], **filters: Any) -> None:
        if table == JOBS_TABLE:
            for jid, record in list(self._jobs.items()):
                if self._matches(record.model_dump(), filters):
                    await self.update(jid, fields)
            return
        for row in self._rows(table):
            if self._matches(row, filters):
                row.update(copy.deepcopy(fields))

    # --- Files ---------------------------------------------------------------

    async def download(self, path: str) -> bytes:
        if path not in self._files:
            raise StorageError(f"Failed to download file: {path} not found")
        return self._files[path]

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        self._files[path] = bytes(data)

    async def remove_file(self, path: str) -> None:
        self._files.pop(path, None)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Snapshot of a table, for inspection."""
        return copy.deepcopy(self._rows(table))
