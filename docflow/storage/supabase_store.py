"""Supabase-backed store.

The supabase-py client is synchronous, so every call runs in the default
thread executor to keep the event loop free while PostgREST answers.
"""

import asyncio
import functools
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from supabase import Client, create_client

from docflow.exceptions import ConfigError, StorageError
from docflow.jobs.models import JobRecord, utcnow
from docflow.storage.base import JOBS_TABLE, UPLOADS_BUCKET, JobStore


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


def _to_record(row: Dict[str, Any]) -> JobRecord:
    data = dict(row)
    # Columns are nullable in the table; the model wants concrete defaults
    data["metadata"] = data.get("metadata") or {}
    data["file_size"] = data.get("file_size") or 0
    data["title"] = data.get("title") or ""
    data["mime_type"] = data.get("mime_type") or "application/pdf"
    return JobRecord.model_validate(data)


class SupabaseStore(JobStore):
    """JobStore over Supabase tables and the uploads storage bucket."""

    def __init__(self, client: Client, bucket: str = UPLOADS_BUCKET):
        self._client = client
        self._bucket = bucket

    @classmethod
    def connect(cls, url: str, service_role_key: str, bucket: str = UPLOADS_BUCKET) -> "SupabaseStore":
        """Build a store on a service-role client (bypasses row-level security)."""
        if not url or not service_role_key:
            raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(url, service_role_key), bucket)

    async def _call(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    def _filtered(self, query, filters: Dict[str, Any]):
        for column, value in _jsonable(filters).items():
            query = query.eq(column, value)
        return query

    async def create(self, record: JobRecord) -> JobRecord:
        payload = record.model_dump(mode="json")
        try:
            response = await self._call(
                lambda: self._client.table(JOBS_TABLE).insert(payload).execute()
            )
        except Exception as e:
            raise StorageError(f"Failed to create job record: {e}") from e
        if response.data:
            return _to_record(response.data[0])
        return record

    async def read(self, job_id: str) -> Optional[JobRecord]:
        row = await self.select_one(JOBS_TABLE, id=job_id)
        return _to_record(row) if row else None

    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        payload = _jsonable({"updated_at": utcnow(), **fields})
        try:
            await self._call(
                lambda: self._client.table(JOBS_TABLE)
                .update(payload)
                .eq("id", job_id)
                .execute()
            )
        except Exception as e:
            raise StorageError(f"Failed to update job record {job_id}: {e}") from e

    async def count(self, table: str, **filters: Any) -> int:
        def _count():
            query = self._client.table(table).select("id", count="exact")
            return self._filtered(query, filters).limit(1).execute()

        try:
            response = await self._call(_count)
        except Exception as e:
            raise StorageError(f"Failed to count rows in {table}: {e}") from e
        return response.count or 0

    async def delete(self, table: str, **filters: Any) -> int:
        if not filters:
            raise StorageError(f"Refusing to delete from {table} without filters")

        def _delete():
            return self._filtered(self._client.table(table).delete(), filters).execute()

        try:
            response = await self._call(_delete)
        except Exception as e:
            raise StorageError(f"Failed to delete rows from {table}: {e}") from e
        return len(response.data or [])

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        payload = [_jsonable(row) for row in rows]
        try:
            await self._call(lambda: self._client.table(table).insert(payload).execute())
        except Exception as e:
            raise StorageError(f"Failed to insert into {table}: {e}") from e

    async def select_one(self, table: str, **filters: Any) -> Optional[Dict[str, Any]]:
        def _select():
            query = self._client.table(table).select("*")
            return self._filtered(query, filters).limit(1).execute()

        try:
            response = await self._call(_select)
        except Exception as e:
            raise StorageError(f"Failed to read from {table}: {e}") from e
        return response.data[0] if response.data else None

    async def update_rows(self, table: str, fields: Dict[str, Any], **filters: Any) -> None:
        payload = _jsonable(fields)

        def _update():
            return self._filtered(self._client.table(table).update(payload), filters).execute()

        try:
            await self._call(_update)
        except Exception as e:
            raise StorageError(f"Failed to update {table}: {e}") from e

    async def download(self, path: str) -> bytes:
        bucket = self._client.storage.from_(self._bucket)
        try:
            return await self._call(functools.partial(bucket.download, path))
        except Exception as e:
            raise StorageError(f"Failed to download file {path}: {e}") from e

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        bucket = self._client.storage.from_(self._bucket)
        options = {"content-type": content_type, "upsert": "true"}
        try:
            await self._call(functools.partial(bucket.upload, path, data, options))
        except Exception as e:
            raise StorageError(f"Failed to upload file {path}: {e}") from e

    async def remove_file(self, path: str) -> None:
        bucket = self._client.storage.from_(self._bucket)
        try:
            await self._call(functools.partial(bucket.remove, [path]))
        except Exception as e:
            raise StorageError(f"Failed to remove file {path}: {e}") from e
