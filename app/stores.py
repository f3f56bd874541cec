"""Record store protocol and the in-memory implementation."""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Protocol, Tuple

from app.field_values import is_empty, unique_key
from app.records_validation import merge_record_data
from app.schema import CustomField, CustomObject, NotFoundError, PageLayout, Record, SchemaSnapshot


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _actor_id(actor: Any) -> str | None:
    if isinstance(actor, dict):
        return actor.get("id")
    return actor


@dataclass
class ConflictError(Exception):
    code: str
    message: str
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


class RecordStore(Protocol):
    def find_object_by_api_name(self, api_name: str) -> CustomObject: ...

    def list_active_fields_for_object(self, obj: CustomObject) -> List[CustomField]: ...

    def list_active_layouts_for_object(self, obj: CustomObject) -> List[PageLayout]: ...

    def create_record(
        self,
        obj: CustomObject,
        data: dict,
        actor: Any = None,
        page_layout_id: str | None = None,
        record_type_id: str | None = None,
    ) -> Record: ...

    def update_record_merge(
        self,
        obj: CustomObject,
        record_id: str,
        changes: dict,
        actor: Any = None,
        expected_version: int | None = None,
    ) -> Record: ...

    def delete_record(self, obj: CustomObject, record_id: str) -> None: ...

    def get_record(self, obj: CustomObject, record_id: str) -> Record: ...

    def list_records(self, obj: CustomObject, limit: int = 200, offset: int = 0) -> List[Record]: ...


def unique_entries(obj: CustomObject, data: dict) -> List[Tuple[str, str]]:
    """(field api name, unique key) for every unique field with a value."""
    entries = []
    for item in obj.active_fields():
        if not item.unique:
            continue
        value = data.get(item.api_name)
        if is_empty(value):
            continue
        entries.append((item.api_name, unique_key(item, value)))
    return entries


def check_record_refs(obj: CustomObject, page_layout_id: str | None, record_type_id: str | None) -> None:
    if page_layout_id and obj.find_layout(page_layout_id, include_inactive=True) is None:
        raise NotFoundError("layout", page_layout_id)
    if record_type_id and obj.find_record_type(record_type_id) is None:
        raise NotFoundError("record_type", record_type_id)


class SchemaBackedStore:
    """Schema lookups shared by the record stores; ``schema`` returns the current snapshot."""

    def __init__(self, schema: Callable[[], SchemaSnapshot]) -> None:
        self._schema = schema

    def find_object_by_api_name(self, api_name: str) -> CustomObject:
        return self._schema().get_object(api_name)

    def list_active_fields_for_object(self, obj: CustomObject) -> List[CustomField]:
        return obj.active_fields()

    def list_active_layouts_for_object(self, obj: CustomObject) -> List[PageLayout]:
        return obj.active_layouts()


class MemoryRecordStore(SchemaBackedStore):
    def __init__(self, schema: Callable[[], SchemaSnapshot]) -> None:
        super().__init__(schema)
        self._records: Dict[str, Dict[str, Record]] = {}
        self._unique: Dict[Tuple[str, str, str], str] = {}
        self._lock = threading.Lock()

    def _bucket(self, obj: CustomObject) -> Dict[str, Record]:
        return self._records.setdefault(obj.id, {})

    def _claim_unique(self, obj: CustomObject, entries: List[Tuple[str, str]], record_id: str) -> None:
        for api_name, key in entries:
            owner = self._unique.get((obj.id, api_name, key))
            if owner is not None and owner != record_id:
                raise ConflictError(
                    "RECORD_UNIQUE_VIOLATION",
                    f"{api_name} must be unique",
                    {"field": api_name, "record_id": owner},
                )

    def _release_unique(self, obj: CustomObject, record_id: str) -> None:
        for index_key in [k for k, owner in self._unique.items() if k[0] == obj.id and owner == record_id]:
            del self._unique[index_key]

    def create_record(
        self,
        obj: CustomObject,
        data: dict,
        actor: Any = None,
        page_layout_id: str | None = None,
        record_type_id: str | None = None,
    ) -> Record:
        check_record_refs(obj, page_layout_id, record_type_id)
        now = _now()
        record = Record(
            id=str(uuid.uuid4()),
            object_id=obj.id,
            data=copy.deepcopy(data),
            page_layout_id=page_layout_id,
            record_type_id=record_type_id,
            created_by_id=_actor_id(actor),
            modified_by_id=_actor_id(actor),
            created_at=now,
            updated_at=now,
            version=1,
        )
        entries = unique_entries(obj, record.data)
        with self._lock:
            self._claim_unique(obj, entries, record.id)
            for api_name, key in entries:
                self._unique[(obj.id, api_name, key)] = record.id
            self._bucket(obj)[record.id] = record
        return copy.deepcopy(record)

    def update_record_merge(
        self,
        obj: CustomObject,
        record_id: str,
        changes: dict,
        actor: Any = None,
        expected_version: int | None = None,
    ) -> Record:
        with self._lock:
            current = self._bucket(obj).get(record_id)
            if current is None:
                raise NotFoundError("record", record_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(
                    "RECORD_VERSION_CONFLICT",
                    "Record was modified by another request",
                    {"expected": expected_version, "actual": current.version},
                )
            merged = merge_record_data(current.data, copy.deepcopy(changes))
            entries = unique_entries(obj, merged)
            self._claim_unique(obj, entries, record_id)
            self._release_unique(obj, record_id)
            for api_name, key in entries:
                self._unique[(obj.id, api_name, key)] = record_id
            updated = copy.deepcopy(current)
            updated.data = merged
            updated.modified_by_id = _actor_id(actor)
            updated.updated_at = _now()
            updated.version = current.version + 1
            self._bucket(obj)[record_id] = updated
        return copy.deepcopy(updated)

    def delete_record(self, obj: CustomObject, record_id: str) -> None:
        with self._lock:
            bucket = self._bucket(obj)
            if record_id not in bucket:
                raise NotFoundError("record", record_id)
            del bucket[record_id]
            self._release_unique(obj, record_id)

    def get_record(self, obj: CustomObject, record_id: str) -> Record:
        record = self._bucket(obj).get(record_id)
        if record is None:
            raise NotFoundError("record", record_id)
        return copy.deepcopy(record)

    def list_records(self, obj: CustomObject, limit: int = 200, offset: int = 0) -> List[Record]:
        items = list(self._bucket(obj).values())
        return [copy.deepcopy(r) for r in items[offset : offset + limit]]
