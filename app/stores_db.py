"""DB-backed stores for records and schema definitions."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List

import psycopg2
import psycopg2.errors

from app.db import execute, fetch_all, fetch_one, get_conn
from app.records_validation import merge_record_data
from app.schema import CustomObject, NotFoundError, Record, SchemaSnapshot
from app.stores import ConflictError, SchemaBackedStore, check_record_refs, unique_entries

logger = logging.getLogger("crm.stores")

_TABLES_READY = False

_DDL = (
    """
    create table if not exists crm_schema_versions (
      version integer primary key,
      objects jsonb not null,
      created_at timestamptz not null default now()
    );
    """,
    """
    create table if not exists crm_records (
      id text primary key,
      object_id text not null,
      data jsonb not null default '{}'::jsonb,
      page_layout_id text null,
      record_type_id text null,
      created_by_id text null,
      modified_by_id text null,
      created_at timestamptz not null,
      updated_at timestamptz not null,
      version integer not null default 1
    );
    """,
    "create index if not exists crm_records_object_idx on crm_records (object_id, created_at);",
    """
    create table if not exists crm_record_unique (
      object_id text not null,
      field_api_name text not null,
      value_key text not null,
      record_id text not null references crm_records (id) on delete cascade,
      primary key (object_id, field_api_name, value_key)
    );
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _actor_id(actor: Any) -> str | None:
    if isinstance(actor, dict):
        return actor.get("id")
    return actor


def ensure_tables() -> None:
    global _TABLES_READY
    if _TABLES_READY:
        return
    with get_conn() as conn:
        for statement in _DDL:
            execute(conn, statement, query_name="crm.ensure_tables")
    _TABLES_READY = True
    logger.info("auto_migration_applied tables=%s", ["crm_schema_versions", "crm_records", "crm_record_unique"])


def _row_to_record(row: dict) -> Record:
    return Record(
        id=str(row["id"]),
        object_id=str(row["object_id"]),
        data=_ensure_json(row.get("data")) or {},
        page_layout_id=row.get("page_layout_id"),
        record_type_id=row.get("record_type_id"),
        created_by_id=row.get("created_by_id"),
        modified_by_id=row.get("modified_by_id"),
        created_at=_to_iso(row.get("created_at")),
        updated_at=_to_iso(row.get("updated_at")),
        version=int(row.get("version") or 1),
    )


_RECORD_COLUMNS = "id, object_id, data, page_layout_id, record_type_id, created_by_id, modified_by_id, created_at, updated_at, version"


def _insert_unique(conn, obj: CustomObject, record_id: str, data: dict) -> None:
    for api_name, key in unique_entries(obj, data):
        execute(
            conn,
            "insert into crm_record_unique (object_id, field_api_name, value_key, record_id) values (%s,%s,%s,%s)",
            [obj.id, api_name, key, record_id],
            query_name="crm_record_unique.insert",
        )


class DbRecordStore(SchemaBackedStore):
    def create_record(
        self,
        obj: CustomObject,
        data: dict,
        actor: Any = None,
        page_layout_id: str | None = None,
        record_type_id: str | None = None,
    ) -> Record:
        check_record_refs(obj, page_layout_id, record_type_id)
        record_id = str(uuid.uuid4())
        now = _now()
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    f"""
                    insert into crm_records (id, object_id, data, page_layout_id, record_type_id,
                                             created_by_id, modified_by_id, created_at, updated_at, version)
                    values (%s,%s,%s,%s,%s,%s,%s,%s,%s,1)
                    returning {_RECORD_COLUMNS}
                    """,
                    [
                        record_id,
                        obj.id,
                        json.dumps(data),
                        page_layout_id,
                        record_type_id,
                        _actor_id(actor),
                        _actor_id(actor),
                        now,
                        now,
                    ],
                    query_name="crm_records.insert",
                )
                _insert_unique(conn, obj, record_id, data)
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("RECORD_UNIQUE_VIOLATION", "A unique field value is already in use", {"constraint": exc.diag.constraint_name}) from exc
        return _row_to_record(row)

    def update_record_merge(
        self,
        obj: CustomObject,
        record_id: str,
        changes: dict,
        actor: Any = None,
        expected_version: int | None = None,
    ) -> Record:
        try:
            with get_conn() as conn:
                current = fetch_one(
                    conn,
                    f"select {_RECORD_COLUMNS} from crm_records where object_id=%s and id=%s for update",
                    [obj.id, record_id],
                    query_name="crm_records.get_for_update",
                )
                if current is None:
                    raise NotFoundError("record", record_id)
                version = int(current.get("version") or 1)
                if expected_version is not None and version != expected_version:
                    raise ConflictError(
                        "RECORD_VERSION_CONFLICT",
                        "Record was modified by another request",
                        {"expected": expected_version, "actual": version},
                    )
                merged = merge_record_data(_ensure_json(current.get("data")) or {}, copy.deepcopy(changes))
                row = fetch_one(
                    conn,
                    f"""
                    update crm_records
                    set data=%s, modified_by_id=%s, updated_at=%s, version=version + 1
                    where object_id=%s and id=%s
                    returning {_RECORD_COLUMNS}
                    """,
                    [json.dumps(merged), _actor_id(actor), _now(), obj.id, record_id],
                    query_name="crm_records.update",
                )
                execute(
                    conn,
                    "delete from crm_record_unique where record_id=%s",
                    [record_id],
                    query_name="crm_record_unique.clear",
                )
                _insert_unique(conn, obj, record_id, merged)
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("RECORD_UNIQUE_VIOLATION", "A unique field value is already in use", {"constraint": exc.diag.constraint_name}) from exc
        return _row_to_record(row)

    def delete_record(self, obj: CustomObject, record_id: str) -> None:
        with get_conn() as conn:
            deleted = execute(
                conn,
                "delete from crm_records where object_id=%s and id=%s",
                [obj.id, record_id],
                query_name="crm_records.delete",
            )
        if not deleted:
            raise NotFoundError("record", record_id)

    def get_record(self, obj: CustomObject, record_id: str) -> Record:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select {_RECORD_COLUMNS} from crm_records where object_id=%s and id=%s",
                [obj.id, record_id],
                query_name="crm_records.get",
            )
        if row is None:
            raise NotFoundError("record", record_id)
        return _row_to_record(row)

    def list_records(self, obj: CustomObject, limit: int = 200, offset: int = 0) -> List[Record]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select {_RECORD_COLUMNS}
                from crm_records
                where object_id=%s
                order by created_at asc, id asc
                limit %s offset %s
                """,
                [obj.id, limit, offset],
                query_name="crm_records.list",
            )
        return [_row_to_record(r) for r in rows]


class DbSchemaRepository:
    """Persists each committed schema version; the latest row seeds the schema store."""

    def load_latest(self) -> tuple[int, list[dict]]:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select version, objects from crm_schema_versions order by version desc limit 1",
                query_name="crm_schema_versions.latest",
            )
        if row is None:
            return 0, []
        return int(row["version"]), _ensure_json(row.get("objects")) or []

    def save(self, version: int, objects: list[dict]) -> None:
        with get_conn() as conn:
            execute(
                conn,
                "insert into crm_schema_versions (version, objects, created_at) values (%s,%s,%s)",
                [version, json.dumps(objects), _now()],
                query_name="crm_schema_versions.insert",
            )


def db_record_store(schema: Callable[[], SchemaSnapshot]) -> DbRecordStore:
    ensure_tables()
    return DbRecordStore(schema)
