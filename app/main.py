"""FastAPI app for the CRM object/record core."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging

from app.auth import JWTAuthMiddleware
from app.records_validation import decode_record_data, validate_and_normalize, validation_issues
from app.render import LookupResolver, render_detail, render_form, validate_form
from app.layouts import resolve_layout
from app.schema import CustomObject, LayoutFieldError, NotFoundError, Record
from app.stores import ConflictError, MemoryRecordStore
from schema_store import SchemaStore, SchemaStoreError


app = FastAPI(title="CRM Core")
logger = logging.getLogger("crm")
logging.basicConfig(level=logging.INFO)
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("CRM_CORS_ORIGINS", "").split(",")
    if origin.strip()
}

USE_DB = os.getenv("USE_DB", "").strip() == "1"
JWT_SECRET = os.getenv("CRM_JWT_SECRET", "").strip() or None
JWT_AUDIENCE = os.getenv("CRM_JWT_AUDIENCE", "").strip() or None
PEER_SCAN_LIMIT = int(os.getenv("CRM_UNIQUE_SCAN_LIMIT", "10000"))
RECORD_META_KEYS = ("pageLayoutId", "recordTypeId")

if USE_DB:
    from app.db import init_pool
    from app.stores_db import DbSchemaRepository, db_record_store, ensure_tables

    init_pool()
    ensure_tables()
    _schema_repo = DbSchemaRepository()
    _version, _objects = _schema_repo.load_latest()
    schema_store = SchemaStore(_objects, version=_version, on_commit=_schema_repo.save)
    records = db_record_store(schema_store.snapshot)
else:
    schema_store = SchemaStore()
    records = MemoryRecordStore(schema_store.snapshot)

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=_LOCAL_CORS_REGEX.pattern,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(JWTAuthMiddleware, secret=JWT_SECRET, audience=JWT_AUDIENCE)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(errors: list, warnings: list | None = None, status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": warnings or [], "data": None}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(
        f"{exc.kind.upper()}_NOT_FOUND",
        str(exc),
        exc.kind,
        detail={"kind": exc.kind, "identifier": exc.identifier},
        status=404,
    )


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    logger.info("record_conflict code=%s path=%s", exc.code, request.url.path)
    return _error_response(exc.code, exc.message, detail=exc.detail, status=409)


@app.exception_handler(SchemaStoreError)
async def schema_error_handler(request: Request, exc: SchemaStoreError):
    status = 409 if exc.code.endswith("_EXISTS") else 400
    if exc.errors:
        return _validation_response(exc.errors, status=status)
    return _error_response(exc.code, exc.message, status=status)


@app.exception_handler(LayoutFieldError)
async def layout_field_handler(request: Request, exc: LayoutFieldError):
    return _error_response("LAYOUT_FIELD_INVALID", str(exc), "layout", detail={"layout": exc.layout, "reference": exc.reference})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _actor(request: Request) -> dict | None:
    return getattr(request.state, "actor", None)


def _object(api_name: str) -> CustomObject:
    snapshot = schema_store.snapshot()
    found = snapshot.find_object(api_name) or snapshot.find_object_by_slug(api_name)
    if found is None:
        raise NotFoundError("object", api_name)
    return found


def _record_data(body: dict):
    if "data" in body:
        return body.get("data")
    return {k: v for k, v in body.items() if k not in RECORD_META_KEYS}


def _record_payload(obj: CustomObject, record: Record) -> dict:
    payload = record.to_dict()
    payload["data"] = decode_record_data(obj, record.data)
    return payload


def _lookup_resolver() -> LookupResolver:
    snapshot = schema_store.snapshot()

    def _fetch(object_api_name: str, record_id: str):
        target = snapshot.find_object(object_api_name)
        if target is None:
            return None
        return decode_record_data(target, records.get_record(target, record_id).data)

    return LookupResolver(_fetch)


def _peers(obj: CustomObject, exclude_id: str | None = None) -> list[Record]:
    if not any(item.unique for item in obj.active_fields()):
        return []
    return [r for r in records.list_records(obj, limit=PEER_SCAN_LIMIT) if r.id != exclude_id]


@app.get("/health")
async def health() -> dict:
    if USE_DB:
        from app.db import get_db_stats

        return {"ok": True, "db": get_db_stats()}
    return {"ok": True}


@app.get("/schema")
async def get_schema() -> JSONResponse:
    snapshot = schema_store.snapshot()
    return _ok_response({"version": snapshot.version, "schema_hash": snapshot.hash, "history": schema_store.list_history()})


@app.get("/objects")
async def list_objects(includeInactive: bool = False) -> JSONResponse:
    snapshot = schema_store.snapshot()
    objects = snapshot.objects if includeInactive else snapshot.active_objects()
    return _ok_response({"objects": [o.to_dict() for o in objects], "version": snapshot.version})


@app.post("/objects")
async def create_object(request: Request, relate: bool = False) -> JSONResponse:
    body = await _safe_json(request)
    created = schema_store.create_object(body, actor=_actor(request), relate=relate)
    obj = schema_store.snapshot().get_object(created["apiName"])
    return _ok_response({"object": obj.to_dict()}, status=201)


@app.get("/objects/{api_name}")
async def get_object(api_name: str, includeInactive: bool = False) -> JSONResponse:
    obj = schema_store.snapshot().get_object(api_name, include_inactive=includeInactive)
    return _ok_response({"object": obj.to_dict()})


@app.patch("/objects/{api_name}")
async def update_object(request: Request, api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    schema_store.update_object(api_name, body, actor=_actor(request))
    return _ok_response({"object": _object(api_name).to_dict()})


@app.delete("/objects/{api_name}")
async def delete_object(request: Request, api_name: str) -> JSONResponse:
    schema_store.delete_object(api_name, actor=_actor(request))
    return _ok_response({"apiName": api_name, "isActive": False})


@app.post("/objects/{api_name}/fields")
async def add_field(request: Request, api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    created = schema_store.add_field(api_name, body, actor=_actor(request))
    item = _object(api_name).get_field(created["apiName"])
    return _ok_response({"field": item.to_dict()}, status=201)


@app.patch("/objects/{api_name}/fields/{field_api_name}")
async def update_field(request: Request, api_name: str, field_api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    updated = schema_store.update_field(api_name, field_api_name, body, actor=_actor(request))
    return _ok_response({"field": _object(api_name).get_field(updated["apiName"]).to_dict()})


@app.delete("/objects/{api_name}/fields/{field_api_name}")
async def delete_field(request: Request, api_name: str, field_api_name: str) -> JSONResponse:
    schema_store.delete_field(api_name, field_api_name, actor=_actor(request))
    return _ok_response({"apiName": field_api_name, "isActive": False})


@app.post("/objects/{api_name}/layouts")
async def add_layout(request: Request, api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    created = schema_store.add_layout(api_name, body, actor=_actor(request))
    layout = _object(api_name).get_layout(created["id"])
    return _ok_response({"layout": layout.to_dict()}, status=201)


@app.delete("/objects/{api_name}/layouts/{layout_id}")
async def delete_layout(request: Request, api_name: str, layout_id: str) -> JSONResponse:
    schema_store.delete_layout(api_name, layout_id, actor=_actor(request))
    return _ok_response({"id": layout_id, "isActive": False})


@app.post("/objects/{api_name}/record-types")
async def add_record_type(request: Request, api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    created = schema_store.add_record_type(api_name, body, actor=_actor(request))
    return _ok_response({"recordType": _object(api_name).find_record_type(created["id"]).to_dict()}, status=201)


@app.post("/objects/{api_name}/validation-rules")
async def add_validation_rule(request: Request, api_name: str) -> JSONResponse:
    body = await _safe_json(request)
    created = schema_store.add_validation_rule(api_name, body, actor=_actor(request))
    return _ok_response({"validationRule": created}, status=201)


@app.get("/objects/{api_name}/records")
async def list_records(api_name: str, limit: int = 200, offset: int = 0) -> JSONResponse:
    obj = _object(api_name)
    items = records.list_records(obj, limit=max(1, min(limit, 1000)), offset=max(0, offset))
    return _ok_response({"records": [_record_payload(obj, r) for r in items]})


@app.post("/objects/{api_name}/records")
async def create_record(request: Request, api_name: str) -> JSONResponse:
    obj = _object(api_name)
    body = await _safe_json(request)
    data = _record_data(body)
    result = validate_and_normalize(obj, data, "create", peers=_peers(obj))
    if not result.ok:
        return _validation_response(validation_issues(result.errors))
    record = records.create_record(
        obj,
        result.data,
        actor=_actor(request),
        page_layout_id=body.get("pageLayoutId"),
        record_type_id=body.get("recordTypeId"),
    )
    logger.info("record_created object=%s record=%s", obj.api_name, record.id)
    return _ok_response({"record": _record_payload(obj, record)}, status=201)


@app.get("/objects/{api_name}/records/{record_id}")
async def get_record(api_name: str, record_id: str) -> JSONResponse:
    obj = _object(api_name)
    return _ok_response({"record": _record_payload(obj, records.get_record(obj, record_id))})


@app.put("/objects/{api_name}/records/{record_id}")
async def update_record(request: Request, api_name: str, record_id: str) -> JSONResponse:
    obj = _object(api_name)
    body = await _safe_json(request)
    data = _record_data(body)
    existing = records.get_record(obj, record_id)
    result = validate_and_normalize(obj, data, "update", existing=existing.data, peers=_peers(obj, exclude_id=record_id))
    if not result.ok:
        return _validation_response(validation_issues(result.errors))
    expected = body.get("version") if "data" in body else None
    record = records.update_record_merge(obj, record_id, result.data, actor=_actor(request), expected_version=expected)
    return _ok_response({"record": _record_payload(obj, record)})


@app.delete("/objects/{api_name}/records/{record_id}")
async def delete_record(api_name: str, record_id: str) -> JSONResponse:
    obj = _object(api_name)
    records.delete_record(obj, record_id)
    logger.info("record_deleted object=%s record=%s", obj.api_name, record_id)
    return _ok_response({"id": record_id, "deleted": True})


@app.get("/objects/{api_name}/records/{record_id}/view")
async def view_record(api_name: str, record_id: str) -> JSONResponse:
    obj = _object(api_name)
    record = records.get_record(obj, record_id)
    view = render_detail(obj, record, lookup=_lookup_resolver())
    return _ok_response({"view": view.to_dict()})


@app.get("/objects/{api_name}/form")
async def record_form(api_name: str, layoutType: str = "create", recordId: str | None = None) -> JSONResponse:
    obj = _object(api_name)
    if recordId:
        record = records.get_record(obj, recordId)
        view = render_form(obj, record.data, layout=resolve_layout(record, obj), lookup=_lookup_resolver())
    else:
        view = render_form(obj, {}, lookup=_lookup_resolver(), layout_type=layoutType)
    return _ok_response({"view": view.to_dict()})


@app.post("/objects/{api_name}/form/validate")
async def validate_record_form(request: Request, api_name: str) -> JSONResponse:
    obj = _object(api_name)
    body = await _safe_json(request)
    layout_id = body.get("layoutId")
    layout = obj.get_layout(layout_id) if layout_id else None
    field_errors = validate_form(obj, layout, body.get("data") or {})
    return _ok_response({"valid": not field_errors, "fieldErrors": field_errors})
