"""In-memory administrative schema store with versioned snapshots.

Every mutation works on a deep copy of the stored object definitions,
rebuilds a :class:`SchemaSnapshot` from it and only then swaps it in, so a
failed edit never leaves a half-applied schema behind.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from app.schema import LayoutFieldError, LOOKUP_TYPES, NotFoundError, SchemaSnapshot, canonical_field_api_name
from app.schema_validate import (
    validate_field_definition,
    validate_layout_definition,
    validate_object_definition,
    validate_rule_definition,
)
from crmkit import canonical_dumps, canonical_string_list


logger = logging.getLogger("crm.schema")

Issue = Dict[str, Any]

RELATIONSHIP_EXCLUSIONS = {"Home"}
DEFAULT_LAYOUT_FIELD_COUNT = 10
_OBJECT_EDITABLE = ("label", "pluralLabel", "description")
_FIELD_IMMUTABLE = ("apiName", "type", "objectId", "id")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _new_id() -> str:
    return str(uuid.uuid4())


def _actor_id(actor: Any) -> str | None:
    if isinstance(actor, dict):
        return actor.get("id")
    return actor


@dataclass
class SchemaStoreError(Exception):
    code: str
    message: str
    errors: List[Issue] = field(default_factory=list)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _stamp(entity: dict, actor: Any, created: bool = False) -> dict:
    now = _now()
    if created:
        entity["createdAt"] = now
        entity["createdById"] = _actor_id(actor)
    entity["updatedAt"] = now
    entity["modifiedById"] = _actor_id(actor)
    return entity


def _store_picklist(field_def: dict) -> None:
    values = field_def.get("picklistValues")
    if isinstance(values, list):
        field_def["picklistValues"] = canonical_dumps(values)


def create_default_layout(obj: dict, actor: Any = None) -> dict:
    """Single-tab, single-section, two-column layout holding the first active fields."""
    active = [f for f in obj.get("fields", []) if f.get("isActive", True)]
    refs = [
        {"fieldId": f["id"], "apiName": f["apiName"], "column": idx % 2, "order": idx}
        for idx, f in enumerate(active[:DEFAULT_LAYOUT_FIELD_COUNT])
    ]
    layout = {
        "id": _new_id(),
        "objectId": obj.get("id"),
        "name": f"{obj.get('apiName')} Layout",
        "layoutType": "edit",
        "isDefault": True,
        "isActive": True,
        "tabs": [
            {
                "id": _new_id(),
                "label": "Details",
                "order": 0,
                "sections": [{"id": _new_id(), "label": "Information", "columns": 2, "order": 0, "fields": refs}],
            }
        ],
    }
    return _stamp(layout, actor, created=True)


def create_default_record_type(obj: dict, page_layout_id: str | None) -> dict:
    return {
        "id": _new_id(),
        "name": "Master",
        "description": f"Default record type for {obj.get('apiName')}",
        "isDefault": True,
        "pageLayoutId": page_layout_id,
        "isActive": True,
    }


def _lookup_target(field_def: dict) -> str | None:
    target = field_def.get("lookupObject")
    rel = field_def.get("relationship")
    if not target and isinstance(rel, dict):
        target = rel.get("parentObject") or rel.get("targetObject")
    return target


def has_relationship_field(fields: List[dict], target_api: str) -> bool:
    for f in fields:
        if f.get("type") in LOOKUP_TYPES and _lookup_target(f) == target_api:
            return True
        if f.get("apiName") == f"{target_api}Id":
            return True
    return False


def create_relationship_field(target: dict, object_id: str) -> dict:
    return {
        "id": _new_id(),
        "objectId": object_id,
        "apiName": f"{target['apiName']}Id",
        "label": target.get("label") or target["apiName"],
        "type": "Lookup",
        "lookupObject": target["apiName"],
        "relationshipName": target.get("pluralLabel") or target.get("label") or target["apiName"],
        "custom": False,
        "helpText": f"Lookup to {target.get('label') or target['apiName']}",
        "isActive": True,
    }


def add_lookup_fields_to_layouts(obj: dict) -> int:
    """Append Lookup fields missing from each layout's first section; returns count added."""
    lookups = [f for f in obj.get("fields", []) if f.get("type") in LOOKUP_TYPES and f.get("isActive", True)]
    added = 0
    for layout in obj.get("pageLayouts", []):
        tabs = layout.get("tabs") or []
        if not tabs or not tabs[0].get("sections"):
            continue
        section = tabs[0]["sections"][0]
        refs = section.setdefault("fields", [])
        present = {r.get("fieldId") for r in refs} | {r.get("apiName") for r in refs}
        missing = [f for f in lookups if f["id"] not in present and f["apiName"] not in present]
        columns = section.get("columns") or 1
        start = max((r["order"] if isinstance(r.get("order"), int) else pos for pos, r in enumerate(refs)), default=-1) + 1
        for idx, f in enumerate(missing):
            order = start + idx
            refs.append({"fieldId": f["id"], "apiName": f["apiName"], "column": order % columns, "order": order})
        added += len(missing)
    return added


def _resolve_layout_refs(obj: dict, layout: dict) -> None:
    """Replace api-name references with field ids; unknown or inactive fields fail fast."""
    by_api = {f["apiName"]: f for f in obj.get("fields", []) if f.get("isActive", True)}
    by_id = {f["id"]: f for f in by_api.values()}
    for tab in layout.get("tabs", []):
        for section in tab.get("sections", []):
            resolved = []
            for idx, ref in enumerate(section.get("fields", [])):
                if isinstance(ref, str):
                    ref = {"apiName": ref}
                ref = dict(ref)
                if ref.get("fieldId") is not None:
                    target = by_id.get(ref["fieldId"])
                    if target is None:
                        raise LayoutFieldError(layout.get("name", "Layout"), str(ref["fieldId"]))
                else:
                    name = ref.pop("fieldApiName", None) or ref.get("apiName")
                    target = by_api.get(name) if isinstance(name, str) else None
                    if target is None and isinstance(name, str):
                        target = by_api.get(canonical_field_api_name(name))
                    if target is None:
                        raise LayoutFieldError(layout.get("name", "Layout"), f"Field {name} not found")
                ref["fieldId"] = target["id"]
                ref["apiName"] = target["apiName"]
                ref.setdefault("column", 0)
                ref.setdefault("order", idx)
                resolved.append(ref)
            section["fields"] = resolved


def _assign_ids(layout: dict) -> None:
    for tab in layout.get("tabs", []):
        tab.setdefault("id", _new_id())
        for section in tab.get("sections", []):
            section.setdefault("id", _new_id())


class SchemaStore:
    def __init__(
        self,
        objects: List[dict] | None = None,
        version: int = 0,
        on_commit: Callable[[int, List[dict]], None] | None = None,
    ) -> None:
        self._objects: Dict[str, dict] = {}
        for obj in objects or []:
            self._objects[obj["apiName"]] = copy.deepcopy(obj)
        self._version = version
        self._history: List[dict] = []
        self._lock = threading.Lock()
        self._on_commit = on_commit
        self._snapshot = SchemaSnapshot.from_dict({"version": version, "objects": list(self._objects.values())})

    def snapshot(self) -> SchemaSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    def list_history(self) -> list[dict]:
        return list(self._history)

    def get_object(self, api_name: str, include_inactive: bool = False) -> dict:
        obj = self._objects.get(api_name)
        if obj is None or (not include_inactive and not obj.get("isActive", True)):
            raise NotFoundError("object", api_name)
        return copy.deepcopy(obj)

    def list_objects(self, include_inactive: bool = False) -> list[dict]:
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if include_inactive or obj.get("isActive", True)
        ]

    def _commit(self, objects: Dict[str, dict], action: str, target: str, actor: Any) -> SchemaSnapshot:
        version = self._version + 1
        snapshot = SchemaSnapshot.from_dict({"version": version, "objects": list(objects.values())})
        if self._on_commit is not None:
            self._on_commit(version, [copy.deepcopy(o) for o in objects.values()])
        self._objects = objects
        self._version = version
        self._snapshot = snapshot
        self._history.insert(
            0,
            {
                "audit_id": _new_id(),
                "action": action,
                "target": target,
                "version": version,
                "schema_hash": snapshot.hash,
                "actor": _actor_id(actor),
                "at": _now(),
            },
        )
        logger.info("schema_commit action=%s target=%s version=%s", action, target, version)
        return snapshot

    def _editable_object(self, objects: Dict[str, dict], api_name: str) -> dict:
        obj = objects.get(api_name)
        if obj is None or not obj.get("isActive", True):
            raise NotFoundError("object", api_name)
        return obj

    def create_object(self, definition: dict, actor: Any = None, relate: bool = False) -> dict:
        """Create an object with a default layout and record type when none are given.

        With ``relate`` the new object and every other active object get a
        Lookup field to each other.
        """
        if not isinstance(definition, dict):
            raise SchemaStoreError("SCHEMA_OBJECT_INVALID", "object must be an object")
        with self._lock:
            objects = copy.deepcopy(self._objects)
            names = list(objects.keys())
            errors, _ = validate_object_definition(definition, names)
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Object definition is invalid", errors)
            api_name = definition["apiName"]
            if api_name in objects:
                raise SchemaStoreError("SCHEMA_OBJECT_EXISTS", f"Object already exists: {api_name}")
            obj = copy.deepcopy(definition)
            obj["id"] = obj.get("id") or _new_id()
            obj["isActive"] = True
            for f in obj.setdefault("fields", []):
                f["id"] = f.get("id") or _new_id()
                f["objectId"] = obj["id"]
                f.setdefault("isActive", True)
                _store_picklist(f)
                _stamp(f, actor, created=True)
            if relate and api_name not in RELATIONSHIP_EXCLUSIONS:
                for other in objects.values():
                    if other["apiName"] in RELATIONSHIP_EXCLUSIONS or not other.get("isActive", True):
                        continue
                    if not has_relationship_field(obj["fields"], other["apiName"]):
                        obj["fields"].append(_stamp(create_relationship_field(other, obj["id"]), actor, created=True))
                    if not has_relationship_field(other.get("fields", []), api_name):
                        other.setdefault("fields", []).append(
                            _stamp(create_relationship_field(obj, other["id"]), actor, created=True)
                        )
                        add_lookup_fields_to_layouts(other)
                        _stamp(other, actor)
            layouts = obj.setdefault("pageLayouts", [])
            for layout in layouts:
                layout["id"] = layout.get("id") or _new_id()
                layout["objectId"] = obj["id"]
                layout.setdefault("isActive", True)
                _assign_ids(layout)
                _resolve_layout_refs(obj, layout)
                _stamp(layout, actor, created=True)
            if not layouts:
                layouts.append(create_default_layout(obj, actor))
            add_lookup_fields_to_layouts(obj)
            record_types = obj.setdefault("recordTypes", [])
            for record_type in record_types:
                record_type["id"] = record_type.get("id") or _new_id()
            if not record_types:
                record_types.append(create_default_record_type(obj, layouts[0]["id"]))
            for rule in obj.setdefault("validationRules", []):
                rule["id"] = rule.get("id") or _new_id()
            _stamp(obj, actor, created=True)
            objects[api_name] = obj
            self._commit(objects, "create_object", api_name, actor)
            return copy.deepcopy(obj)

    def update_object(self, api_name: str, changes: dict, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            errors = []
            for key, value in (changes or {}).items():
                if key not in _OBJECT_EDITABLE:
                    errors.append({"code": "SCHEMA_OBJECT_IMMUTABLE", "message": f"{key} cannot be changed", "path": key, "detail": None})
                elif key != "description" and (not isinstance(value, str) or not value.strip()):
                    errors.append({"code": "SCHEMA_OBJECT_LABEL_REQUIRED", "message": f"{key} is required", "path": key, "detail": None})
                else:
                    obj[key] = value
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Object update is invalid", errors)
            _stamp(obj, actor)
            self._commit(objects, "update_object", api_name, actor)
            return copy.deepcopy(obj)

    def delete_object(self, api_name: str, actor: Any = None) -> dict:
        """Soft delete; the definition stays for records that still point at it."""
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            obj["isActive"] = False
            _stamp(obj, actor)
            self._commit(objects, "delete_object", api_name, actor)
            return copy.deepcopy(obj)

    def add_field(self, api_name: str, field_def: dict, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            errors, _ = validate_field_definition(field_def, "field", list(objects.keys()))
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Field definition is invalid", errors)
            fields = obj.setdefault("fields", [])
            if any(f.get("apiName") == field_def["apiName"] for f in fields):
                raise SchemaStoreError("SCHEMA_FIELD_EXISTS", f"Field already exists: {api_name}.{field_def['apiName']}")
            new_field = copy.deepcopy(field_def)
            new_field["id"] = new_field.get("id") or _new_id()
            new_field["objectId"] = obj["id"]
            new_field.setdefault("isActive", True)
            _store_picklist(new_field)
            _stamp(new_field, actor, created=True)
            fields.append(new_field)
            if new_field["type"] in LOOKUP_TYPES:
                add_lookup_fields_to_layouts(obj)
            _stamp(obj, actor)
            self._commit(objects, "add_field", f"{api_name}.{new_field['apiName']}", actor)
            return copy.deepcopy(new_field)

    def update_field(self, api_name: str, field_api_name: str, changes: dict, actor: Any = None) -> dict:
        """Update field attributes; api name and type are fixed once created."""
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            target = self._find_field(obj, field_api_name)
            for key in _FIELD_IMMUTABLE:
                if key in (changes or {}) and changes[key] != target.get(key):
                    raise SchemaStoreError("SCHEMA_FIELD_IMMUTABLE", f"{key} cannot be changed")
            merged = {**target, **(changes or {})}
            if isinstance(merged.get("picklistValues"), str):
                merged["picklistValues"] = canonical_string_list(merged["picklistValues"]) or []
            check = {k: v for k, v in merged.items() if k not in ("id", "objectId")}
            errors, _ = validate_field_definition(check, "field", list(objects.keys()))
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Field definition is invalid", errors)
            _store_picklist(merged)
            _stamp(merged, actor)
            target.clear()
            target.update(merged)
            _stamp(obj, actor)
            self._commit(objects, "update_field", f"{api_name}.{field_api_name}", actor)
            return copy.deepcopy(target)

    def delete_field(self, api_name: str, field_api_name: str, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            target = self._find_field(obj, field_api_name)
            target["isActive"] = False
            _stamp(target, actor)
            _stamp(obj, actor)
            self._commit(objects, "delete_field", f"{api_name}.{field_api_name}", actor)
            return copy.deepcopy(target)

    def _find_field(self, obj: dict, field_api_name: str) -> dict:
        canonical = canonical_field_api_name(field_api_name)
        for f in obj.get("fields", []):
            if f.get("isActive", True) and f.get("apiName") in (field_api_name, canonical):
                return f
        raise NotFoundError("field", f"{obj.get('apiName')}.{field_api_name}")

    def add_layout(self, api_name: str, layout_def: dict, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            layout = copy.deepcopy(layout_def or {})
            _resolve_layout_refs(obj, layout)
            active_names = [f["apiName"] for f in obj.get("fields", []) if f.get("isActive", True)]
            errors = validate_layout_definition(layout, active_names)
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Layout definition is invalid", errors)
            layout["id"] = layout.get("id") or _new_id()
            layout["objectId"] = obj["id"]
            layout.setdefault("layoutType", "edit")
            layout.setdefault("isActive", True)
            _assign_ids(layout)
            layouts = obj.setdefault("pageLayouts", [])
            if layout.get("isDefault"):
                for other in layouts:
                    if other.get("layoutType", "edit") == layout["layoutType"]:
                        other["isDefault"] = False
            _stamp(layout, actor, created=True)
            layouts.append(layout)
            _stamp(obj, actor)
            self._commit(objects, "add_layout", f"{api_name}:{layout['id']}", actor)
            return copy.deepcopy(layout)

    def delete_layout(self, api_name: str, layout_id: str, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            for layout in obj.get("pageLayouts", []):
                if layout.get("id") == layout_id and layout.get("isActive", True):
                    layout["isActive"] = False
                    _stamp(layout, actor)
                    _stamp(obj, actor)
                    self._commit(objects, "delete_layout", f"{api_name}:{layout_id}", actor)
                    return copy.deepcopy(layout)
            raise NotFoundError("layout", layout_id)

    def add_record_type(self, api_name: str, record_type: dict, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            if not isinstance(record_type, dict) or not record_type.get("name"):
                raise SchemaStoreError("SCHEMA_RECORD_TYPE_INVALID", "record type requires a name")
            layout_id = record_type.get("pageLayoutId")
            if layout_id is not None and layout_id not in {l.get("id") for l in obj.get("pageLayouts", [])}:
                raise SchemaStoreError("SCHEMA_RECORD_TYPE_LAYOUT_UNKNOWN", f"pageLayoutId does not belong to {api_name}: {layout_id}")
            item = copy.deepcopy(record_type)
            item["id"] = item.get("id") or _new_id()
            item.setdefault("isActive", True)
            record_types = obj.setdefault("recordTypes", [])
            if item.get("isDefault"):
                for other in record_types:
                    other["isDefault"] = False
            record_types.append(item)
            _stamp(obj, actor)
            self._commit(objects, "add_record_type", f"{api_name}:{item['id']}", actor)
            return copy.deepcopy(item)

    def add_validation_rule(self, api_name: str, rule: dict, actor: Any = None) -> dict:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            names = [f["apiName"] for f in obj.get("fields", []) if f.get("isActive", True)]
            errors = validate_rule_definition(rule, names)
            if errors:
                raise SchemaStoreError("SCHEMA_INVALID", "Validation rule is invalid", errors)
            item = copy.deepcopy(rule)
            item["id"] = item.get("id") or _new_id()
            item.setdefault("isActive", True)
            obj.setdefault("validationRules", []).append(item)
            _stamp(obj, actor)
            self._commit(objects, "add_validation_rule", f"{api_name}:{item['id']}", actor)
            return copy.deepcopy(item)

    def add_lookup_fields_to_layouts(self, api_name: str, actor: Any = None) -> int:
        with self._lock:
            objects = copy.deepcopy(self._objects)
            obj = self._editable_object(objects, api_name)
            added = add_lookup_fields_to_layouts(obj)
            if added:
                _stamp(obj, actor)
                self._commit(objects, "add_lookup_fields", api_name, actor)
            return added
