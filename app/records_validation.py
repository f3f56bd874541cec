"""Record validation and normalization against an object's active fields."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import expression_eval
from app.field_values import FieldValueError, coerce_value, decode_picklist, is_empty, unique_key
from app.schema import COMPUTED_TYPES, PICKLIST_TYPES, TEXT_TYPES, CustomField, CustomObject


logger = logging.getLogger("crm.records")

MODES = ("create", "update")


@dataclass
class ValidationResult:
    ok: bool
    data: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)


def _error(field_name: str | None, reason: str, message: str) -> dict:
    return {"field": field_name, "reason": reason, "message": message}


def _apply_defaults(fields_by_name: dict, data: dict) -> dict:
    updated = dict(data)
    for api_name, item in fields_by_name.items():
        if item.default_value is None or item.type in COMPUTED_TYPES:
            continue
        if not is_empty(updated.get(api_name)):
            continue
        updated[api_name] = item.default_value
    return updated


def _normalize_empty(item: CustomField, value: Any) -> Any:
    if item.type in TEXT_TYPES and isinstance(value, str):
        return value
    if item.type == "MultiPicklist" and isinstance(value, (list, tuple)):
        return coerce_value(item, value)
    return None


def _peer_data(peer: Any) -> Mapping[str, Any]:
    data = getattr(peer, "data", peer)
    return data if isinstance(data, Mapping) else {}


def merge_record_data(existing: Mapping[str, Any] | None, changes: Mapping[str, Any]) -> dict:
    """Shallow merge: keys absent from ``changes`` keep their stored value."""
    merged = dict(existing or {})
    merged.update(changes)
    return merged


def decode_record_data(obj: CustomObject, data: Mapping[str, Any]) -> dict:
    decoded = {}
    for key, value in (data or {}).items():
        item = obj.find_field(key, include_inactive=True)
        if item is not None and item.type in PICKLIST_TYPES:
            decoded[key] = decode_picklist(value)
        else:
            decoded[key] = value
    return decoded


def evaluation_context(obj: CustomObject, data: Mapping[str, Any]) -> dict:
    """Decoded data as rules and conditions see it: a single Picklist is its one value."""
    context = decode_record_data(obj, data)
    for key, value in context.items():
        item = obj.find_field(key, include_inactive=True)
        if item is not None and item.type == "Picklist" and isinstance(value, list):
            context[key] = value[0] if value else None
    return context


def validate_and_normalize(
    obj: CustomObject,
    payload: Any,
    mode: str = "create",
    existing: Mapping[str, Any] | None = None,
    peers: Iterable[Any] | None = None,
) -> ValidationResult:
    """Validate ``payload`` for ``mode`` and return the normalized changes.

    ``existing`` is the stored data of the record being updated. ``peers`` are
    the other records of the object, used for the unique pre-check; the
    store remains the final authority on uniqueness.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown validation mode: {mode}")
    if not isinstance(payload, Mapping):
        return ValidationResult(False, {}, [_error(None, "type", "Record data must be an object")])

    errors: list[dict] = []
    failed: set[str] = set()
    fields_by_name = {f.api_name: f for f in obj.active_fields()}

    incoming: dict = {}
    for key, value in payload.items():
        if key == "id":
            continue
        item = obj.find_field(key)
        if item is None:
            errors.append(_error(key, "unknown_field", f"Unknown field: {key}"))
            continue
        incoming[item.api_name] = value

    if mode == "create":
        incoming = _apply_defaults(fields_by_name, incoming)

    stored = dict(existing or {})
    normalized: dict = {}
    for api_name, value in incoming.items():
        item = fields_by_name[api_name]
        if item.type in COMPUTED_TYPES:
            continue
        try:
            if is_empty(value):
                coerced = _normalize_empty(item, value)
            else:
                coerced = coerce_value(item, value)
        except FieldValueError as exc:
            if item.read_only and mode == "update":
                errors.append(_error(api_name, "read_only", f"{item.label} is read-only"))
            else:
                errors.append(_error(api_name, exc.reason, exc.message))
            failed.add(api_name)
            continue
        if item.read_only and mode == "update":
            if coerced != stored.get(api_name):
                errors.append(_error(api_name, "read_only", f"{item.label} is read-only"))
                failed.add(api_name)
            continue
        normalized[api_name] = coerced

    if mode == "create":
        required_names = [name for name, item in fields_by_name.items() if item.required]
        candidate = normalized
    else:
        required_names = [name for name in incoming if fields_by_name[name].required]
        candidate = merge_record_data(stored, normalized)
    for api_name in required_names:
        item = fields_by_name[api_name]
        if api_name in failed or item.type in COMPUTED_TYPES:
            continue
        value = candidate.get(api_name)
        if item.type in PICKLIST_TYPES:
            value = decode_picklist(value)
        if is_empty(value):
            errors.append(_error(api_name, "required", f"{item.label} is required"))

    peer_list = list(peers or [])
    if peer_list:
        for api_name, value in normalized.items():
            item = fields_by_name[api_name]
            if not item.unique or is_empty(value):
                continue
            key = unique_key(item, value)
            for peer in peer_list:
                other = _peer_data(peer).get(api_name)
                if other is not None and unique_key(item, other) == key:
                    errors.append(_error(api_name, "unique", f"{item.label} must be unique"))
                    break

    merged = merge_record_data(stored, normalized) if mode == "update" else normalized
    context = evaluation_context(obj, merged)
    for rule in obj.validation_rules:
        if not rule.is_active or not rule.condition:
            continue
        if expression_eval.evaluate_validation_rule(rule.condition, context):
            errors.append(_error(rule.error_field, "validation_rule", rule.error_message))

    if errors:
        logger.info("record_validation_failed object=%s mode=%s errors=%s", obj.api_name, mode, len(errors))
        return ValidationResult(False, normalized, errors)
    return ValidationResult(True, normalized, [])


def validation_issues(errors: Iterable[dict]) -> list[dict]:
    """Validator errors in the response envelope's issue shape."""
    return [
        {
            "code": "VALIDATION_ERROR",
            "message": err.get("message"),
            "path": err.get("field"),
            "detail": {"field": err.get("field"), "reason": err.get("reason")},
        }
        for err in errors
    ]
