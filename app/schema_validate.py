"""Admin-time validation of object, field and layout definitions."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List

import condition_eval
import expression_eval
from app.schema import (
    FIELD_API_NAME_RE,
    FIELD_TYPES,
    LAYOUT_TYPES,
    LOOKUP_TYPES,
    NUMBER_TYPES,
    OBJECT_API_NAME_RE,
    PICKLIST_TYPES,
    TEXT_TYPES,
    canonical_field_api_name,
)


Issue = Dict[str, Any]

ALLOWED_OBJECT_KEYS = {
    "id",
    "apiName",
    "label",
    "pluralLabel",
    "description",
    "isActive",
    "fields",
    "pageLayouts",
    "recordTypes",
    "validationRules",
    "createdById",
    "modifiedById",
    "createdAt",
    "updatedAt",
}
ALLOWED_FIELD_KEYS = {
    "id",
    "objectId",
    "apiName",
    "label",
    "type",
    "required",
    "unique",
    "readOnly",
    "isActive",
    "minLength",
    "maxLength",
    "scale",
    "precision",
    "min",
    "max",
    "picklistValues",
    "defaultValue",
    "visibleIf",
    "relationship",
    "lookupObject",
    "formulaExpr",
    "helpText",
    "description",
    "custom",
    "relationshipName",
    "controllingField",
    "dependentValues",
    "autoNumber",
    "rollup",
    "createdById",
    "modifiedById",
    "createdAt",
    "updatedAt",
}
AUTO_NUMBER_KEYS = {"displayFormat", "startingNumber"}
ROLLUP_KEYS = {"relatedObject", "relationshipField", "aggregate", "targetField", "filterExpr"}
ROLLUP_AGGREGATES = ("COUNT", "SUM", "MIN", "MAX")
_AUTO_NUMBER_SLOT_RE = re.compile(r"\{0+\}")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _reject_unknown_keys(errors: list[Issue], obj: dict, allowed: set[str], path: str) -> None:
    for key in obj.keys():
        if key not in allowed:
            errors.append(_issue("SCHEMA_UNKNOWN_KEY", f"Unknown key: {key}", f"{path}.{key}"))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _lookup_target(field_def: dict) -> Any:
    target = field_def.get("lookupObject")
    rel = field_def.get("relationship")
    if target is None and isinstance(rel, dict):
        target = rel.get("parentObject") or rel.get("targetObject")
    return target


def _validate_auto_number(config: Any, path: str, errors: list[Issue]) -> None:
    if not isinstance(config, dict):
        errors.append(_issue("SCHEMA_AUTO_NUMBER_INVALID", "autoNumber must be an object", path))
        return
    _reject_unknown_keys(errors, config, AUTO_NUMBER_KEYS, path)
    display_format = config.get("displayFormat")
    if not isinstance(display_format, str) or not _AUTO_NUMBER_SLOT_RE.search(display_format):
        errors.append(_issue("SCHEMA_AUTO_NUMBER_INVALID", "displayFormat must contain a {0} number slot", f"{path}.displayFormat"))
    start = config.get("startingNumber")
    if not _is_int(start) or start < 0:
        errors.append(_issue("SCHEMA_AUTO_NUMBER_INVALID", "startingNumber must be a non-negative integer", f"{path}.startingNumber"))


def _validate_rollup(config: Any, path: str, errors: list[Issue]) -> None:
    if not isinstance(config, dict):
        errors.append(_issue("SCHEMA_ROLLUP_INVALID", "rollup must be an object", path))
        return
    _reject_unknown_keys(errors, config, ROLLUP_KEYS, path)
    for key in ("relatedObject", "relationshipField"):
        if not isinstance(config.get(key), str) or not config.get(key):
            errors.append(_issue("SCHEMA_ROLLUP_INVALID", f"{key} is required", f"{path}.{key}"))
    aggregate = config.get("aggregate")
    if aggregate not in ROLLUP_AGGREGATES:
        errors.append(_issue("SCHEMA_ROLLUP_INVALID", f"aggregate must be one of {', '.join(ROLLUP_AGGREGATES)}", f"{path}.aggregate"))
    elif aggregate != "COUNT" and not isinstance(config.get("targetField"), str):
        errors.append(_issue("SCHEMA_ROLLUP_INVALID", f"targetField is required for {aggregate}", f"{path}.targetField"))
    filter_expr = config.get("filterExpr")
    if filter_expr is not None:
        result = expression_eval.validate(filter_expr) if isinstance(filter_expr, str) else {"isValid": False}
        if not result["isValid"]:
            errors.append(_issue("SCHEMA_ROLLUP_INVALID", result.get("error") or "filterExpr must be an expression", f"{path}.filterExpr"))


def _validate_field_extras(field_def: dict, ftype: str, path: str, errors: list[Issue], warnings: list[Issue]) -> None:
    if "custom" in field_def and not isinstance(field_def["custom"], bool):
        errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "custom must be a boolean", f"{path}.custom"))

    relationship_name = field_def.get("relationshipName")
    if relationship_name is not None:
        if not isinstance(relationship_name, str) or not relationship_name.strip():
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "relationshipName must be a non-empty string", f"{path}.relationshipName"))
        elif ftype not in LOOKUP_TYPES:
            warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "relationshipName only applies to lookup fields", f"{path}.relationshipName"))

    config = field_def.get("autoNumber")
    if config is not None:
        _validate_auto_number(config, f"{path}.autoNumber", errors)
        if ftype != "AutoNumber":
            warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "autoNumber only applies to AutoNumber fields", f"{path}.autoNumber"))

    config = field_def.get("rollup")
    if config is not None:
        _validate_rollup(config, f"{path}.rollup", errors)
        if ftype != "RollupSummary":
            warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "rollup only applies to RollupSummary fields", f"{path}.rollup"))

    controlling = field_def.get("controllingField")
    dependent = field_def.get("dependentValues")
    if controlling is not None and (not isinstance(controlling, str) or not FIELD_API_NAME_RE.match(controlling)):
        errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "controllingField must be a field apiName", f"{path}.controllingField"))
    if dependent is not None:
        if controlling is None:
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "dependentValues requires controllingField", f"{path}.dependentValues"))
        if not isinstance(dependent, dict) or not all(
            isinstance(v, list) and all(isinstance(i, str) for i in v) for v in dependent.values()
        ):
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "dependentValues must map values to lists of strings", f"{path}.dependentValues"))
    if (controlling is not None or dependent is not None) and ftype not in PICKLIST_TYPES:
        warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "dependent values only apply to picklist fields", path))


def validate_field_definition(
    field_def: Any,
    path: str = "field",
    object_api_names: Iterable[str] | None = None,
) -> tuple[list[Issue], list[Issue]]:
    errors: list[Issue] = []
    warnings: list[Issue] = []
    if not isinstance(field_def, dict):
        return [_issue("SCHEMA_FIELD_INVALID", "field must be an object", path)], warnings
    _reject_unknown_keys(errors, field_def, ALLOWED_FIELD_KEYS, path)

    api_name = field_def.get("apiName")
    if not isinstance(api_name, str) or not FIELD_API_NAME_RE.match(api_name):
        errors.append(_issue("SCHEMA_FIELD_API_NAME_INVALID", "apiName must match ^[a-zA-Z][a-zA-Z0-9_]*$", f"{path}.apiName"))
    elif api_name in expression_eval.RESERVED_WORDS:
        errors.append(_issue("SCHEMA_FIELD_API_NAME_RESERVED", f"apiName is a reserved word: {api_name}", f"{path}.apiName"))
    label = field_def.get("label")
    if not isinstance(label, str) or not label.strip():
        errors.append(_issue("SCHEMA_FIELD_LABEL_REQUIRED", "label is required", f"{path}.label"))
    ftype = field_def.get("type")
    if ftype not in FIELD_TYPES:
        errors.append(_issue("SCHEMA_FIELD_TYPE_INVALID", f"Unknown field type: {ftype}", f"{path}.type", {"allowed": list(FIELD_TYPES)}))
        return errors, warnings

    for key in ("minLength", "maxLength", "scale", "precision"):
        value = field_def.get(key)
        if value is not None and (not _is_int(value) or value < 0):
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", f"{key} must be a non-negative integer", f"{path}.{key}"))
    for key in ("min", "max"):
        value = field_def.get(key)
        if value is not None and not _is_number(value):
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", f"{key} must be a number", f"{path}.{key}"))
    if ftype not in TEXT_TYPES and (field_def.get("minLength") is not None or field_def.get("maxLength") is not None):
        warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "length limits only apply to text fields", path))
    if ftype not in NUMBER_TYPES and any(field_def.get(k) is not None for k in ("min", "max", "scale", "precision")):
        warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "numeric limits only apply to number fields", path))

    min_length, max_length = field_def.get("minLength"), field_def.get("maxLength")
    if _is_int(min_length) and _is_int(max_length) and min_length > max_length:
        errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "minLength must not exceed maxLength", f"{path}.minLength"))
    low, high = field_def.get("min"), field_def.get("max")
    if _is_number(low) and _is_number(high) and low > high:
        errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "min must not exceed max", f"{path}.min"))
    scale, precision = field_def.get("scale"), field_def.get("precision")
    if _is_int(scale) and _is_int(precision) and scale > precision:
        errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", "scale must not exceed precision", f"{path}.scale"))

    values = field_def.get("picklistValues")
    if ftype in PICKLIST_TYPES:
        if not isinstance(values, list) or not values or not all(isinstance(v, str) and v for v in values):
            errors.append(_issue("SCHEMA_PICKLIST_VALUES_INVALID", "picklistValues must be a non-empty list of strings", f"{path}.picklistValues"))
        elif len(set(values)) != len(values):
            errors.append(_issue("SCHEMA_PICKLIST_VALUES_DUPLICATE", "picklistValues must be unique", f"{path}.picklistValues"))
    elif values is not None:
        warnings.append(_issue("SCHEMA_FIELD_CONSTRAINT_IGNORED", "picklistValues only apply to picklist fields", f"{path}.picklistValues"))

    if ftype in LOOKUP_TYPES:
        target = _lookup_target(field_def)
        if not isinstance(target, str) or not target:
            errors.append(_issue("SCHEMA_LOOKUP_TARGET_MISSING", "lookup target object is required", f"{path}.lookupObject"))
        elif object_api_names is not None and ftype == "Lookup" and target not in set(object_api_names):
            errors.append(_issue("SCHEMA_LOOKUP_TARGET_UNKNOWN", f"lookup target object not found: {target}", f"{path}.lookupObject"))

    if ftype == "Formula":
        expr = field_def.get("formulaExpr")
        if not isinstance(expr, str) or not expr.strip():
            errors.append(_issue("SCHEMA_FORMULA_REQUIRED", "formulaExpr is required for Formula fields", f"{path}.formulaExpr"))
        else:
            result = expression_eval.validate(expr)
            if not result["isValid"]:
                errors.append(_issue("SCHEMA_FORMULA_INVALID", result.get("error") or "invalid formula", f"{path}.formulaExpr"))

    _validate_field_extras(field_def, ftype, path, errors, warnings)
    errors.extend(condition_eval.validate_conditions(field_def.get("visibleIf"), path=f"{path}.visibleIf"))
    return errors, warnings


def validate_layout_definition(layout: Any, field_names: Iterable[str], path: str = "layout") -> list[Issue]:
    """Structural checks; field references are resolved when the layout is built."""
    errors: list[Issue] = []
    if not isinstance(layout, dict):
        return [_issue("SCHEMA_LAYOUT_INVALID", "layout must be an object", path)]
    known = {canonical_field_api_name(n) for n in field_names}
    name = layout.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append(_issue("SCHEMA_LAYOUT_NAME_REQUIRED", "layout name is required", f"{path}.name"))
    layout_type = layout.get("layoutType", "edit")
    if layout_type not in LAYOUT_TYPES:
        errors.append(_issue("SCHEMA_LAYOUT_TYPE_INVALID", f"layoutType must be one of {list(LAYOUT_TYPES)}", f"{path}.layoutType"))
    tabs = layout.get("tabs")
    if not isinstance(tabs, list):
        errors.append(_issue("SCHEMA_LAYOUT_TABS_INVALID", "tabs must be a list", f"{path}.tabs"))
        return errors
    for t_idx, tab in enumerate(tabs):
        tpath = f"{path}.tabs[{t_idx}]"
        if not isinstance(tab, dict):
            errors.append(_issue("SCHEMA_LAYOUT_TAB_INVALID", "tab must be an object", tpath))
            continue
        sections = tab.get("sections", [])
        if not isinstance(sections, list):
            errors.append(_issue("SCHEMA_LAYOUT_SECTIONS_INVALID", "sections must be a list", f"{tpath}.sections"))
            continue
        for s_idx, section in enumerate(sections):
            spath = f"{tpath}.sections[{s_idx}]"
            if not isinstance(section, dict):
                errors.append(_issue("SCHEMA_LAYOUT_SECTION_INVALID", "section must be an object", spath))
                continue
            columns = section.get("columns", 1)
            if columns not in (1, 2, 3) or isinstance(columns, bool):
                errors.append(_issue("SCHEMA_LAYOUT_COLUMNS_INVALID", "columns must be 1, 2 or 3", f"{spath}.columns"))
                columns = 1
            errors.extend(condition_eval.validate_conditions(section.get("visibleIf"), known, path=f"{spath}.visibleIf"))
            seen: set[str] = set()
            for f_idx, ref in enumerate(section.get("fields", []) or []):
                fpath = f"{spath}.fields[{f_idx}]"
                if isinstance(ref, str):
                    ref = {"apiName": ref}
                if not isinstance(ref, dict):
                    errors.append(_issue("SCHEMA_LAYOUT_FIELD_INVALID", "layout field must be an object", fpath))
                    continue
                api_name = ref.get("apiName") or ref.get("fieldApiName")
                if isinstance(api_name, str):
                    canonical = canonical_field_api_name(api_name)
                    if canonical not in known:
                        errors.append(_issue("SCHEMA_LAYOUT_FIELD_UNKNOWN", f"Field {api_name} not found", f"{fpath}.apiName"))
                    elif canonical in seen:
                        errors.append(_issue("SCHEMA_LAYOUT_FIELD_DUPLICATE", f"Field {api_name} appears twice in section", fpath))
                    seen.add(canonical)
                column = ref.get("column", 0)
                if not _is_int(column) or not 0 <= column < columns:
                    errors.append(_issue("SCHEMA_LAYOUT_COLUMN_INVALID", f"column must be in [0, {columns})", f"{fpath}.column"))
                order = ref.get("order", f_idx)
                if not _is_int(order) or order < 0:
                    errors.append(_issue("SCHEMA_LAYOUT_ORDER_INVALID", "order must be a non-negative integer", f"{fpath}.order"))
    return errors


def validate_object_definition(
    obj: Any,
    object_api_names: Iterable[str] | None = None,
) -> tuple[list[Issue], list[Issue]]:
    """Validate a whole object definition, including nested fields and layouts.

    ``object_api_names`` are the other objects in the org, used for lookup
    targets; the object's own name is always allowed.
    """
    errors: list[Issue] = []
    warnings: list[Issue] = []
    if not isinstance(obj, dict):
        return [_issue("SCHEMA_OBJECT_INVALID", "object must be an object", "$")], warnings
    _reject_unknown_keys(errors, obj, ALLOWED_OBJECT_KEYS, "$")

    api_name = obj.get("apiName")
    if not isinstance(api_name, str) or not OBJECT_API_NAME_RE.match(api_name):
        errors.append(_issue("SCHEMA_OBJECT_API_NAME_INVALID", "apiName must match ^[A-Z][A-Za-z0-9_]*$", "apiName"))
    for key in ("label", "pluralLabel"):
        value = obj.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(_issue("SCHEMA_OBJECT_LABEL_REQUIRED", f"{key} is required", key))

    names = None
    if object_api_names is not None:
        names = set(object_api_names)
        if isinstance(api_name, str):
            names.add(api_name)

    fields = obj.get("fields", [])
    if not isinstance(fields, list):
        errors.append(_issue("SCHEMA_FIELDS_INVALID", "fields must be a list", "fields"))
        fields = []
    field_names: list[str] = []
    for idx, field_def in enumerate(fields):
        fpath = f"fields[{idx}]"
        field_errors, field_warnings = validate_field_definition(field_def, fpath, names)
        errors.extend(field_errors)
        warnings.extend(field_warnings)
        if isinstance(field_def, dict) and isinstance(field_def.get("apiName"), str):
            if field_def["apiName"] in field_names:
                errors.append(_issue("SCHEMA_FIELD_API_NAME_DUPLICATE", f"Duplicate field apiName: {field_def['apiName']}", f"{fpath}.apiName"))
            field_names.append(field_def["apiName"])

    known = set(field_names)
    for idx, field_def in enumerate(fields):
        if isinstance(field_def, dict) and field_def.get("visibleIf"):
            for issue in condition_eval.validate_conditions(field_def.get("visibleIf"), known, path=f"fields[{idx}].visibleIf"):
                if issue["code"] == "CONDITION_UNKNOWN_FIELD":
                    errors.append(issue)
        controlling = field_def.get("controllingField") if isinstance(field_def, dict) else None
        if isinstance(controlling, str) and controlling not in known:
            errors.append(_issue("SCHEMA_FIELD_CONSTRAINT_INVALID", f"controllingField not found: {controlling}", f"fields[{idx}].controllingField"))

    layouts = obj.get("pageLayouts", [])
    layout_ids = set()
    if not isinstance(layouts, list):
        errors.append(_issue("SCHEMA_LAYOUTS_INVALID", "pageLayouts must be a list", "pageLayouts"))
        layouts = []
    for idx, layout in enumerate(layouts):
        errors.extend(validate_layout_definition(layout, field_names, f"pageLayouts[{idx}]"))
        if isinstance(layout, dict) and layout.get("id"):
            layout_ids.add(layout["id"])

    for idx, record_type in enumerate(obj.get("recordTypes", []) or []):
        rpath = f"recordTypes[{idx}]"
        if not isinstance(record_type, dict) or not record_type.get("name"):
            errors.append(_issue("SCHEMA_RECORD_TYPE_INVALID", "record type requires a name", rpath))
            continue
        layout_id = record_type.get("pageLayoutId")
        if layout_id is not None and layout_id not in layout_ids:
            errors.append(_issue("SCHEMA_RECORD_TYPE_LAYOUT_UNKNOWN", f"pageLayoutId not found: {layout_id}", f"{rpath}.pageLayoutId"))

    for idx, rule in enumerate(obj.get("validationRules", []) or []):
        errors.extend(validate_rule_definition(rule, field_names, f"validationRules[{idx}]"))
    return errors, warnings


def validate_rule_definition(rule: Any, field_names: Iterable[str], path: str = "rule") -> list[Issue]:
    errors: list[Issue] = []
    if not isinstance(rule, dict):
        return [_issue("SCHEMA_RULE_INVALID", "validation rule must be an object", path)]
    if not isinstance(rule.get("name"), str) or not rule.get("name"):
        errors.append(_issue("SCHEMA_RULE_INVALID", "validation rule requires a name", f"{path}.name"))
    if not isinstance(rule.get("errorMessage"), str) or not rule.get("errorMessage"):
        errors.append(_issue("SCHEMA_RULE_INVALID", "validation rule requires an errorMessage", f"{path}.errorMessage"))
    condition = rule.get("condition")
    if not isinstance(condition, str) or not condition.strip():
        errors.append(_issue("SCHEMA_RULE_CONDITION_REQUIRED", "condition is required", f"{path}.condition"))
    else:
        result = expression_eval.validate(condition)
        if not result["isValid"]:
            errors.append(_issue("SCHEMA_RULE_CONDITION_INVALID", result.get("error") or "invalid condition", f"{path}.condition"))
    error_field = rule.get("errorField")
    if error_field is not None and error_field not in set(field_names):
        errors.append(_issue("SCHEMA_RULE_FIELD_UNKNOWN", f"errorField not found: {error_field}", f"{path}.errorField"))
    return errors
