"""Schema model: custom objects, fields, page layouts and records.

Stored shapes use the camelCase keys of the admin API; ``from_dict`` accepts
those (and snake_case) and ``to_dict`` produces them again. Schema entities
are frozen: a :class:`SchemaSnapshot` is loaded once and shared read-only
by layout resolution, validation and rendering.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from crmkit import schema_hash


FIELD_TYPES = (
    "AutoNumber",
    "Formula",
    "RollupSummary",
    "Lookup",
    "ExternalLookup",
    "Checkbox",
    "Currency",
    "Date",
    "DateTime",
    "Email",
    "Geolocation",
    "Number",
    "Percent",
    "Phone",
    "Picklist",
    "MultiPicklist",
    "Text",
    "TextArea",
    "LongTextArea",
    "RichTextArea",
    "EncryptedText",
    "Time",
    "URL",
    "Address",
)
TEXT_TYPES = {"Text", "TextArea", "LongTextArea", "RichTextArea", "EncryptedText"}
NUMBER_TYPES = {"Number", "Currency", "Percent"}
DATE_TYPES = {"Date", "DateTime", "Time"}
PICKLIST_TYPES = {"Picklist", "MultiPicklist"}
LOOKUP_TYPES = {"Lookup", "ExternalLookup"}
COMPUTED_TYPES = {"AutoNumber", "Formula", "RollupSummary"}
LAYOUT_TYPES = ("create", "edit")

OBJECT_API_NAME_RE = re.compile(r"^[A-Z][A-Za-z0-9_]*$")
FIELD_API_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
_LEGACY_PREFIX_RE = re.compile(r"^[^_]+__")


class SchemaError(ValueError):
    """Raised when schema metadata is structurally inconsistent."""


class LayoutFieldError(SchemaError):
    def __init__(self, layout: str, reference: str) -> None:
        super().__init__(f"Layout {layout!r} references a field outside its object: {reference}")
        self.layout = layout
        self.reference = reference


@dataclass
class NotFoundError(Exception):
    kind: str
    identifier: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.kind} not found: {self.identifier}"


def canonical_field_api_name(name: str) -> str:
    """Strip the legacy ``<Object>__`` prefix some stored references carry."""
    if not isinstance(name, str):
        return name
    return _LEGACY_PREFIX_RE.sub("", name, count=1)


def _get(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _picklist_values(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [v.strip() for v in raw.split(";") if v.strip()]
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(v) for v in raw)


def _conditions(raw: Any) -> Tuple[dict, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(dict(c) if isinstance(c, Mapping) else c for c in raw)


def _mapping(raw: Any) -> Dict[str, Any] | None:
    return dict(raw) if isinstance(raw, Mapping) else None


def _dependent_values(raw: Any) -> Dict[str, Tuple[str, ...]] | None:
    if not isinstance(raw, Mapping):
        return None
    return {str(k): _picklist_values(v) for k, v in raw.items()}


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class Relationship:
    parent_object: str
    child_object: str | None = None
    behavior: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Relationship":
        parent = _get(data, "parentObject", "targetObject", "parent_object", "lookupObject")
        if isinstance(parent, Mapping):
            parent = _get(parent, "apiName", "api_name")
        child = _get(data, "childObject", "child_object")
        if isinstance(child, Mapping):
            child = _get(child, "apiName", "api_name")
        return cls(parent_object=parent, child_object=child, behavior=_get(data, "behavior"))

    def to_dict(self) -> dict:
        return _drop_none({"parentObject": self.parent_object, "childObject": self.child_object, "behavior": self.behavior})


@dataclass(frozen=True)
class CustomField:
    id: str
    object_id: str
    api_name: str
    label: str
    type: str
    required: bool = False
    unique: bool = False
    read_only: bool = False
    is_active: bool = True
    min_length: int | None = None
    max_length: int | None = None
    scale: int | None = None
    precision: int | None = None
    min: float | None = None
    max: float | None = None
    picklist_values: Tuple[str, ...] = ()
    default_value: Any = None
    visible_if: Tuple[dict, ...] = ()
    relationship: Relationship | None = None
    lookup_object: str | None = None
    formula_expr: str | None = None
    help_text: str | None = None
    description: str | None = None
    custom: bool | None = None
    relationship_name: str | None = None
    controlling_field: str | None = None
    dependent_values: Dict[str, Tuple[str, ...]] | None = None
    auto_number: Dict[str, Any] | None = None
    rollup: Dict[str, Any] | None = None
    created_by_id: str | None = None
    modified_by_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def target_object(self) -> str | None:
        if self.lookup_object:
            return self.lookup_object
        return self.relationship.parent_object if self.relationship else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], object_id: str | None = None) -> "CustomField":
        api_name = _get(data, "apiName", "api_name")
        rel = _get(data, "relationship")
        return cls(
            id=str(_get(data, "id", default=api_name)),
            object_id=str(_get(data, "objectId", "object_id", default=object_id)),
            api_name=api_name,
            label=_get(data, "label", default=api_name),
            type=_get(data, "type"),
            required=bool(_get(data, "required", default=False)),
            unique=bool(_get(data, "unique", default=False)),
            read_only=bool(_get(data, "readOnly", "read_only", default=False)),
            is_active=bool(_get(data, "isActive", "is_active", default=True)),
            min_length=_get(data, "minLength", "min_length"),
            max_length=_get(data, "maxLength", "max_length"),
            scale=_get(data, "scale"),
            precision=_get(data, "precision"),
            min=_get(data, "min"),
            max=_get(data, "max"),
            picklist_values=_picklist_values(_get(data, "picklistValues", "picklist_values")),
            default_value=_get(data, "defaultValue", "default_value"),
            visible_if=_conditions(_get(data, "visibleIf", "visible_if")),
            relationship=Relationship.from_dict(rel) if isinstance(rel, Mapping) else None,
            lookup_object=_get(data, "lookupObject", "lookup_object"),
            formula_expr=_get(data, "formulaExpr", "formula_expr"),
            help_text=_get(data, "helpText", "help_text"),
            description=_get(data, "description"),
            custom=_get(data, "custom"),
            relationship_name=_get(data, "relationshipName", "relationship_name"),
            controlling_field=_get(data, "controllingField", "controlling_field"),
            dependent_values=_dependent_values(_get(data, "dependentValues", "dependent_values")),
            auto_number=_mapping(_get(data, "autoNumber", "auto_number")),
            rollup=_mapping(_get(data, "rollup")),
            created_by_id=_get(data, "createdById", "created_by_id"),
            modified_by_id=_get(data, "modifiedById", "modified_by_id"),
            created_at=_get(data, "createdAt", "created_at"),
            updated_at=_get(data, "updatedAt", "updated_at"),
        )

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "objectId": self.object_id,
                "apiName": self.api_name,
                "label": self.label,
                "type": self.type,
                "required": self.required,
                "unique": self.unique,
                "readOnly": self.read_only,
                "isActive": self.is_active,
                "minLength": self.min_length,
                "maxLength": self.max_length,
                "scale": self.scale,
                "precision": self.precision,
                "min": self.min,
                "max": self.max,
                "picklistValues": list(self.picklist_values) if self.picklist_values else None,
                "defaultValue": self.default_value,
                "visibleIf": [dict(c) for c in self.visible_if] if self.visible_if else None,
                "relationship": self.relationship.to_dict() if self.relationship else None,
                "lookupObject": self.lookup_object,
                "formulaExpr": self.formula_expr,
                "helpText": self.help_text,
                "description": self.description,
                "custom": self.custom,
                "relationshipName": self.relationship_name,
                "controllingField": self.controlling_field,
                "dependentValues": (
                    {k: list(v) for k, v in self.dependent_values.items()} if self.dependent_values is not None else None
                ),
                "autoNumber": dict(self.auto_number) if self.auto_number is not None else None,
                "rollup": dict(self.rollup) if self.rollup is not None else None,
                "createdById": self.created_by_id,
                "modifiedById": self.modified_by_id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )


@dataclass(frozen=True)
class LayoutField:
    field_id: str
    api_name: str
    column: int = 0
    order: int = 0

    def to_dict(self) -> dict:
        return {"fieldId": self.field_id, "apiName": self.api_name, "column": self.column, "order": self.order}


@dataclass(frozen=True)
class LayoutSection:
    id: str
    label: str
    columns: int = 1
    order: int = 0
    fields: Tuple[LayoutField, ...] = ()
    visible_if: Tuple[dict, ...] = ()

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "label": self.label,
                "columns": self.columns,
                "order": self.order,
                "fields": [f.to_dict() for f in self.fields],
                "visibleIf": [dict(c) for c in self.visible_if] if self.visible_if else None,
            }
        )


@dataclass(frozen=True)
class LayoutTab:
    id: str
    label: str
    order: int = 0
    sections: Tuple[LayoutSection, ...] = ()

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "order": self.order, "sections": [s.to_dict() for s in self.sections]}


@dataclass(frozen=True)
class PageLayout:
    id: str
    object_id: str
    name: str
    layout_type: str = "edit"
    is_default: bool = False
    is_active: bool = True
    tabs: Tuple[LayoutTab, ...] = ()
    created_by_id: str | None = None
    modified_by_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def iter_layout_fields(self) -> Iterable[LayoutField]:
        for tab in self.tabs:
            for section in tab.sections:
                yield from section.fields

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "objectId": self.object_id,
                "name": self.name,
                "layoutType": self.layout_type,
                "isDefault": self.is_default,
                "isActive": self.is_active,
                "tabs": [t.to_dict() for t in self.tabs],
                "createdById": self.created_by_id,
                "modifiedById": self.modified_by_id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )


def build_layout(data: Mapping[str, Any], object_id: str, fields: Iterable[CustomField]) -> PageLayout:
    """Build a layout, resolving every field reference against ``fields``.

    ``fields`` must be the fields of the layout's own object; a reference to
    anything else raises :class:`LayoutFieldError`.
    """
    by_id = {f.id: f for f in fields}
    by_api = {f.api_name: f for f in by_id.values()}
    name = _get(data, "name", default="Layout")

    def _resolve(ref: Mapping[str, Any]) -> CustomField:
        field_id = _get(ref, "fieldId", "field_id")
        if field_id is not None:
            found = by_id.get(str(field_id))
            if found is None:
                raise LayoutFieldError(name, str(field_id))
            return found
        api_name = _get(ref, "apiName", "fieldApiName", "api_name")
        if not isinstance(api_name, str):
            raise LayoutFieldError(name, repr(ref))
        found = by_api.get(api_name) or by_api.get(canonical_field_api_name(api_name))
        if found is None:
            raise LayoutFieldError(name, api_name)
        return found

    tabs = []
    for t_idx, tab in enumerate(_get(data, "tabs", default=[])):
        sections = []
        for s_idx, section in enumerate(_get(tab, "sections", default=[])):
            columns = int(_get(section, "columns", default=1))
            layout_fields = []
            for f_idx, ref in enumerate(_get(section, "fields", default=[])):
                resolved = _resolve(ref)
                layout_fields.append(
                    LayoutField(
                        field_id=resolved.id,
                        api_name=resolved.api_name,
                        column=int(_get(ref, "column", default=0)),
                        order=int(_get(ref, "order", default=f_idx)),
                    )
                )
            sections.append(
                LayoutSection(
                    id=str(_get(section, "id", default=f"section-{t_idx}-{s_idx}")),
                    label=_get(section, "label", default=""),
                    columns=columns,
                    order=int(_get(section, "order", default=s_idx)),
                    fields=tuple(layout_fields),
                    visible_if=_conditions(_get(section, "visibleIf", "visible_if")),
                )
            )
        tabs.append(
            LayoutTab(
                id=str(_get(tab, "id", default=f"tab-{t_idx}")),
                label=_get(tab, "label", default=""),
                order=int(_get(tab, "order", default=t_idx)),
                sections=tuple(sections),
            )
        )
    return PageLayout(
        id=str(_get(data, "id", default=name)),
        object_id=str(_get(data, "objectId", "object_id", default=object_id)),
        name=name,
        layout_type=_get(data, "layoutType", "layout_type", default="edit"),
        is_default=bool(_get(data, "isDefault", "is_default", default=False)),
        is_active=bool(_get(data, "isActive", "is_active", default=True)),
        tabs=tuple(tabs),
        created_by_id=_get(data, "createdById", "created_by_id"),
        modified_by_id=_get(data, "modifiedById", "modified_by_id"),
        created_at=_get(data, "createdAt", "created_at"),
        updated_at=_get(data, "updatedAt", "updated_at"),
    )


@dataclass(frozen=True)
class RecordType:
    id: str
    name: str
    description: str | None = None
    is_default: bool = False
    page_layout_id: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecordType":
        return cls(
            id=str(_get(data, "id")),
            name=_get(data, "name", default=""),
            description=_get(data, "description"),
            is_default=bool(_get(data, "isDefault", "default", "is_default", default=False)),
            page_layout_id=_get(data, "pageLayoutId", "page_layout_id"),
            is_active=bool(_get(data, "isActive", "is_active", default=True)),
        )

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "description": self.description,
                "isDefault": self.is_default,
                "pageLayoutId": self.page_layout_id,
                "isActive": self.is_active,
            }
        )


@dataclass(frozen=True)
class ValidationRule:
    id: str
    name: str
    condition: str
    error_message: str
    error_field: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationRule":
        return cls(
            id=str(_get(data, "id")),
            name=_get(data, "name", default=""),
            condition=_get(data, "condition", default=""),
            error_message=_get(data, "errorMessage", "error_message", default="Validation rule failed"),
            error_field=_get(data, "errorField", "error_field"),
            is_active=bool(_get(data, "active", "isActive", "is_active", default=True)),
        )

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "condition": self.condition,
                "errorMessage": self.error_message,
                "errorField": self.error_field,
                "isActive": self.is_active,
            }
        )


@dataclass(frozen=True)
class CustomObject:
    id: str
    api_name: str
    label: str
    plural_label: str
    description: str | None = None
    is_active: bool = True
    fields: Tuple[CustomField, ...] = ()
    page_layouts: Tuple[PageLayout, ...] = ()
    record_types: Tuple[RecordType, ...] = ()
    validation_rules: Tuple[ValidationRule, ...] = ()
    created_by_id: str | None = None
    modified_by_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CustomObject":
        api_name = _get(data, "apiName", "api_name")
        object_id = str(_get(data, "id", default=api_name))
        fields = []
        for raw in _get(data, "fields", default=[]):
            item = CustomField.from_dict(raw, object_id=object_id)
            if item.object_id != object_id:
                raise SchemaError(f"Field {item.api_name!r} belongs to object {item.object_id!r}, not {object_id!r}")
            fields.append(item)
        layouts = tuple(
            build_layout(raw, object_id, fields) for raw in _get(data, "pageLayouts", "page_layouts", default=[])
        )
        return cls(
            id=object_id,
            api_name=api_name,
            label=_get(data, "label", default=api_name),
            plural_label=_get(data, "pluralLabel", "plural_label", default=_get(data, "label", default=api_name)),
            description=_get(data, "description"),
            is_active=bool(_get(data, "isActive", "is_active", default=True)),
            fields=tuple(fields),
            page_layouts=layouts,
            record_types=tuple(RecordType.from_dict(rt) for rt in _get(data, "recordTypes", "record_types", default=[])),
            validation_rules=tuple(
                ValidationRule.from_dict(r) for r in _get(data, "validationRules", "validation_rules", default=[])
            ),
            created_by_id=_get(data, "createdById", "created_by_id"),
            modified_by_id=_get(data, "modifiedById", "modified_by_id"),
            created_at=_get(data, "createdAt", "created_at"),
            updated_at=_get(data, "updatedAt", "updated_at"),
        )

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "apiName": self.api_name,
                "label": self.label,
                "pluralLabel": self.plural_label,
                "description": self.description,
                "isActive": self.is_active,
                "fields": [f.to_dict() for f in self.fields],
                "pageLayouts": [l.to_dict() for l in self.page_layouts],
                "recordTypes": [rt.to_dict() for rt in self.record_types],
                "validationRules": [r.to_dict() for r in self.validation_rules],
                "createdById": self.created_by_id,
                "modifiedById": self.modified_by_id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )

    def active_fields(self) -> List[CustomField]:
        return [f for f in self.fields if f.is_active]

    def active_layouts(self) -> List[PageLayout]:
        return [l for l in self.page_layouts if l.is_active]

    def find_field(self, api_name: str, include_inactive: bool = False) -> CustomField | None:
        candidates = self.fields if include_inactive else self.active_fields()
        for item in candidates:
            if item.api_name == api_name:
                return item
        stripped = canonical_field_api_name(api_name)
        if stripped != api_name:
            for item in candidates:
                if item.api_name == stripped:
                    return item
        return None

    def get_field(self, api_name: str, include_inactive: bool = False) -> CustomField:
        found = self.find_field(api_name, include_inactive=include_inactive)
        if found is None:
            raise NotFoundError("field", f"{self.api_name}.{api_name}")
        return found

    def field_by_id(self, field_id: str) -> CustomField | None:
        for item in self.fields:
            if item.id == field_id:
                return item
        return None

    def find_layout(self, layout_id: str | None, include_inactive: bool = False) -> PageLayout | None:
        if not layout_id:
            return None
        candidates = self.page_layouts if include_inactive else self.active_layouts()
        for layout in candidates:
            if layout.id == layout_id:
                return layout
        return None

    def get_layout(self, layout_id: str) -> PageLayout:
        found = self.find_layout(layout_id)
        if found is None:
            raise NotFoundError("layout", str(layout_id))
        return found

    def find_record_type(self, record_type_id: str | None) -> RecordType | None:
        if not record_type_id:
            return None
        for record_type in self.record_types:
            if record_type.id == record_type_id:
                return record_type
        return None


@dataclass
class Record:
    id: str
    object_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    page_layout_id: str | None = None
    record_type_id: str | None = None
    created_by_id: str | None = None
    modified_by_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    version: int = 1

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        return cls(
            id=str(_get(data, "id")),
            object_id=str(_get(data, "objectId", "object_id")),
            data=dict(_get(data, "data", default={})),
            page_layout_id=_get(data, "pageLayoutId", "page_layout_id"),
            record_type_id=_get(data, "recordTypeId", "record_type_id"),
            created_by_id=_get(data, "createdById", "created_by_id"),
            modified_by_id=_get(data, "modifiedById", "modified_by_id"),
            created_at=_get(data, "createdAt", "created_at"),
            updated_at=_get(data, "updatedAt", "updated_at"),
            version=int(_get(data, "version", default=1)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "objectId": self.object_id,
            "data": dict(self.data),
            "pageLayoutId": self.page_layout_id,
            "recordTypeId": self.record_type_id,
            "createdById": self.created_by_id,
            "modifiedById": self.modified_by_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "version": self.version,
        }


@dataclass(frozen=True)
class SchemaSnapshot:
    """Immutable view of every object in the org at one schema version."""

    objects: Tuple[CustomObject, ...] = ()
    version: int = 0
    hash: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SchemaSnapshot":
        raw_objects = list(_get(data, "objects", default=[]))
        objects = tuple(CustomObject.from_dict(o) for o in raw_objects)
        snapshot = cls(objects=objects, version=int(_get(data, "version", default=0)))
        return cls(objects=objects, version=snapshot.version, hash=schema_hash(snapshot.to_dict()))

    def to_dict(self) -> dict:
        return {"version": self.version, "objects": [o.to_dict() for o in self.objects]}

    def find_object(self, api_name: str, include_inactive: bool = False) -> CustomObject | None:
        for obj in self.objects:
            if obj.api_name == api_name and (include_inactive or obj.is_active):
                return obj
        return None

    def get_object(self, api_name: str, include_inactive: bool = False) -> CustomObject:
        found = self.find_object(api_name, include_inactive=include_inactive)
        if found is None:
            raise NotFoundError("object", api_name)
        return found

    def find_object_by_id(self, object_id: str) -> CustomObject | None:
        for obj in self.objects:
            if obj.id == object_id:
                return obj
        return None

    def find_object_by_slug(self, slug: str) -> CustomObject | None:
        """Route-style lookup: api name or dashed label, case-insensitive."""
        wanted = (slug or "").lower()
        for obj in self.active_objects():
            if obj.api_name.lower() == wanted or re.sub(r"\s+", "-", obj.label.lower()) == wanted:
                return obj
        return None

    def active_objects(self) -> List[CustomObject]:
        return [o for o in self.objects if o.is_active]
