"""View models for record detail pages and forms.

The renderer never produces markup. It turns a resolved layout and a
record's data into tabs, sections and grid rows of display-ready fields;
presentation belongs to the UI.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping

import condition_eval
import expression_eval
from app.field_values import ADDRESS_KEYS, FieldValueError, coerce_value, decode_picklist, is_empty
from app.layouts import fields_for_layout, layout_field_grid, layout_for_type, resolve_layout
from app.records_validation import decode_record_data, evaluation_context
from app.schema import (
    COMPUTED_TYPES,
    LOOKUP_TYPES,
    PICKLIST_TYPES,
    CustomField,
    CustomObject,
    NotFoundError,
    PageLayout,
    Record,
)


logger = logging.getLogger("crm.render")

PLACEHOLDER = "-"

LOOKUP_ROUTES = {
    "Contact": "contacts",
    "Account": "accounts",
    "Property": "properties",
    "Lead": "leads",
    "Deal": "deals",
    "Product": "products",
    "Quote": "quotes",
    "Project": "projects",
    "Service": "service",
    "Installation": "installations",
}

DISPLAY_FIELDS = {
    "Contact": ("email", "contactNumber"),
    "Account": ("accountName", "name", "accountNumber"),
    "Property": ("propertyName", "name", "propertyNumber", "address"),
    "Lead": ("leadName", "name", "leadNumber", "company"),
    "Deal": ("dealName", "name", "dealNumber"),
    "Product": ("productName", "name", "productNumber"),
    "Quote": ("quoteName", "name", "quoteNumber"),
    "Project": ("projectName", "name", "projectNumber"),
    "Service": ("serviceName", "name", "serviceNumber"),
    "Installation": ("installationName", "name", "installationNumber"),
    "User": ("name", "email"),
}
DEFAULT_DISPLAY_FIELDS = ("name", "label", "title")
_NAME_PARTS = ("salutation", "firstName", "lastName")


@dataclass
class RenderedField:
    api_name: str
    label: str
    type: str
    required: bool = False
    read_only: bool = False
    value: Any = None
    display: str = PLACEHOLDER
    link: str | None = None
    options: List[str] = field(default_factory=list)
    help_text: str | None = None


@dataclass
class RenderedSection:
    id: str
    label: str
    columns: int
    rows: List[List[RenderedField | None]] = field(default_factory=list)


@dataclass
class RenderedTab:
    id: str
    label: str
    sections: List[RenderedSection] = field(default_factory=list)


@dataclass
class RenderedView:
    object_api_name: str
    mode: str
    layout_id: str | None = None
    layout_name: str | None = None
    configured: bool = True
    tabs: List[RenderedTab] = field(default_factory=list)
    fields: List[RenderedField] = field(default_factory=list)
    hidden_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _composite_name(value: Mapping[str, Any]) -> str:
    parts = [str(value.get(key)).strip() for key in _NAME_PARTS if not is_empty(value.get(key))]
    return " ".join(p for p in parts if p)


def _is_address(value: Mapping[str, Any]) -> bool:
    return any(key in value for key in ADDRESS_KEYS)


def _is_geolocation(value: Mapping[str, Any]) -> bool:
    return "latitude" in value or "longitude" in value


def _is_composite_name(value: Mapping[str, Any]) -> bool:
    return any(key in value for key in _NAME_PARTS)


def _format_scalar(value: Any, item: CustomField | None = None) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if item is not None and item.scale is not None:
            return f"{value:.{int(item.scale)}f}"
        if value.is_integer():
            return str(int(value))
    if isinstance(value, int) and item is not None and item.scale:
        return f"{value:.{int(item.scale)}f}"
    return str(value)


def format_field_value(value: Any, item: CustomField | None = None) -> str:
    """Display text for a stored value; lookups are resolved separately."""
    if is_empty(value):
        return PLACEHOLDER
    if item is not None and item.type in PICKLIST_TYPES:
        value = decode_picklist(value)
    if isinstance(value, (list, tuple)):
        parts = [format_field_value(v) for v in value if not is_empty(v)]
        parts = [p for p in parts if p != PLACEHOLDER]
        return ", ".join(parts) if parts else PLACEHOLDER
    if isinstance(value, Mapping):
        if (item is not None and item.type == "Geolocation") or _is_geolocation(value):
            lat, lng = value.get("latitude"), value.get("longitude")
            if lat is None or lng is None:
                return PLACEHOLDER
            return f"{_format_scalar(lat)}, {_format_scalar(lng)}"
        if (item is not None and item.type == "Address") or _is_address(value):
            parts = [str(value[key]) for key in ADDRESS_KEYS if not is_empty(value.get(key))]
            return ", ".join(parts) if parts else PLACEHOLDER
        if _is_composite_name(value):
            return _composite_name(value) or PLACEHOLDER
        return json.dumps(value, default=str)
    return _format_scalar(value, item)


def display_name(object_api_name: str | None, data: Mapping[str, Any] | None) -> str | None:
    """Human-readable name of a related record, or None when nothing fits."""
    if not data:
        return None
    if object_api_name == "Contact":
        name = data.get("name")
        if isinstance(name, Mapping):
            composed = _composite_name(name)
            if composed:
                return composed
        first_last = " ".join(str(data[k]).strip() for k in ("firstName", "lastName") if not is_empty(data.get(k)))
        if first_last:
            return first_last
    candidates = DISPLAY_FIELDS.get(object_api_name, DEFAULT_DISPLAY_FIELDS)
    for key in candidates:
        value = data.get(key)
        if is_empty(value):
            continue
        if isinstance(value, Mapping):
            text = format_field_value(value)
            if text != PLACEHOLDER:
                return text
            continue
        return str(value)
    for key, value in data.items():
        if key.endswith("Name") and isinstance(value, str) and value.strip():
            return value
    return None


def record_link(object_api_name: str | None, record_id: Any) -> str | None:
    if not object_api_name or is_empty(record_id):
        return None
    route = LOOKUP_ROUTES.get(object_api_name)
    if route:
        return f"/{route}/{record_id}"
    return f"/objects/{object_api_name.lower()}/{record_id}"


class LookupResolver:
    """Resolves lookup ids to (label, link) pairs using a caller-supplied fetch.

    ``fetch(object_api_name, record_id)`` returns the related record's data
    or None; results are memoized for the life of the resolver.
    """

    def __init__(self, fetch: Callable[[str, str], Mapping[str, Any] | None] | None = None) -> None:
        self._fetch = fetch
        self._memo: Dict[tuple, Mapping[str, Any] | None] = {}

    def _related(self, object_api_name: str, record_id: str) -> Mapping[str, Any] | None:
        key = (object_api_name, record_id)
        if key not in self._memo:
            data = None
            if self._fetch is not None:
                try:
                    data = self._fetch(object_api_name, record_id)
                except NotFoundError:
                    data = None
            self._memo[key] = data
        return self._memo[key]

    def resolve(self, object_api_name: str | None, value: Any) -> tuple:
        if is_empty(value):
            return PLACEHOLDER, None
        if isinstance(value, Mapping):
            record_id = value.get("id")
            label = display_name(object_api_name, value)
            return label or str(record_id or PLACEHOLDER), record_link(object_api_name, record_id)
        record_id = str(value)
        related = self._related(object_api_name, record_id) if object_api_name else None
        label = display_name(object_api_name, related)
        return label or record_id, record_link(object_api_name, record_id)


def field_display(item: CustomField, value: Any, lookup: LookupResolver | None = None) -> tuple:
    """(display text, link) for one field value."""
    if item.type in LOOKUP_TYPES:
        return (lookup or LookupResolver()).resolve(item.target_object, value)
    text = format_field_value(value, item)
    if text == PLACEHOLDER:
        return text, None
    if item.type == "Email":
        return text, f"mailto:{value}"
    if item.type == "Phone":
        return text, f"tel:{value}"
    if item.type == "URL":
        return text, str(value)
    return text, None


def compute_formulas(obj: CustomObject, data: Mapping[str, Any]) -> dict:
    """Decoded data with every active Formula field evaluated against it."""
    computed = dict(data)
    context = evaluation_context(obj, data)
    for item in obj.active_fields():
        if item.type == "Formula" and item.formula_expr:
            computed[item.api_name] = expression_eval.evaluate_formula(item.formula_expr, context)
    return computed


def _rendered_field(item: CustomField, data: Mapping[str, Any], lookup: LookupResolver | None) -> RenderedField:
    value = data.get(item.api_name)
    display, link = field_display(item, value, lookup)
    return RenderedField(
        api_name=item.api_name,
        label=item.label,
        type=item.type,
        required=item.required,
        read_only=item.read_only or item.type in COMPUTED_TYPES,
        value=value,
        display=display,
        link=link,
        options=list(item.picklist_values),
        help_text=item.help_text,
    )


def hidden_fields(obj: CustomObject, layout: PageLayout | None, data: Mapping[str, Any]) -> List[str]:
    """Api names of fields hidden by their own or their section's visibleIf."""
    hidden: List[str] = []
    data = evaluation_context(obj, data)
    if layout is None:
        for item in obj.active_fields():
            if not condition_eval.evaluate_visibility(list(item.visible_if), data, field=item.api_name):
                hidden.append(item.api_name)
        return hidden
    for tab in layout.tabs:
        for section in tab.sections:
            section_visible = condition_eval.evaluate_visibility(
                list(section.visible_if), data, field=f"section:{section.id}"
            )
            for ref in section.fields:
                item = obj.field_by_id(ref.field_id)
                if item is None or not item.is_active or item.api_name in hidden:
                    continue
                if not section_visible or not condition_eval.evaluate_visibility(
                    list(item.visible_if), data, field=item.api_name
                ):
                    hidden.append(item.api_name)
    return hidden


def _render(
    obj: CustomObject,
    layout: PageLayout | None,
    data: Mapping[str, Any],
    mode: str,
    lookup: LookupResolver | None,
) -> RenderedView:
    hidden = hidden_fields(obj, layout, data)
    if layout is None:
        flat = [_rendered_field(item, data, lookup) for item in obj.active_fields() if item.api_name not in hidden]
        return RenderedView(object_api_name=obj.api_name, mode=mode, configured=False, fields=flat, hidden_fields=hidden)

    hidden_set = set(hidden)
    tabs: List[RenderedTab] = []
    flat: List[RenderedField] = []
    for tab in layout.tabs:
        sections: List[RenderedSection] = []
        for section in tab.sections:
            rows = []
            for grid_row in layout_field_grid(section):
                row: List[RenderedField | None] = []
                for ref in grid_row:
                    item = obj.field_by_id(ref.field_id) if ref is not None else None
                    if item is None or not item.is_active or item.api_name in hidden_set:
                        row.append(None)
                        continue
                    rendered = _rendered_field(item, data, lookup)
                    row.append(rendered)
                    flat.append(rendered)
                if any(cell is not None for cell in row):
                    rows.append(row)
            if rows:
                sections.append(RenderedSection(id=section.id, label=section.label, columns=section.columns, rows=rows))
        tabs.append(RenderedTab(id=tab.id, label=tab.label, sections=sections))
    return RenderedView(
        object_api_name=obj.api_name,
        mode=mode,
        layout_id=layout.id,
        layout_name=layout.name,
        configured=True,
        tabs=tabs,
        fields=flat,
        hidden_fields=hidden,
    )


def render_detail(obj: CustomObject, record: Record, lookup: LookupResolver | None = None) -> RenderedView:
    data = compute_formulas(obj, decode_record_data(obj, record.data))
    layout = resolve_layout(record, obj)
    if layout is None:
        logger.info("layout_not_configured object=%s record=%s", obj.api_name, record.id)
    return _render(obj, layout, data, "detail", lookup)


def render_form(
    obj: CustomObject,
    record_data: Mapping[str, Any] | None = None,
    layout: PageLayout | None = None,
    lookup: LookupResolver | None = None,
    layout_type: str = "create",
) -> RenderedView:
    """Form view for new or in-progress values; ``layout`` defaults by ``layout_type``."""
    if layout is None:
        layout = layout_for_type(obj, layout_type)
    data = compute_formulas(obj, decode_record_data(obj, record_data or {}))
    return _render(obj, layout, data, "form", lookup)


def validate_form(obj: CustomObject, layout: PageLayout | None, form_data: Mapping[str, Any]) -> Dict[str, str]:
    """Per-field messages for the visible, editable fields of a form."""
    data = form_data or {}
    hidden = set(hidden_fields(obj, layout, data))
    candidates = fields_for_layout(layout, obj) if layout is not None else obj.active_fields()
    messages: Dict[str, str] = {}
    for item in candidates:
        if item.api_name in hidden or item.type in COMPUTED_TYPES:
            continue
        value = data.get(item.api_name)
        if is_empty(value):
            if item.required:
                messages[item.api_name] = f"{item.label} is required"
            continue
        try:
            coerce_value(item, value)
        except FieldValueError as exc:
            messages[item.api_name] = exc.message
    return messages
