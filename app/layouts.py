"""Page layout resolution for records and forms."""

from __future__ import annotations

from typing import Any, List, Mapping

from app.schema import CustomField, CustomObject, LayoutField, LayoutSection, PageLayout, Record


def _record_attr(record: Any, snake: str, camel: str) -> Any:
    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get(camel, record.get(snake))
    return getattr(record, snake, None)


def resolve_layout(record: Record | Mapping[str, Any] | None, obj: CustomObject) -> PageLayout | None:
    """Layout for ``record``: its own layout, then its record type's, then the first active one.

    Returns None when the object has no active layout.
    """
    layout = obj.find_layout(_record_attr(record, "page_layout_id", "pageLayoutId"))
    if layout is not None:
        return layout
    record_type = obj.find_record_type(_record_attr(record, "record_type_id", "recordTypeId"))
    if record_type is None and obj.record_types:
        record_type = obj.record_types[0]
    if record_type is not None:
        layout = obj.find_layout(record_type.page_layout_id)
        if layout is not None:
            return layout
    active = obj.active_layouts()
    return active[0] if active else None


def layout_for_type(obj: CustomObject, layout_type: str) -> PageLayout | None:
    active = obj.active_layouts()
    typed = [layout for layout in active if layout.layout_type == layout_type]
    for layout in typed:
        if layout.is_default:
            return layout
    if typed:
        return typed[0]
    return active[0] if active else None


def fields_for_layout(layout: PageLayout | None, obj: CustomObject) -> List[CustomField]:
    """Active fields of ``obj`` referenced by ``layout``, in object field order."""
    if layout is None or layout.object_id != obj.id:
        return []
    referenced = {ref.field_id for ref in layout.iter_layout_fields()}
    return [item for item in obj.active_fields() if item.id in referenced]


def layout_field_grid(section: LayoutSection) -> List[List[LayoutField | None]]:
    """Place section fields in rows of ``columns`` cells; row = order // columns."""
    columns = max(1, section.columns)
    if not section.fields:
        return []
    row_count = max(ref.order // columns for ref in section.fields) + 1
    grid: List[List[LayoutField | None]] = [[None] * columns for _ in range(row_count)]
    overflow = []
    for ref in sorted(section.fields, key=lambda r: r.order):
        row = ref.order // columns
        col = ref.column if 0 <= ref.column < columns else 0
        if grid[row][col] is None:
            grid[row][col] = ref
        else:
            overflow.append(ref)
    for ref in overflow:
        grid.append([ref] + [None] * (columns - 1))
    return grid
