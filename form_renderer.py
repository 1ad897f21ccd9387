"""Form descriptors built from field and layout metadata."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Tuple

from flexcrm.naming import SYSTEM_COLUMNS
from flexcrm.validation import EMAIL_RE, URL_RE, field_label, validate_record_payload
from flexcrm.values import CHOICE_TYPES


_INPUT_TYPES = {
    "text": "text",
    "email": "email",
    "url": "url",
    "number": "number",
    "date": "date",
    "datetime": "datetime-local",
    # relation pickers are not implemented; they render as plain text
    "relation": "text",
}


def _order_key(field: dict) -> int:
    order = field.get("display_order")
    return order if isinstance(order, int) else 0


def ordered_fields(fields: List[dict]) -> List[dict]:
    return sorted([f for f in fields or [] if isinstance(f, dict)], key=_order_key)


def form_fields(fields: List[dict]) -> List[dict]:
    return [f for f in ordered_fields(fields) if f.get("name") not in SYSTEM_COLUMNS]


def widget_for(field: dict) -> dict:
    ftype = field.get("type") or "text"
    widget = {
        "id": field.get("id"),
        "name": field.get("name"),
        "label": field_label(field),
        "type": ftype,
        "required": bool(field.get("is_required")),
        "pattern": None,
        "options": None,
    }
    if ftype == "textarea":
        widget.update({"widget": "textarea", "rows": 4, "full_width": True})
    elif ftype == "checkbox":
        widget.update({"widget": "checkbox"})
    elif ftype in CHOICE_TYPES:
        widget.update({"widget": ftype, "options": copy.deepcopy(field.get("options") or [])})
    else:
        widget.update({"widget": "input", "input_type": _INPUT_TYPES.get(ftype, "text")})
        if ftype == "email":
            widget["pattern"] = EMAIL_RE.pattern
        elif ftype == "url":
            widget["pattern"] = URL_RE.pattern
    return widget


def reconcile_definition(definition: dict, fields: List[dict]) -> Tuple[dict, List[Any]]:
    """Bring layout snapshots in line with the live field definitions.

    References to deleted fields are dropped and their ids returned. Label,
    type and required flag are refreshed; ``is_visible`` is kept.
    """
    live = {str(f.get("id")): f for f in fields or [] if isinstance(f, dict)}
    dropped: List[Any] = []
    sections = []
    for section in (definition or {}).get("sections") or []:
        if not isinstance(section, dict):
            continue
        refs = []
        for ref in section.get("fields") or []:
            if not isinstance(ref, dict):
                continue
            field = live.get(str(ref.get("id")))
            if field is None:
                dropped.append(ref.get("id"))
                continue
            refs.append(
                {
                    "id": field.get("id"),
                    "name": field.get("name"),
                    "label": field.get("label"),
                    "type": field.get("type"),
                    "is_required": bool(field.get("is_required")),
                    "is_visible": ref.get("is_visible", True) is not False,
                }
            )
        sections.append({**copy.deepcopy(section), "fields": refs})
    return {**copy.deepcopy(definition or {}), "sections": sections}, dropped


def pick_layout(layouts: List[dict] | None) -> dict | None:
    items = [item for item in layouts or [] if isinstance(item, dict)]
    for item in items:
        if item.get("is_default"):
            return item
    return items[0] if items else None


def _section_columns(section: dict) -> int:
    columns = section.get("columns")
    return columns if columns in (1, 2, 3) else 2


def build_form(fields: List[dict], layouts: List[dict] | None = None, record: dict | None = None) -> dict:
    """Describe the input form for one record.

    With a layout, sections follow its visible, still-existing field
    references; otherwise one two-column section holds every form field.
    """
    layout = pick_layout(layouts)
    sections = []
    if layout and isinstance(layout.get("definition"), dict):
        definition, _ = reconcile_definition(layout["definition"], fields)
        live = {str(f.get("id")): f for f in fields}
        for section in definition["sections"]:
            widgets = []
            for ref in section["fields"]:
                field = live[str(ref["id"])]
                if not ref["is_visible"] or field.get("name") in SYSTEM_COLUMNS:
                    continue
                widgets.append(widget_for(field))
            sections.append({"title": section.get("title"), "columns": _section_columns(section), "fields": widgets})
    else:
        sections.append({"title": "Information", "columns": 2, "fields": [widget_for(f) for f in form_fields(fields)]})
    values = {}
    record = record or {}
    for field in form_fields(fields):
        name = field["name"]
        values[name] = record.get(name) if record else field.get("default_value")
    return {
        "layout_id": layout.get("id") if layout else None,
        "sections": sections,
        "values": values,
        "record_id": record.get("id"),
    }


def coerce_form_data(fields: List[dict], form: dict) -> dict:
    """Normalize submitted form values before validation.

    System columns are dropped; a checkbox missing from the submission is
    unchecked.
    """
    data: Dict[str, Any] = {}
    for field in form_fields(fields):
        name = field["name"]
        if field.get("type") == "checkbox":
            data[name] = form.get(name, False)
            continue
        if name in form:
            data[name] = form[name]
    return data


def validate_form(
    fields: List[dict],
    form: dict,
    for_create: bool,
    existing: List[dict] | None = None,
    record_id: Any = None,
    system_values: dict | None = None,
) -> Tuple[Dict[str, str], List[dict], dict]:
    data = coerce_form_data(fields, form)
    data.update(system_values or {})
    errors, clean = validate_record_payload(fields, data, for_create=for_create, existing=existing, record_id=record_id)
    by_field: Dict[str, str] = {}
    for issue in errors:
        path = issue.get("path")
        if path and path not in by_field:
            by_field[path] = issue.get("message")
    return by_field, errors, clean
