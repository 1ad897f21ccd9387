"""Validation for metadata definitions and dynamic record payloads."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Tuple

from .naming import ENTITY_NAME_RE, SYSTEM_COLUMNS
from .values import CHOICE_TYPES, decode_value, encode_value

Issue = Dict[str, Any]

FIELD_TYPES = (
    "text",
    "textarea",
    "number",
    "email",
    "url",
    "date",
    "datetime",
    "checkbox",
    "select",
    "radio",
    "relation",
)
LAYOUT_TYPES = ("detail", "edit", "list")

EMAIL_RE = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
URL_RE = re.compile(r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)/?$")

_TYPE_ERRORS = {
    "number": ("TYPE_MISMATCH", "{label} must be a number"),
    "checkbox": ("TYPE_MISMATCH", "{label} must be true or false"),
    "date": ("INVALID_DATE", "{label} must be a date (YYYY-MM-DD)"),
    "datetime": ("INVALID_DATETIME", "{label} must be an ISO 8601 date and time"),
}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def field_label(field: dict) -> str:
    return field.get("label") or field.get("name") or "Field"


def option_values(field: dict) -> list:
    values = []
    for opt in field.get("options") or []:
        if isinstance(opt, dict) and "value" in opt:
            values.append(opt["value"])
        else:
            values.append(opt)
    return values


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def pattern_for(field: dict) -> re.Pattern | None:
    ftype = field.get("type")
    if ftype == "email":
        return EMAIL_RE
    if ftype == "url":
        return URL_RE
    return None


def validate_entity_definition(entity: dict) -> List[Issue]:
    errors: List[Issue] = []
    if not isinstance(entity, dict):
        return [_issue("INVALID_PAYLOAD", "Entity must be an object")]
    name = entity.get("name")
    if not isinstance(name, str) or not ENTITY_NAME_RE.match(name):
        errors.append(_issue("INVALID_NAME", "Name may only contain lowercase letters, numbers, and underscores", "name"))
    if not entity.get("label"):
        errors.append(_issue("LABEL_REQUIRED", "Label is required", "label"))
    return errors


def validate_field_definition(field: dict, siblings: Iterable[dict] | None = None) -> List[Issue]:
    """Check a field definition before it is written.

    ``siblings`` are the other fields of the same entity, used for the
    unique-name check; pass the cached list minus the field being edited.
    """
    errors: List[Issue] = []
    if not isinstance(field, dict):
        return [_issue("INVALID_PAYLOAD", "Field must be an object")]
    name = field.get("name")
    if not isinstance(name, str) or not ENTITY_NAME_RE.match(name):
        errors.append(_issue("INVALID_NAME", "Name may only contain lowercase letters, numbers, and underscores", "name"))
    elif siblings is not None and any(s.get("name") == name for s in siblings if isinstance(s, dict)):
        errors.append(_issue("DUPLICATE_VALUE", f"A field named {name} already exists", "name"))
    if not field.get("label"):
        errors.append(_issue("LABEL_REQUIRED", "Label is required", "label"))
    ftype = field.get("type")
    if ftype not in FIELD_TYPES:
        errors.append(_issue("INVALID_TYPE", f"type must be one of {list(FIELD_TYPES)}", "type"))
    elif ftype in CHOICE_TYPES:
        options = field.get("options")
        if not isinstance(options, list) or not options:
            errors.append(_issue("OPTIONS_REQUIRED", "Options are required for select and radio fields", "options"))
        else:
            for idx, opt in enumerate(options):
                if not isinstance(opt, dict) or is_missing(opt.get("value")):
                    errors.append(_issue("OPTION_EMPTY", "Options must not be empty", f"options[{idx}]"))
    return errors


def _apply_defaults(fields: List[dict], data: dict) -> dict:
    updated = dict(data)
    for field in fields:
        name = field.get("name")
        default = field.get("default_value")
        if not name or is_missing(default):
            continue
        if is_missing(updated.get(name)):
            updated[name] = default
    return updated


def _check_value(field: dict, value: Any) -> Tuple[Issue | None, Any]:
    name = field.get("name")
    label = field_label(field)
    ftype = field.get("type")
    try:
        typed = decode_value(field, value)
    except ValueError:
        code, template = _TYPE_ERRORS.get(ftype, ("TYPE_MISMATCH", "{label} has an invalid value"))
        return _issue(code, template.format(label=label), name), value
    clean = encode_value(typed)
    pattern = pattern_for(field)
    if pattern is not None and not pattern.match(str(clean)):
        if ftype == "email":
            return _issue("INVALID_EMAIL", "Invalid email address", name), clean
        return _issue("INVALID_URL", "Invalid URL", name), clean
    if ftype in CHOICE_TYPES:
        allowed = option_values(field)
        if allowed and clean not in allowed:
            return _issue("INVALID_OPTION", f"{label} must be one of {allowed}", name, {"allowed": allowed}), clean
    return None, clean


def find_unique_conflicts(
    fields: List[dict],
    data: dict,
    existing: Iterable[dict] | None,
    record_id: Any = None,
) -> List[Issue]:
    errors: List[Issue] = []
    rows = [r for r in existing or [] if isinstance(r, dict) and r.get("id") != record_id]
    if not rows:
        return errors
    for field in fields:
        name = field.get("name")
        if not field.get("is_unique") or not name or name not in data:
            continue
        value = data.get(name)
        if is_missing(value):
            continue
        if any(row.get(name) == value for row in rows):
            errors.append(_issue("DUPLICATE_VALUE", f"{field_label(field)} must be unique", name))
    return errors


def validate_record_payload(
    fields: List[dict],
    data: dict,
    for_create: bool,
    existing: Iterable[dict] | None = None,
    record_id: Any = None,
) -> Tuple[List[Issue], dict]:
    """Validate a record write against the entity's field definitions.

    Returns ``(errors, clean)`` where ``clean`` holds the coerced values. On
    create, defaults are applied and every required field must be present; on
    update only the submitted keys are checked.
    """
    if not isinstance(data, dict):
        return [_issue("INVALID_PAYLOAD", "Record data must be an object")], {}
    errors: List[Issue] = []
    field_by_name = {f.get("name"): f for f in fields or [] if isinstance(f, dict) and f.get("name")}

    for key in data.keys():
        if key in SYSTEM_COLUMNS or key in field_by_name:
            continue
        errors.append(_issue("UNKNOWN_FIELD", f"Unknown field: {key}", key))

    if for_create:
        data = _apply_defaults(list(field_by_name.values()), data)

    for name, field in field_by_name.items():
        if not field.get("is_required"):
            continue
        if not for_create and name not in data:
            continue
        if is_missing(data.get(name)):
            errors.append(_issue("REQUIRED_FIELD", f"{field_label(field)} is required", name))

    clean: dict = {}
    for key, value in data.items():
        field = field_by_name.get(key)
        if field is None:
            clean[key] = value
            continue
        if is_missing(value):
            clean[key] = None
            continue
        issue, coerced = _check_value(field, value)
        if issue:
            errors.append(issue)
        clean[key] = coerced

    errors.extend(find_unique_conflicts(list(field_by_name.values()), clean, existing, record_id=record_id))
    return errors, clean
