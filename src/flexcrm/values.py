"""Tagged record values reconstructed from field definitions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Union

TEXT_TYPES = ("text", "textarea", "email", "url", "relation")
CHOICE_TYPES = ("select", "radio")

_TRUE_STRINGS = {"true", "1", "on", "yes"}
_FALSE_STRINGS = {"false", "0", "off", "no"}


@dataclass(frozen=True)
class Text:
    value: str
    kind: str = "text"


@dataclass(frozen=True)
class Number:
    value: Union[int, float]
    kind: str = "number"


@dataclass(frozen=True)
class Boolean:
    value: bool
    kind: str = "boolean"


@dataclass(frozen=True)
class DateValue:
    value: Union[date, datetime]
    kind: str = "date"

    @property
    def has_time(self) -> bool:
        return isinstance(self.value, datetime)


@dataclass(frozen=True)
class OptionRef:
    value: str
    label: str | None = None
    kind: str = "option"


Value = Union[Text, Number, Boolean, DateValue, OptionRef]


def _parse_number(raw: Any) -> Union[int, float]:
    if isinstance(raw, bool):
        raise ValueError("boolean is not a number")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        number = raw
    elif isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            number = float(text)
    else:
        raise ValueError(f"not a number: {raw!r}")
    if not math.isfinite(number):
        raise ValueError(f"not a finite number: {raw!r}")
    return number


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        return date.fromisoformat(raw.strip()[:10])
    raise ValueError(f"not a date: {raw!r}")


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    raise ValueError(f"not a datetime: {raw!r}")


def _option_label(options: Any, value: str) -> str | None:
    for opt in options or []:
        if isinstance(opt, dict) and str(opt.get("value")) == value:
            return opt.get("label")
    return None


def decode_value(field: dict, raw: Any) -> Value | None:
    """Build the tagged value for ``raw`` according to ``field["type"]``.

    Returns None for missing values (None or empty string). Raises ValueError
    when ``raw`` cannot be read as the field's type.
    """
    if raw is None or raw == "":
        return None
    ftype = field.get("type") or "text"
    if ftype == "number":
        return Number(_parse_number(raw))
    if ftype == "checkbox":
        return Boolean(_parse_bool(raw))
    if ftype == "date":
        return DateValue(_parse_date(raw))
    if ftype == "datetime":
        return DateValue(_parse_datetime(raw))
    if ftype in CHOICE_TYPES:
        value = str(raw)
        return OptionRef(value, _option_label(field.get("options"), value))
    if isinstance(raw, (dict, list)):
        raise ValueError(f"not a text value: {raw!r}")
    return Text(str(raw))


def encode_value(value: Value | None) -> Any:
    if value is None:
        return None
    if isinstance(value, DateValue):
        return value.value.isoformat()
    return value.value


_SYSTEM_FIELDS = {
    "id": {"name": "id", "type": "text"},
    "created_at": {"name": "created_at", "type": "datetime"},
    "created_by": {"name": "created_by", "type": "text"},
}


def decode_record(fields: List[dict], row: dict) -> Dict[str, Value | None]:
    """Reconstruct a typed view of ``row`` from the entity's field definitions.

    Columns without a field definition are dropped, except the system columns.
    Values that do not parse as their declared type fall back to Text so a bad
    row never breaks a read.
    """
    by_name = dict(_SYSTEM_FIELDS)
    for field in fields or []:
        if isinstance(field, dict) and field.get("name"):
            by_name[field["name"]] = field
    typed: Dict[str, Value | None] = {}
    for name, raw in (row or {}).items():
        field = by_name.get(name)
        if field is None:
            continue
        try:
            typed[name] = decode_value(field, raw)
        except ValueError:
            typed[name] = Text(str(raw))
    return typed
