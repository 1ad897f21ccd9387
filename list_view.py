"""List view rules: columns, sorting and free-text search over records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from form_renderer import form_fields
from flexcrm.validation import field_label


MAX_FIELD_COLUMNS = 5
ASC = "asc"
DESC = "desc"
CREATED_AT = "created_at"
RECORD_ACTIONS = ("view", "edit", "delete")


def list_columns(fields: List[dict]) -> List[dict]:
    columns = [
        {"key": f.get("name"), "label": field_label(f), "type": f.get("type"), "sortable": True}
        for f in form_fields(fields)[:MAX_FIELD_COLUMNS]
    ]
    columns.append({"key": CREATED_AT, "label": "Created", "type": "datetime", "sortable": True})
    columns.append({"key": "actions", "label": "Actions", "type": "actions", "sortable": False, "actions": list(RECORD_ACTIONS)})
    return columns


def _timestamp(value: Any) -> float:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return float("nan")
    else:
        return float("nan")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sort_records(records: List[dict], key: str, direction: str = ASC) -> List[dict]:
    """Return ``records`` sorted by one key; equal keys keep their order.

    ``created_at`` compares parsed timestamps (unparseable values last),
    everything else compares string forms.
    """
    reverse = direction == DESC
    if key == CREATED_AT:
        def sort_key(record: dict):
            ts = _timestamp(record.get(CREATED_AT))
            missing = ts != ts
            # keep unparseable timestamps at the end in both directions
            return (missing != reverse, 0.0 if missing else ts)
    else:
        def sort_key(record: dict):
            return _text(record.get(key))
    return sorted(records, key=sort_key, reverse=reverse)


def matches_search(record: dict, term: str) -> bool:
    if not term:
        return True
    needle = term.lower()
    for value in record.values():
        if isinstance(value, str) and needle in value.lower():
            return True
    return False


def search_records(records: List[dict], term: str | None) -> List[dict]:
    return [r for r in records if matches_search(r, term or "")]


class SortState:
    """Current sort key and direction of a list view."""

    def __init__(self, key: str = CREATED_AT, direction: str = DESC) -> None:
        self.key = key
        self.direction = direction

    def toggle(self, key: str) -> None:
        if key == self.key:
            self.direction = ASC if self.direction == DESC else DESC
        else:
            self.key = key
            self.direction = ASC

    def to_dict(self) -> dict:
        return {"key": self.key, "direction": self.direction}


def build_list_view(
    fields: List[dict],
    records: List[dict],
    sort: SortState | None = None,
    term: str | None = None,
) -> Dict[str, Any]:
    sort = sort or SortState()
    columns = list_columns(fields)
    rows = search_records(sort_records(records, sort.key, sort.direction), term)
    return {
        "columns": columns,
        "rows": rows,
        "sort": sort.to_dict(),
        "search": term or "",
        "total": len(records),
        "matched": len(rows),
    }


def dashboard_summary(entities: List[dict], records_by_name: Dict[str, List[dict]], recent_limit: int = 5) -> dict:
    counts = []
    recent = []
    for entity in entities:
        name = entity.get("name")
        rows = records_by_name.get(name) or []
        counts.append({"entity_id": entity.get("id"), "name": name, "label": entity.get("label"), "count": len(rows)})
        for row in rows:
            recent.append({"entity": name, "record": row})
    recent = sorted(recent, key=lambda item: _text(item["record"].get(CREATED_AT)), reverse=True)
    return {"entities": counts, "recent": recent[:recent_limit]}
