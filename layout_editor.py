"""In-memory layout definition editing with explicit save."""

from __future__ import annotations

import copy
from typing import Any, Dict, List

from form_renderer import pick_layout, reconcile_definition
from metadata_store import MetadataStore, default_layout_definition, field_ref
from flexcrm.naming import SYSTEM_COLUMNS
from flexcrm.validation import LAYOUT_TYPES


Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class LayoutEditor:
    """Holds one working layout definition for an entity.

    Mutations only touch the working copy; ``save`` (or ``create``) writes it
    through the metadata store. Every mutation returns
    ``{"ok", "errors", "definition"}``.
    """

    def __init__(self, metadata: MetadataStore, entity_id: Any) -> None:
        self._metadata = metadata
        self.entity_id = entity_id
        self.selected_layout_id: Any = None
        self.definition: dict = {"sections": []}
        self.dropped_field_ids: List[Any] = []

    def _fields(self) -> List[dict]:
        return self._metadata.fields.get(str(self.entity_id), [])

    def _layouts(self) -> List[dict]:
        return self._metadata.layouts.get(str(self.entity_id), [])

    def _result(self, errors: List[Issue] | None = None) -> dict:
        return {"ok": not errors, "errors": errors or [], "definition": copy.deepcopy(self.definition)}

    def load(self) -> dict:
        """Start from the default layout, else the first one, else all fields."""
        layout = pick_layout(self._layouts())
        if layout and isinstance(layout.get("definition"), dict):
            return self.select_layout(layout.get("id"))
        self.selected_layout_id = None
        self.definition = default_layout_definition(self._fields())
        self.dropped_field_ids = []
        return self._result()

    def select_layout(self, layout_id: Any) -> dict:
        for layout in self._layouts():
            if str(layout.get("id")) == str(layout_id):
                self.selected_layout_id = layout.get("id")
                definition = layout.get("definition") if isinstance(layout.get("definition"), dict) else {"sections": []}
                self.definition, self.dropped_field_ids = reconcile_definition(definition, self._fields())
                return self._result()
        return self._result([_issue("LAYOUT_NOT_FOUND", "Layout not found", "layout_id")])

    def _section(self, index: Any) -> dict | None:
        sections = self.definition.get("sections") or []
        if isinstance(index, int) and 0 <= index < len(sections):
            return sections[index]
        return None

    def add_section(self, title: str | None = None) -> dict:
        sections = self.definition.setdefault("sections", [])
        sections.append({"title": title or f"Section {len(sections) + 1}", "columns": 2, "fields": []})
        return self._result()

    def remove_section(self, section_index: int) -> dict:
        if self._section(section_index) is None:
            return self._result([_issue("SECTION_NOT_FOUND", "Section not found", "section_index")])
        del self.definition["sections"][section_index]
        return self._result()

    def set_title(self, section_index: int, title: str) -> dict:
        section = self._section(section_index)
        if section is None:
            return self._result([_issue("SECTION_NOT_FOUND", "Section not found", "section_index")])
        section["title"] = title
        return self._result()

    def set_columns(self, section_index: int, columns: Any) -> dict:
        section = self._section(section_index)
        if section is None:
            return self._result([_issue("SECTION_NOT_FOUND", "Section not found", "section_index")])
        try:
            value = int(columns)
        except (TypeError, ValueError):
            value = 0
        if value not in (1, 2, 3):
            return self._result([_issue("INVALID_COLUMNS", "columns must be 1, 2 or 3", "columns")])
        section["columns"] = value
        return self._result()

    def available_fields(self) -> List[dict]:
        placed = set()
        for section in self.definition.get("sections") or []:
            for ref in section.get("fields") or []:
                placed.add(str(ref.get("id")))
        return [
            f for f in self._fields()
            if f.get("name") not in SYSTEM_COLUMNS and str(f.get("id")) not in placed
        ]

    def add_field(self, section_index: int) -> dict:
        section = self._section(section_index)
        if section is None:
            return self._result([_issue("SECTION_NOT_FOUND", "Section not found", "section_index")])
        available = self.available_fields()
        if not available:
            return self._result([_issue("NO_FIELDS_AVAILABLE", "No more fields available to add", "fields")])
        section.setdefault("fields", []).append(field_ref(available[0]))
        return self._result()

    def _field_at(self, section_index: int, field_index: int) -> dict | None:
        section = self._section(section_index)
        refs = section.get("fields") if section else None
        if isinstance(refs, list) and isinstance(field_index, int) and 0 <= field_index < len(refs):
            return refs[field_index]
        return None

    def remove_field(self, section_index: int, field_index: int) -> dict:
        if self._field_at(section_index, field_index) is None:
            return self._result([_issue("FIELD_NOT_FOUND", "Field not found in section", "field_index")])
        del self.definition["sections"][section_index]["fields"][field_index]
        return self._result()

    def toggle_visibility(self, section_index: int, field_index: int) -> dict:
        ref = self._field_at(section_index, field_index)
        if ref is None:
            return self._result([_issue("FIELD_NOT_FOUND", "Field not found in section", "field_index")])
        ref["is_visible"] = not ref.get("is_visible", True)
        return self._result()

    def apply(self, op: dict) -> dict:
        """Dispatch one mutation described as ``{"op": ..., ...}``."""
        name = op.get("op") if isinstance(op, dict) else None
        section_index = op.get("section_index") if isinstance(op, dict) else None
        field_index = op.get("field_index") if isinstance(op, dict) else None
        if name == "add_section":
            return self.add_section(op.get("title"))
        if name == "remove_section":
            return self.remove_section(section_index)
        if name == "set_title":
            return self.set_title(section_index, op.get("title") or "")
        if name == "set_columns":
            return self.set_columns(section_index, op.get("columns"))
        if name == "add_field":
            return self.add_field(section_index)
        if name == "remove_field":
            return self.remove_field(section_index, field_index)
        if name == "toggle_visibility":
            return self.toggle_visibility(section_index, field_index)
        if name == "select_layout":
            return self.select_layout(op.get("layout_id"))
        if name == "reset":
            return self.load()
        return self._result([_issue("UNSUPPORTED_OP", f"Unsupported layout op: {name}", "op")])

    async def save(self) -> dict:
        if self.selected_layout_id is None:
            return self._result([_issue("NO_LAYOUT_SELECTED", "Select or create a layout before saving", "layout_id")])
        row = await self._metadata.update_layout(self.selected_layout_id, {"definition": copy.deepcopy(self.definition)})
        if row is None:
            return self._result([_issue("BACKEND_ERROR", self._metadata.error or "Failed to update layout")])
        return {**self._result(), "layout": row}

    async def create(self, name: str, layout_type: str = "detail", is_default: bool = False, created_by: Any = None) -> dict:
        errors = []
        if not name:
            errors.append(_issue("NAME_REQUIRED", "Layout Name is required", "name"))
        if layout_type not in LAYOUT_TYPES:
            errors.append(_issue("INVALID_TYPE", f"type must be one of {list(LAYOUT_TYPES)}", "type"))
        if errors:
            return self._result(errors)
        layout = {
            "entity_id": self.entity_id,
            "name": name,
            "type": layout_type,
            "definition": copy.deepcopy(self.definition),
            "is_default": bool(is_default),
        }
        if created_by is not None:
            layout["created_by"] = created_by
        row = await self._metadata.create_layout(layout)
        if row is None:
            return self._result([_issue("BACKEND_ERROR", self._metadata.error or "Failed to create layout")])
        self.selected_layout_id = row.get("id")
        return {**self._result(), "layout": row}
