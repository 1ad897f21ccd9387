"""Entity, field and layout definitions cached over the data backend."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from entity_creation import EntityCreation
from flexcrm.errors import BackendError, NotFoundError
from flexcrm.naming import SYSTEM_COLUMNS, parse_options, slugify_name
from flexcrm.values import CHOICE_TYPES


ENTITY_TABLE = "entity_definitions"
FIELD_TABLE = "field_definitions"
LAYOUT_TABLE = "layout_definitions"

logger = logging.getLogger("flexcrm.metadata")


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "on", "yes")
    return bool(value)


def entity_from_form(form: dict) -> dict:
    return {
        "name": slugify_name(form.get("name") or ""),
        "label": form.get("label"),
        "description": form.get("description") or None,
        "icon": form.get("icon") or None,
        "is_system": False,
    }


def entity_changes_from_form(entity: dict, form: dict) -> dict:
    """Build the update for an entity edit.

    System entities keep their stored name whatever was submitted.
    """
    changes = {}
    if "label" in form:
        changes["label"] = form.get("label")
    for key in ("description", "icon"):
        if key in form:
            changes[key] = form.get(key) or None
    if entity.get("is_system"):
        changes["name"] = entity.get("name")
    elif "name" in form:
        changes["name"] = slugify_name(form.get("name") or "")
    return changes


def options_text(field: dict) -> str:
    labels = [opt.get("label", "") for opt in field.get("options") or [] if isinstance(opt, dict)]
    return ", ".join(labels)


def field_from_form(entity_id: Any, form: dict, display_order: int) -> dict:
    ftype = form.get("type") or "text"
    options = None
    if ftype in CHOICE_TYPES and form.get("options"):
        options = parse_options(form.get("options"))
    return {
        "entity_id": entity_id,
        "name": slugify_name(form.get("name") or ""),
        "label": form.get("label"),
        "type": ftype,
        "is_required": _bool(form.get("is_required")),
        "is_unique": _bool(form.get("is_unique")),
        "default_value": form.get("default_value") or None,
        "options": options,
        "display_order": display_order,
    }


def field_changes_from_form(field: dict, form: dict) -> dict:
    changes: dict = {}
    if "name" in form:
        changes["name"] = slugify_name(form.get("name") or "")
    if "label" in form:
        changes["label"] = form.get("label")
    if "type" in form:
        changes["type"] = form.get("type")
    for key in ("is_required", "is_unique"):
        if key in form:
            changes[key] = _bool(form.get(key))
    if "default_value" in form:
        changes["default_value"] = form.get("default_value") or None
    if "display_order" in form:
        changes["display_order"] = int(form.get("display_order"))
    ftype = changes.get("type", field.get("type"))
    if "options" in form:
        options = form.get("options")
        if ftype not in CHOICE_TYPES:
            changes["options"] = None
        elif isinstance(options, list):
            changes["options"] = options
        else:
            changes["options"] = parse_options(options) if options else None
    elif "type" in form and ftype not in CHOICE_TYPES:
        changes["options"] = None
    return changes


def default_layout_definition(fields: List[dict]) -> dict:
    return {
        "sections": [
            {
                "title": "Information",
                "columns": 2,
                "fields": [field_ref(f) for f in fields if f.get("name") not in SYSTEM_COLUMNS],
            }
        ]
    }


def field_ref(field: dict, is_visible: bool = True) -> dict:
    return {
        "id": field.get("id"),
        "name": field.get("name"),
        "label": field.get("label"),
        "type": field.get("type"),
        "is_required": bool(field.get("is_required")),
        "is_visible": is_visible,
    }


class MetadataStore:
    """Caches entity, field and layout definitions.

    Every public coroutine catches backend failures, stores the message in
    ``error`` and returns a falsy sentinel (None, [] or False).
    """

    def __init__(self, backend, provisioner) -> None:
        self._backend = backend
        self._provisioner = provisioner
        self.entities: List[dict] = []
        self.fields: Dict[str, List[dict]] = {}
        self.layouts: Dict[str, List[dict]] = {}
        self.creations: Dict[str, EntityCreation] = {}
        self.is_loading = False
        self.error: str | None = None

    def _begin(self) -> None:
        self.is_loading = True
        self.error = None

    def _done(self) -> None:
        self.is_loading = False

    def _fail(self, op: str, exc: Exception) -> None:
        self.error = str(exc)
        self.is_loading = False
        logger.warning("metadata_%s_failed error=%s", op, exc)

    def get_entity(self, entity_id: Any) -> dict | None:
        for entity in self.entities:
            if str(entity.get("id")) == str(entity_id):
                return copy.deepcopy(entity)
        return None

    def find_entity_by_name(self, name: str) -> dict | None:
        for entity in self.entities:
            if entity.get("name") == name:
                return copy.deepcopy(entity)
        return None

    def _find_cached(self, cache: Dict[str, List[dict]], item_id: Any) -> dict | None:
        for items in cache.values():
            for item in items:
                if str(item.get("id")) == str(item_id):
                    return item
        return None

    def get_field(self, field_id: Any) -> dict | None:
        return copy.deepcopy(self._find_cached(self.fields, field_id))

    def get_layout(self, layout_id: Any) -> dict | None:
        return copy.deepcopy(self._find_cached(self.layouts, layout_id))

    async def fetch_entities(self) -> List[dict]:
        self._begin()
        try:
            rows = await self._backend.select(ENTITY_TABLE, order="name")
        except BackendError as exc:
            self._fail("fetch_entities", exc)
            return []
        self.entities = rows
        self._done()
        return copy.deepcopy(rows)

    async def fetch_fields(self, entity_id: Any) -> List[dict]:
        self._begin()
        try:
            rows = await self._backend.select(FIELD_TABLE, filters={"entity_id": entity_id}, order="display_order")
        except BackendError as exc:
            self._fail("fetch_fields", exc)
            return []
        self.fields[str(entity_id)] = rows
        self._done()
        return copy.deepcopy(rows)

    async def fetch_layouts(self, entity_id: Any) -> List[dict]:
        self._begin()
        try:
            rows = await self._backend.select(LAYOUT_TABLE, filters={"entity_id": entity_id})
        except BackendError as exc:
            self._fail("fetch_layouts", exc)
            return []
        self.layouts[str(entity_id)] = rows
        self._done()
        return copy.deepcopy(rows)

    async def create_entity(self, entity: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.insert(ENTITY_TABLE, entity)
        except BackendError as exc:
            self._fail("create_entity", exc)
            return None
        creation = EntityCreation(row)
        self.creations[str(row.get("id"))] = creation
        logger.info("entity_metadata_created entity=%s id=%s", row.get("name"), row.get("id"))
        return await self._provision(creation)

    async def _provision(self, creation: EntityCreation) -> dict | None:
        name = creation.entity.get("name")
        try:
            await self._provisioner.create_table(name, [])
        except BackendError as exc:
            creation.failed(str(exc))
            self._fail("provision_entity", exc)
            logger.warning("entity_needs_cleanup entity=%s id=%s", name, creation.entity_id)
            return None
        creation.provisioned()
        self.entities = [*self.entities, creation.entity]
        self._done()
        logger.info("entity_table_provisioned entity=%s", name)
        return copy.deepcopy(creation.entity)

    def pending_cleanup(self) -> List[EntityCreation]:
        return [c for c in self.creations.values() if c.needs_cleanup]

    async def retry_provisioning(self, entity_id: Any) -> dict | None:
        self._begin()
        creation = self.creations.get(str(entity_id))
        if creation is None or not creation.needs_cleanup:
            self._fail("retry_provisioning", NotFoundError("No failed entity creation for this id"))
            return None
        return await self._provision(creation)

    async def discard_failed_creation(self, entity_id: Any) -> bool:
        self._begin()
        creation = self.creations.get(str(entity_id))
        if creation is None or not creation.needs_cleanup:
            self._fail("discard_creation", NotFoundError("No failed entity creation for this id"))
            return False
        try:
            await self._backend.delete(ENTITY_TABLE, creation.entity_id)
        except BackendError as exc:
            self._fail("discard_creation", exc)
            return False
        creation.rolled_back()
        self._done()
        logger.info("entity_creation_rolled_back entity=%s", creation.entity.get("name"))
        return True

    async def update_entity(self, entity_id: Any, updates: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.update(ENTITY_TABLE, entity_id, updates)
        except BackendError as exc:
            self._fail("update_entity", exc)
            return None
        self.entities = [row if str(e.get("id")) == str(entity_id) else e for e in self.entities]
        self._done()
        return copy.deepcopy(row)

    async def create_field(self, field: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.insert(FIELD_TABLE, field)
        except BackendError as exc:
            self._fail("create_field", exc)
            return None
        key = str(field.get("entity_id"))
        self.fields[key] = [*self.fields.get(key, []), row]
        self._done()
        return copy.deepcopy(row)

    async def update_field(self, field_id: Any, updates: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.update(FIELD_TABLE, field_id, updates)
        except BackendError as exc:
            self._fail("update_field", exc)
            return None
        key = str(row.get("entity_id"))
        if key in self.fields:
            self.fields[key] = [row if str(f.get("id")) == str(field_id) else f for f in self.fields[key]]
        self._done()
        return copy.deepcopy(row)

    async def delete_field(self, field_id: Any) -> bool:
        self._begin()
        try:
            field = self._find_cached(self.fields, field_id)
            if field is None:
                raise NotFoundError("Field not found")
            await self._backend.delete(FIELD_TABLE, field_id)
        except BackendError as exc:
            self._fail("delete_field", exc)
            return False
        key = str(field.get("entity_id"))
        self.fields[key] = [f for f in self.fields.get(key, []) if str(f.get("id")) != str(field_id)]
        self._done()
        return True

    async def create_layout(self, layout: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.insert(LAYOUT_TABLE, layout)
        except BackendError as exc:
            self._fail("create_layout", exc)
            return None
        key = str(layout.get("entity_id"))
        self.layouts[key] = [*self.layouts.get(key, []), row]
        self._done()
        return copy.deepcopy(row)

    async def update_layout(self, layout_id: Any, updates: dict) -> dict | None:
        self._begin()
        try:
            row = await self._backend.update(LAYOUT_TABLE, layout_id, updates)
        except BackendError as exc:
            self._fail("update_layout", exc)
            return None
        key = str(row.get("entity_id"))
        if key in self.layouts:
            self.layouts[key] = [row if str(item.get("id")) == str(layout_id) else item for item in self.layouts[key]]
        self._done()
        return copy.deepcopy(row)

    async def delete_layout(self, layout_id: Any) -> bool:
        self._begin()
        try:
            layout = self._find_cached(self.layouts, layout_id)
            if layout is None:
                raise NotFoundError("Layout not found")
            await self._backend.delete(LAYOUT_TABLE, layout_id)
        except BackendError as exc:
            self._fail("delete_layout", exc)
            return False
        key = str(layout.get("entity_id"))
        self.layouts[key] = [item for item in self.layouts.get(key, []) if str(item.get("id")) != str(layout_id)]
        self._done()
        return True
