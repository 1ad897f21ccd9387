"""Generic record CRUD over tables named at run time."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from flexcrm.errors import BackendError
from flexcrm.validation import validate_record_payload
from flexcrm.values import decode_record


logger = logging.getLogger("flexcrm.records")


class RecordStore:
    """Caches rows per entity name; knows nothing about any entity's columns.

    Writes are validated only when the caller passes the entity's field
    definitions. Rejected writes leave the issues in ``validation_errors``.
    """

    def __init__(self, backend) -> None:
        self._backend = backend
        self.records: Dict[str, List[dict]] = {}
        self.current_record: dict | None = None
        self.is_loading = False
        self.error: str | None = None
        self.validation_errors: List[dict] = []

    def _begin(self) -> None:
        self.is_loading = True
        self.error = None
        self.validation_errors = []

    def _done(self) -> None:
        self.is_loading = False

    def _fail(self, op: str, entity_name: str, exc: Exception) -> None:
        self.error = str(exc)
        self.is_loading = False
        logger.warning("records_%s_failed entity=%s error=%s", op, entity_name, exc)

    def _reject(self, op: str, entity_name: str, errors: List[dict]) -> None:
        self.validation_errors = errors
        self.error = errors[0].get("message") if errors else "Validation failed"
        self.is_loading = False
        logger.info("records_%s_rejected entity=%s codes=%s", op, entity_name, [e.get("code") for e in errors])

    def cached(self, entity_name: str) -> List[dict]:
        return copy.deepcopy(self.records.get(entity_name, []))

    def typed_records(self, entity_name: str, fields: List[dict]) -> List[Dict[str, Any]]:
        return [decode_record(fields, row) for row in self.records.get(entity_name, [])]

    async def fetch_records(self, entity_name: str) -> List[dict]:
        self._begin()
        try:
            rows = await self._backend.select(entity_name)
        except BackendError as exc:
            self._fail("fetch", entity_name, exc)
            return []
        self.records[entity_name] = rows
        self._done()
        return copy.deepcopy(rows)

    async def fetch_record(self, entity_name: str, record_id: Any) -> dict | None:
        self._begin()
        try:
            row = await self._backend.select_single(entity_name, {"id": record_id})
        except BackendError as exc:
            self._fail("fetch_one", entity_name, exc)
            return None
        self.current_record = row
        self._done()
        return copy.deepcopy(row)

    async def create_record(self, entity_name: str, data: dict, fields: List[dict] | None = None) -> dict | None:
        self._begin()
        if fields is not None:
            errors, data = validate_record_payload(fields, data, for_create=True, existing=self.records.get(entity_name))
            if errors:
                self._reject("create", entity_name, errors)
                return None
        try:
            row = await self._backend.insert(entity_name, data)
        except BackendError as exc:
            self._fail("create", entity_name, exc)
            return None
        self.records[entity_name] = [*self.records.get(entity_name, []), row]
        self._done()
        return copy.deepcopy(row)

    async def update_record(
        self,
        entity_name: str,
        record_id: Any,
        data: dict,
        fields: List[dict] | None = None,
    ) -> dict | None:
        self._begin()
        if fields is not None:
            errors, data = validate_record_payload(
                fields,
                data,
                for_create=False,
                existing=self.records.get(entity_name),
                record_id=record_id,
            )
            if errors:
                self._reject("update", entity_name, errors)
                return None
        try:
            row = await self._backend.update(entity_name, record_id, data)
        except BackendError as exc:
            self._fail("update", entity_name, exc)
            return None
        if entity_name in self.records:
            self.records[entity_name] = [
                row if str(r.get("id")) == str(record_id) else r for r in self.records[entity_name]
            ]
        if self.current_record is not None and str(self.current_record.get("id")) == str(record_id):
            self.current_record = row
        self._done()
        return copy.deepcopy(row)

    async def delete_record(self, entity_name: str, record_id: Any) -> bool:
        self._begin()
        try:
            await self._backend.delete(entity_name, record_id)
        except BackendError as exc:
            self._fail("delete", entity_name, exc)
            return False
        self.records[entity_name] = [
            r for r in self.records.get(entity_name, []) if str(r.get("id")) != str(record_id)
        ]
        if self.current_record is not None and str(self.current_record.get("id")) == str(record_id):
            self.current_record = None
        self._done()
        return True
