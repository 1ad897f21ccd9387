"""Two-step entity creation: metadata row, then physical table."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List

from flexcrm.errors import InvalidTransition


METADATA_CREATED = "metadata_created"
TABLE_PROVISIONED = "table_provisioned"
PROVISIONING_FAILED = "provisioning_failed"
ROLLED_BACK = "rolled_back"

_TRANSITIONS: Dict[str, set] = {
    METADATA_CREATED: {TABLE_PROVISIONED, PROVISIONING_FAILED},
    PROVISIONING_FAILED: {TABLE_PROVISIONED, PROVISIONING_FAILED, ROLLED_BACK},
    TABLE_PROVISIONED: set(),
    ROLLED_BACK: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EntityCreation:
    """Tracks one entity through metadata insert and table provisioning.

    The two network calls are not atomic. A failed provisioning step leaves
    the metadata row in place and the creation in ``provisioning_failed``
    until it is retried or rolled back.
    """

    def __init__(self, entity: dict) -> None:
        now = _now()
        self.entity = copy.deepcopy(entity)
        self.state = METADATA_CREATED
        self.error: str | None = None
        self.history: List[dict] = [
            {"at": now, "from_state": None, "to_state": METADATA_CREATED, "detail": None}
        ]

    @property
    def entity_id(self) -> Any:
        return self.entity.get("id")

    @property
    def needs_cleanup(self) -> bool:
        return self.state == PROVISIONING_FAILED

    @property
    def done(self) -> bool:
        return self.state in (TABLE_PROVISIONED, ROLLED_BACK)

    def _move(self, to_state: str, detail: dict | None = None) -> None:
        if to_state not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"cannot move entity creation from {self.state} to {to_state}")
        self.history.append({"at": _now(), "from_state": self.state, "to_state": to_state, "detail": detail})
        self.state = to_state

    def provisioned(self) -> None:
        self._move(TABLE_PROVISIONED)
        self.error = None

    def failed(self, message: str) -> None:
        self._move(PROVISIONING_FAILED, {"error": message})
        self.error = message

    def rolled_back(self) -> None:
        self._move(ROLLED_BACK)

    def to_dict(self) -> dict:
        return {
            "entity": copy.deepcopy(self.entity),
            "state": self.state,
            "error": self.error,
            "needs_cleanup": self.needs_cleanup,
            "history": copy.deepcopy(self.history),
        }
