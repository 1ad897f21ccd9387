"""In-memory backend, provisioner and auth client for dev and tests."""

from __future__ import annotations

import copy
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from jose import jwt
from jose.exceptions import JWTError

from app.auth import AuthError
from flexcrm.errors import BackendError, ProvisioningError
from flexcrm.naming import is_valid_entity_name


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(row: dict, filters: dict | None) -> bool:
    for column, value in (filters or {}).items():
        if str(row.get(column)) != str(value):
            return False
    return True


def _order_value(row: dict, column: str) -> Tuple[int, Any]:
    value = row.get(column)
    if value is None:
        return (1, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (0, str(value))


class _Table:
    def __init__(self, columns: List[str] | None = None, unique: List[Tuple[str, ...]] | None = None) -> None:
        self.columns = list(columns) if columns is not None else None
        self.unique = list(unique or [])
        self.rows: Dict[str, dict] = {}


class MemoryDataBackend:
    """Table-oriented store answering the same calls as the PostgREST client.

    Tables must exist before use; the metadata tables are created up front and
    entity tables are added by the provisioner. Column sets are enforced when
    a table declares them, NOT NULL and foreign keys are not.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, _Table] = {}
        self.create_table("entity_definitions", unique=[("name",)])
        self.create_table("field_definitions", unique=[("entity_id", "name")])
        self.create_table("layout_definitions")
        self.create_table("users")

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def create_table(self, name: str, columns: List[str] | None = None, unique: List[Tuple[str, ...]] | None = None) -> None:
        if name not in self._tables:
            self._tables[name] = _Table(columns, unique)

    def add_columns(self, name: str, columns: List[str]) -> None:
        table = self._table(name)
        if table.columns is not None:
            table.columns.extend(c for c in columns if c not in table.columns)

    def _table(self, name: str) -> _Table:
        table = self._tables.get(name)
        if table is None:
            raise BackendError(f'relation "public.{name}" does not exist')
        return table

    def _check_columns(self, table: _Table, name: str, row: dict) -> None:
        if table.columns is None:
            return
        for column in row.keys():
            if column not in table.columns:
                raise BackendError(f"Could not find the '{column}' column of '{name}' in the schema cache")

    def _check_unique(self, table: _Table, row: dict, row_id: str | None) -> None:
        for columns in table.unique:
            key = tuple(row.get(c) for c in columns)
            if any(v is None for v in key):
                continue
            for other_id, other in table.rows.items():
                if other_id == row_id:
                    continue
                if tuple(other.get(c) for c in columns) == key:
                    raise BackendError(f"duplicate key value violates unique constraint ({', '.join(columns)})")

    async def select(self, table: str, filters: dict | None = None, order: str | None = None) -> List[dict]:
        rows = [copy.deepcopy(r) for r in self._table(table).rows.values() if _matches(r, filters)]
        if order:
            rows.sort(key=lambda r: _order_value(r, order))
        return rows

    async def select_single(self, table: str, filters: dict) -> dict:
        rows = await self.select(table, filters)
        if len(rows) != 1:
            raise BackendError("JSON object requested, multiple (or no) rows returned")
        return rows[0]

    async def insert(self, table: str, row: dict) -> dict:
        target = self._table(table)
        self._check_columns(target, table, row)
        record = copy.deepcopy(row)
        record["id"] = str(record.get("id") or uuid.uuid4())
        record.setdefault("created_at", _now())
        if record["id"] in target.rows:
            raise BackendError("duplicate key value violates unique constraint (id)")
        self._check_unique(target, record, None)
        target.rows[record["id"]] = record
        return copy.deepcopy(record)

    async def update(self, table: str, row_id: Any, changes: dict) -> dict:
        target = self._table(table)
        self._check_columns(target, table, changes)
        existing = target.rows.get(str(row_id))
        if existing is None:
            raise BackendError("JSON object requested, multiple (or no) rows returned")
        updated = {**copy.deepcopy(existing), **copy.deepcopy(changes), "id": existing["id"]}
        self._check_unique(target, updated, existing["id"])
        target.rows[existing["id"]] = updated
        return copy.deepcopy(updated)

    async def delete(self, table: str, row_id: Any) -> None:
        target = self._table(table)
        target.rows.pop(str(row_id), None)


class MemoryProvisioner:
    """Creates entity tables inside a MemoryDataBackend."""

    def __init__(self, backend: MemoryDataBackend) -> None:
        self._backend = backend
        self.calls: List[dict] = []

    async def create_table(self, entity_name: str, fields: List[dict]) -> dict:
        self.calls.append({"entityName": entity_name, "fields": copy.deepcopy(fields or [])})
        if not is_valid_entity_name(entity_name):
            raise ProvisioningError("Invalid entity name. Use only lowercase letters, numbers, and underscores.")
        unique = [(f["name"],) for f in fields or [] if f.get("unique")]
        self._backend.create_table(entity_name, unique=unique)
        return {"message": "Table created successfully"}


class MemoryAuthClient:
    """Password auth against an in-process user list.

    Access tokens are HS256 JWTs signed with a per-instance secret so the
    session guard can verify them the same way as real tokens.
    """

    def __init__(self, secret: str | None = None, ttl_s: int = 3600) -> None:
        self._secret = secret or uuid.uuid4().hex
        self._ttl_s = ttl_s
        self._users: Dict[str, dict] = {}
        self.revoked: set = set()
        self.reset_requests: List[dict] = []

    def _issue_session(self, user: dict) -> dict:
        now = int(time.time())
        claims = {
            "sub": user["id"],
            "email": user["email"],
            "role": "authenticated",
            "iat": now,
            "exp": now + self._ttl_s,
            "session_id": uuid.uuid4().hex,
            "user_metadata": copy.deepcopy(user.get("user_metadata") or {}),
        }
        token = jwt.encode(claims, self._secret, algorithm="HS256")
        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_in": self._ttl_s,
            "expires_at": claims["exp"],
            "refresh_token": uuid.uuid4().hex,
            "user": self._public_user(user),
        }

    def _public_user(self, user: dict) -> dict:
        return {"id": user["id"], "email": user["email"], "user_metadata": copy.deepcopy(user.get("user_metadata") or {})}

    def verify_token(self, token: str) -> dict:
        if token in self.revoked:
            raise JWTError("Token revoked")
        return jwt.decode(token, self._secret, algorithms=["HS256"])

    def _user_for_token(self, token: str) -> dict:
        try:
            claims = self.verify_token(token)
        except JWTError as exc:
            raise AuthError("Invalid JWT") from exc
        for user in self._users.values():
            if user["id"] == claims.get("sub"):
                return user
        raise AuthError("User not found")

    async def sign_in_with_password(self, email: str, password: str) -> dict:
        user = self._users.get((email or "").lower())
        if user is None or user["password"] != password:
            raise AuthError("Invalid login credentials")
        return self._issue_session(user)

    async def sign_up(self, email: str, password: str, data: dict | None = None) -> dict:
        key = (email or "").lower()
        if not key or "@" not in key:
            raise AuthError("Unable to validate email address: invalid format")
        if len(password or "") < 6:
            raise AuthError("Password should be at least 6 characters")
        if key in self._users:
            raise AuthError("User already registered")
        user = {"id": str(uuid.uuid4()), "email": email, "password": password, "user_metadata": copy.deepcopy(data or {})}
        self._users[key] = user
        return self._issue_session(user)

    async def sign_out(self, access_token: str) -> None:
        self.revoked.add(access_token)

    async def reset_password_for_email(self, email: str, redirect_to: str | None = None) -> None:
        self.reset_requests.append({"email": email, "redirect_to": redirect_to})

    async def update_user(self, access_token: str, attributes: dict) -> dict:
        user = self._user_for_token(access_token)
        if "password" in attributes:
            if len(attributes["password"] or "") < 6:
                raise AuthError("Password should be at least 6 characters")
            user["password"] = attributes["password"]
        return self._public_user(user)
