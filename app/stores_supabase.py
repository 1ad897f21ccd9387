"""Supabase adapters: PostgREST data backend, edge-function provisioner, GoTrue auth."""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List
from urllib.parse import quote

import httpx

from app.auth import AuthError
from flexcrm.errors import BackendError, ProvisioningError


logger = logging.getLogger("flexcrm.http")

PROVISION_FUNCTION = "create-entity-table"
_SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def _timeout() -> float:
    try:
        return float(os.getenv("CRM_HTTP_TIMEOUT", "30"))
    except ValueError:
        return 30.0


def _error_message(res: httpx.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        return res.text or f"HTTP {res.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error_description", "msg", "error"):
            if body.get(key):
                return str(body[key])
    return res.text or f"HTTP {res.status_code}"


def _json(res: httpx.Response, error: type) -> Any:
    try:
        return res.json()
    except ValueError as exc:
        logger.warning("invalid_json_response status=%s", res.status_code)
        raise error(f"Invalid JSON response (HTTP {res.status_code})") from exc


class _SupabaseClient:
    def __init__(self, url: str, anon_key: str, token_getter: Callable[[], str | None] | None = None) -> None:
        self._url = url.strip().rstrip("/")
        self._anon_key = anon_key.strip()
        self._token_getter = token_getter

    def _headers(self, token: str | None = None, extra: dict | None = None) -> dict:
        bearer = token or (self._token_getter() if self._token_getter else None) or self._anon_key
        headers = {"apikey": self._anon_key, "Authorization": f"Bearer {bearer}"}
        headers.update(extra or {})
        return headers


class PostgrestBackend(_SupabaseClient):
    """Structured-data calls against ``/rest/v1``."""

    def _table_url(self, table: str) -> str:
        return f"{self._url}/rest/v1/{quote(table, safe='')}"

    async def _request(self, method: str, table: str, params: dict | None = None, json: Any = None, headers: dict | None = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=_timeout()) as client:
                res = await client.request(method, self._table_url(table), params=params, json=json, headers=self._headers(extra=headers))
        except httpx.HTTPError as exc:
            logger.warning("postgrest_request_failed method=%s table=%s error=%s", method, table, exc)
            raise BackendError(str(exc)) from exc
        if res.status_code >= 400:
            message = _error_message(res)
            logger.warning("postgrest_error method=%s table=%s status=%s error=%s", method, table, res.status_code, message)
            raise BackendError(message)
        return res

    @staticmethod
    def _filters(filters: dict | None) -> Dict[str, str]:
        return {column: f"eq.{value}" for column, value in (filters or {}).items()}

    async def select(self, table: str, filters: dict | None = None, order: str | None = None) -> List[dict]:
        params = {"select": "*", **self._filters(filters)}
        if order:
            params["order"] = f"{order}.asc"
        res = await self._request("GET", table, params=params)
        return _json(res, BackendError)

    async def select_single(self, table: str, filters: dict) -> dict:
        params = {"select": "*", **self._filters(filters)}
        res = await self._request("GET", table, params=params, headers={"Accept": _SINGLE_OBJECT})
        return _json(res, BackendError)

    async def insert(self, table: str, row: dict) -> dict:
        res = await self._request(
            "POST",
            table,
            params={"select": "*"},
            json=row,
            headers={"Prefer": "return=representation", "Accept": _SINGLE_OBJECT},
        )
        return _json(res, BackendError)

    async def update(self, table: str, row_id: Any, changes: dict) -> dict:
        res = await self._request(
            "PATCH",
            table,
            params={"select": "*", "id": f"eq.{row_id}"},
            json=changes,
            headers={"Prefer": "return=representation", "Accept": _SINGLE_OBJECT},
        )
        return _json(res, BackendError)

    async def delete(self, table: str, row_id: Any) -> None:
        await self._request("DELETE", table, params={"id": f"eq.{row_id}"})


class EdgeFunctionProvisioner(_SupabaseClient):
    """Invokes the table-provisioning function with the caller's token."""

    async def create_table(self, entity_name: str, fields: List[dict]) -> dict:
        url = f"{self._url}/functions/v1/{PROVISION_FUNCTION}"
        payload = {"entityName": entity_name, "fields": fields or []}
        try:
            async with httpx.AsyncClient(timeout=_timeout()) as client:
                res = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise ProvisioningError(str(exc)) from exc
        if res.status_code >= 400:
            raise ProvisioningError(_error_message(res))
        logger.info("provision_function_ok entity=%s", entity_name)
        return _json(res, ProvisioningError)


class SupabaseAuthClient(_SupabaseClient):
    """GoTrue endpoints under ``/auth/v1``."""

    async def _call(self, method: str, path: str, token: str | None = None, json: Any = None, params: dict | None = None) -> dict:
        url = f"{self._url}/auth/v1/{path}"
        try:
            async with httpx.AsyncClient(timeout=_timeout()) as client:
                res = await client.request(method, url, json=json, params=params, headers=self._headers(token=token))
        except httpx.HTTPError as exc:
            raise AuthError(str(exc)) from exc
        if res.status_code >= 400:
            raise AuthError(_error_message(res))
        if not res.content:
            return {}
        return _json(res, AuthError)

    async def sign_in_with_password(self, email: str, password: str) -> dict:
        return await self._call("POST", "token", json={"email": email, "password": password}, params={"grant_type": "password"})

    async def sign_up(self, email: str, password: str, data: dict | None = None) -> dict:
        body = await self._call("POST", "signup", json={"email": email, "password": password, "data": data or {}})
        # with email confirmation on, signup returns the bare user
        if "user" not in body and body.get("id"):
            return {"user": body}
        return body

    async def sign_out(self, access_token: str) -> None:
        await self._call("POST", "logout", token=access_token)

    async def reset_password_for_email(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._call("POST", "recover", json={"email": email}, params=params)

    async def update_user(self, access_token: str, attributes: dict) -> dict:
        return await self._call("PUT", "user", token=access_token, json=attributes)
