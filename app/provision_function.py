"""Entity table provisioning function.

Deployed next to the database with a privileged DSN. Receives
``{"entityName": ..., "fields": [...]}`` and creates the table with the
system columns, the requested typed columns and row-level security policies.
Callers must send a bearer token that verifies against the project JWKS.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, List

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose.exceptions import JWTError

from app.auth import _get_bearer_token, jwks_verifier
from app.db import execute, get_conn
from flexcrm.naming import is_valid_entity_name


logger = logging.getLogger("flexcrm.provision")

INVALID_NAME_MESSAGE = "Invalid entity name. Use only lowercase letters, numbers, and underscores."

SQL_TYPES = {
    "text": "TEXT",
    "textarea": "TEXT",
    "email": "TEXT",
    "url": "TEXT",
    "number": "NUMERIC",
    "date": "DATE",
    "datetime": "TIMESTAMPTZ",
    "checkbox": "BOOLEAN",
    "boolean": "BOOLEAN",
}


def sql_type(field_type: Any) -> str:
    return SQL_TYPES.get(str(field_type or "").lower(), "TEXT")


def _column(field: dict) -> str:
    name = field.get("name")
    if not isinstance(name, str) or not is_valid_entity_name(name):
        raise ValueError(f"Invalid field name: {name}")
    column = f"{name} {sql_type(field.get('type'))}"
    if field.get("required"):
        column += " NOT NULL"
    if field.get("unique"):
        column += " UNIQUE"
    return column


def build_create_table_sql(entity_name: str, fields: List[dict] | None = None) -> str:
    if not isinstance(entity_name, str) or not is_valid_entity_name(entity_name):
        raise ValueError(INVALID_NAME_MESSAGE)
    columns = [
        "id UUID PRIMARY KEY DEFAULT gen_random_uuid()",
        "created_at TIMESTAMPTZ DEFAULT now()",
        "created_by UUID NOT NULL REFERENCES auth.users(id)",
    ]
    columns.extend(_column(f) for f in fields or [] if isinstance(f, dict))
    body = ",\n  ".join(columns)
    n = entity_name
    return (
        f"CREATE TABLE IF NOT EXISTS {n} (\n  {body}\n);\n"
        f"ALTER TABLE {n} ENABLE ROW LEVEL SECURITY;\n"
        f'CREATE POLICY "Users can read all {n}" ON {n} FOR SELECT TO authenticated USING (true);\n'
        f'CREATE POLICY "Users can insert their own {n}" ON {n} FOR INSERT TO authenticated '
        "WITH CHECK (auth.uid() = created_by);\n"
        f'CREATE POLICY "Users can update their own {n}" ON {n} FOR UPDATE TO authenticated '
        "USING (auth.uid() = created_by) WITH CHECK (auth.uid() = created_by);\n"
        f'CREATE POLICY "Users can delete their own {n}" ON {n} FOR DELETE TO authenticated '
        "USING (auth.uid() = created_by);\n"
    )


def _env_verifier() -> Callable[[str], dict]:
    url = os.getenv("SUPABASE_URL", "").strip()
    if url:
        return jwks_verifier(url)

    def reject(token: str) -> dict:
        raise JWTError("SUPABASE_URL is not configured")

    return reject


def create_function_app(verify: Callable[[str], dict] | None = None) -> FastAPI:
    verify = verify or _env_verifier()
    fn = FastAPI(title="create-entity-table")
    fn.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    @fn.post("/")
    @fn.post("/functions/v1/create-entity-table")
    async def create_entity_table(request: Request):
        token = _get_bearer_token(request)
        if not token:
            logger.warning("provision_unauthorized reason=missing_token")
            return JSONResponse({"error": "Missing authorization header"}, status_code=401)
        try:
            claims = verify(token)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning("provision_unauthorized error=%s", exc)
            return JSONResponse({"error": "Invalid JWT"}, status_code=401)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        entity_name = body.get("entityName")
        try:
            sql = build_create_table_sql(entity_name, body.get("fields") or [])
            with get_conn() as conn:
                execute(conn, sql, query_name="create_entity_table")
        except ValueError as exc:
            logger.info("provision_rejected entity=%s error=%s", entity_name, exc)
            return JSONResponse({"error": str(exc)}, status_code=400)
        except Exception as exc:
            logger.warning("provision_failed entity=%s error=%s", entity_name, exc)
            return JSONResponse({"error": str(exc)}, status_code=400)
        logger.info("provision_ok entity=%s user=%s", entity_name, claims.get("sub"))
        return JSONResponse({"message": "Table created successfully"}, status_code=200)

    return fn


app = create_function_app()
