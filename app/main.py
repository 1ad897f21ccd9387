"""FlexCRM API service."""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from jose.exceptions import JWTError

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.auth import (  # noqa: E402
    SessionFacade,
    SessionGuardMiddleware,
    clear_session_cookie,
    get_client_token,
    get_request_token,
    jwks_verifier,
    set_session_cookie,
    user_from_claims,
)
from app.pages import render_dashboard, render_form, render_list  # noqa: E402
from app.stores import MemoryAuthClient, MemoryDataBackend, MemoryProvisioner  # noqa: E402
from app.stores_supabase import EdgeFunctionProvisioner, PostgrestBackend, SupabaseAuthClient  # noqa: E402
from form_renderer import build_form, validate_form  # noqa: E402
from layout_editor import LayoutEditor  # noqa: E402
from list_view import ASC, CREATED_AT, DESC, SortState, build_list_view, dashboard_summary  # noqa: E402
from metadata_store import (  # noqa: E402
    MetadataStore,
    entity_changes_from_form,
    entity_from_form,
    field_changes_from_form,
    field_from_form,
    field_ref,
)
from record_store import RecordStore  # noqa: E402
from flexcrm.validation import validate_entity_definition, validate_field_definition  # noqa: E402


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("flexcrm.http")

_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
RESERVED_NAMES = {
    "auth",
    "console",
    "health",
    "settings",
    "users",
    "entity_definitions",
    "field_definitions",
    "layout_definitions",
}


class AppContext:
    """Everything the routes need, built once at startup.

    Sessions are not held here; each request carries its own token.
    """

    def __init__(self, backend, provisioner, auth_client, verify) -> None:
        self.backend = backend
        self.provisioner = provisioner
        self.auth_client = auth_client
        self.verify = verify
        self.metadata = MetadataStore(backend, provisioner)
        self.records = RecordStore(backend)
        self.editors: Dict[str, LayoutEditor] = {}

    def session_for(self, token: str | None = None) -> SessionFacade:
        return SessionFacade(self.auth_client, self.backend, session={"access_token": token} if token else None)


def build_context() -> AppContext:
    if os.getenv("USE_SUPABASE", "").strip() == "1":
        url = os.getenv("SUPABASE_URL", "").strip()
        anon_key = os.getenv("SUPABASE_ANON_KEY", "").strip()
        if not url or not anon_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required when USE_SUPABASE=1")
        auth_client = SupabaseAuthClient(url, anon_key)
        backend = PostgrestBackend(url, anon_key, token_getter=get_request_token)
        provisioner = EdgeFunctionProvisioner(url, anon_key, token_getter=get_request_token)
        logger.info("context_built mode=supabase url=%s", url)
        return AppContext(backend, provisioner, auth_client, jwks_verifier(url))
    backend = MemoryDataBackend()
    auth_client = MemoryAuthClient()
    logger.info("context_built mode=memory")
    return AppContext(backend, MemoryProvisioner(backend), auth_client, auth_client.verify_token)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _errors_response(errors: List[dict], status: int = 400) -> JSONResponse:
    return JSONResponse(jsonable_encoder({"ok": False, "errors": errors, "warnings": []}), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _store_error(store, fallback: str) -> JSONResponse:
    return _error_response("BACKEND_ERROR", store.error or fallback, status=502)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _user_id(request: Request) -> str | None:
    user = getattr(request.state, "user", None)
    if isinstance(user, dict) and user.get("id"):
        return user["id"]
    return None


def _name_issues(name: Any) -> List[dict]:
    if isinstance(name, str) and name in RESERVED_NAMES:
        return [{"code": "INVALID_NAME", "message": f"{name} is a reserved name", "path": "name", "detail": None}]
    return []


async def _entity_by_name(ctx: AppContext, name: str) -> dict | None:
    if name in RESERVED_NAMES:
        return None
    entity = ctx.metadata.find_entity_by_name(name)
    if entity is None:
        await ctx.metadata.fetch_entities()
        entity = ctx.metadata.find_entity_by_name(name)
    return entity


async def _entity_by_id(ctx: AppContext, entity_id: str) -> dict | None:
    entity = ctx.metadata.get_entity(entity_id)
    if entity is None:
        await ctx.metadata.fetch_entities()
        entity = ctx.metadata.get_entity(entity_id)
    return entity


async def _find_field(ctx: AppContext, field_id: str) -> dict | None:
    field = ctx.metadata.get_field(field_id)
    if field is None:
        for entity in await ctx.metadata.fetch_entities():
            await ctx.metadata.fetch_fields(entity["id"])
        field = ctx.metadata.get_field(field_id)
    return field


async def _find_layout(ctx: AppContext, layout_id: str) -> dict | None:
    layout = ctx.metadata.get_layout(layout_id)
    if layout is None:
        for entity in await ctx.metadata.fetch_entities():
            await ctx.metadata.fetch_layouts(entity["id"])
        layout = ctx.metadata.get_layout(layout_id)
    return layout


async def _records_cache(ctx: AppContext, name: str) -> List[dict]:
    if name not in ctx.records.records:
        await ctx.records.fetch_records(name)
    return ctx.records.records.get(name, [])


async def _editor(ctx: AppContext, entity_id: str, fresh: bool = False) -> LayoutEditor:
    key = str(entity_id)
    editor = ctx.editors.get(key)
    if editor is None or fresh:
        await ctx.metadata.fetch_fields(entity_id)
        await ctx.metadata.fetch_layouts(entity_id)
        editor = LayoutEditor(ctx.metadata, entity_id)
        editor.load()
        ctx.editors[key] = editor
    return editor


def _editor_state(editor: LayoutEditor) -> dict:
    return {
        "selected_layout_id": editor.selected_layout_id,
        "definition": editor.definition,
        "dropped_field_ids": editor.dropped_field_ids,
        "available_fields": [field_ref(f) for f in editor.available_fields()],
    }


def _sort_state(request: Request) -> SortState:
    key = request.query_params.get("sort") or CREATED_AT
    direction = request.query_params.get("direction") or DESC
    if direction not in (ASC, DESC):
        direction = DESC
    return SortState(key, direction)


def create_app(ctx: AppContext | None = None) -> FastAPI:
    ctx = ctx or build_context()
    app = FastAPI(title="FlexCRM")
    app.state.ctx = ctx

    app.add_middleware(SessionGuardMiddleware, verify=ctx.verify)
    cors_origins = sorted(
        origin.strip().rstrip("/") for origin in os.getenv("CRM_CORS_ORIGINS", "").split(",") if origin.strip()
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=_LOCAL_CORS_REGEX.pattern,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        auth_ms = getattr(request.state, "auth_ms", 0.0)
        logger.info(
            "%s %s %s total_ms=%.1f auth_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            total_ms,
            auth_ms,
        )
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s", request.url.path)
        return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    # auth

    @app.post("/auth/sign-in")
    async def sign_in(request: Request):
        body = await _json_body(request) or {}
        session = ctx.session_for()
        issue = await session.sign_in(body.get("email") or "", body.get("password") or "")
        if issue:
            return _errors_response([issue], status=401)
        response = _ok_response({"session": session.session})
        set_session_cookie(response, session.session)
        return response

    @app.post("/auth/sign-up")
    async def sign_up(request: Request):
        body = await _json_body(request) or {}
        session = ctx.session_for()
        issue = await session.sign_up(body.get("email") or "", body.get("password") or "", body.get("full_name"))
        if issue:
            return _errors_response([issue])
        response = _ok_response({"session": session.session}, status=201)
        set_session_cookie(response, session.session)
        return response

    @app.post("/auth/sign-out")
    async def sign_out(request: Request):
        issue = await ctx.session_for(get_client_token(request)).sign_out()
        if issue:
            return _errors_response([issue])
        response = _ok_response({})
        clear_session_cookie(response)
        return response

    @app.post("/auth/reset-password")
    async def reset_password(request: Request):
        body = await _json_body(request) or {}
        if not body.get("email"):
            return _error_response("REQUIRED_FIELD", "Email is required", "email")
        issue = await ctx.session_for().reset_password(body["email"])
        if issue:
            return _errors_response([issue])
        return _ok_response({"message": "Check your email for the password reset link"})

    @app.post("/auth/update-password")
    async def update_password(request: Request):
        body = await _json_body(request) or {}
        password = body.get("password") or ""
        if password != body.get("confirm_password", password):
            return _error_response("PASSWORD_MISMATCH", "Passwords do not match", "confirm_password")
        # recovery links carry their own token
        token = body.get("access_token") or get_client_token(request)
        issue = await ctx.session_for(token).update_password(password)
        if issue:
            return _errors_response([issue], status=401 if issue["code"] == "AUTH_REQUIRED" else 400)
        return _ok_response({})

    @app.get("/auth/session")
    async def get_session(request: Request):
        token = get_client_token(request)
        if not token:
            return _ok_response({"signed_in": False, "user": None})
        try:
            user = user_from_claims(ctx.verify(token))
        except (JWTError, httpx.HTTPError) as exc:
            logger.info("auth_session_invalid error=%s", exc)
            return _ok_response({"signed_in": False, "user": None})
        return _ok_response({"signed_in": True, "user": {"id": user["id"], "email": user["email"]}})

    # dashboard

    async def _summary() -> tuple:
        entities = await ctx.metadata.fetch_entities()
        records_by_name = {}
        for entity in entities:
            records_by_name[entity["name"]] = await ctx.records.fetch_records(entity["name"])
        return entities, dashboard_summary(entities, records_by_name)

    @app.get("/")
    async def dashboard():
        _, summary = await _summary()
        return _ok_response({"summary": summary})

    # entity settings

    @app.get("/settings/entities")
    async def list_entities():
        entities = await ctx.metadata.fetch_entities()
        if ctx.metadata.error:
            return _store_error(ctx.metadata, "Failed to fetch entities")
        return _ok_response({"entities": entities})

    @app.post("/settings/entities")
    async def create_entity(request: Request):
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Entity must be an object")
        entity = entity_from_form(body)
        errors = validate_entity_definition(entity) + _name_issues(entity["name"])
        if errors:
            return _errors_response(errors)
        row = await ctx.metadata.create_entity(entity)
        if row is None:
            for creation in ctx.metadata.pending_cleanup():
                if creation.entity.get("name") == entity["name"]:
                    return _error_response(
                        "PROVISIONING_FAILED",
                        creation.error or "Failed to create entity table",
                        "name",
                        {"creation": creation.to_dict()},
                        status=502,
                    )
            return _store_error(ctx.metadata, "Failed to create entity")
        return _ok_response({"entity": row}, status=201)

    @app.get("/settings/entities/pending-cleanup")
    async def pending_cleanup():
        return _ok_response({"creations": [c.to_dict() for c in ctx.metadata.pending_cleanup()]})

    @app.post("/settings/entities/{entity_id}/retry-provisioning")
    async def retry_provisioning(entity_id: str):
        row = await ctx.metadata.retry_provisioning(entity_id)
        if row is None:
            return _error_response("PROVISIONING_FAILED", ctx.metadata.error or "Retry failed", status=502)
        return _ok_response({"entity": row})

    @app.post("/settings/entities/{entity_id}/discard")
    async def discard_creation(entity_id: str):
        if not await ctx.metadata.discard_failed_creation(entity_id):
            return _store_error(ctx.metadata, "Discard failed")
        return _ok_response({"discarded": entity_id})

    @app.get("/settings/entities/{entity_id}")
    async def get_entity(entity_id: str):
        entity = await _entity_by_id(ctx, entity_id)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        fields = await ctx.metadata.fetch_fields(entity_id)
        return _ok_response({"entity": entity, "fields": fields})

    @app.put("/settings/entities/{entity_id}")
    async def update_entity(entity_id: str, request: Request):
        entity = await _entity_by_id(ctx, entity_id)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Entity must be an object")
        changes = entity_changes_from_form(entity, body)
        merged = {**entity, **changes}
        errors = validate_entity_definition(merged)
        if not entity.get("is_system"):
            errors += _name_issues(merged.get("name"))
        if errors:
            return _errors_response(errors)
        row = await ctx.metadata.update_entity(entity_id, changes)
        if row is None:
            return _store_error(ctx.metadata, "Failed to update entity")
        return _ok_response({"entity": row})

    @app.delete("/settings/entities/{entity_id}")
    async def delete_entity(entity_id: str):
        return _error_response("ENTITY_DELETE_DISABLED", "Entity deletion is disabled", "entity_id", status=405)

    # field settings

    @app.post("/settings/entities/{entity_id}/fields")
    async def create_field(entity_id: str, request: Request):
        entity = await _entity_by_id(ctx, entity_id)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Field must be an object")
        fields = await ctx.metadata.fetch_fields(entity_id)
        field = field_from_form(entity["id"], body, display_order=len(fields))
        errors = validate_field_definition(field, siblings=fields)
        if errors:
            return _errors_response(errors)
        row = await ctx.metadata.create_field(field)
        if row is None:
            return _store_error(ctx.metadata, "Failed to create field")
        return _ok_response({"field": row}, status=201)

    @app.put("/settings/fields/{field_id}")
    async def update_field(field_id: str, request: Request):
        field = await _find_field(ctx, field_id)
        if field is None:
            return _error_response("FIELD_NOT_FOUND", "Field not found", "field_id", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Field must be an object")
        changes = field_changes_from_form(field, body)
        siblings = [
            f for f in ctx.metadata.fields.get(str(field["entity_id"]), []) if str(f.get("id")) != str(field_id)
        ]
        errors = validate_field_definition({**field, **changes}, siblings=siblings)
        if errors:
            return _errors_response(errors)
        row = await ctx.metadata.update_field(field_id, changes)
        if row is None:
            return _store_error(ctx.metadata, "Failed to update field")
        return _ok_response({"field": row})

    @app.delete("/settings/fields/{field_id}")
    async def delete_field(field_id: str):
        if await _find_field(ctx, field_id) is None:
            return _error_response("FIELD_NOT_FOUND", "Field not found", "field_id", status=404)
        if not await ctx.metadata.delete_field(field_id):
            return _store_error(ctx.metadata, "Failed to delete field")
        return _ok_response({"deleted": field_id})

    # layout settings

    @app.delete("/settings/layouts/item/{layout_id}")
    async def delete_layout(layout_id: str):
        layout = await _find_layout(ctx, layout_id)
        if layout is None:
            return _error_response("LAYOUT_NOT_FOUND", "Layout not found", "layout_id", status=404)
        if not await ctx.metadata.delete_layout(layout_id):
            return _store_error(ctx.metadata, "Failed to delete layout")
        ctx.editors.pop(str(layout.get("entity_id")), None)
        return _ok_response({"deleted": layout_id})

    @app.get("/settings/layouts/{entity_id}")
    async def get_layouts(entity_id: str):
        entity = await _entity_by_id(ctx, entity_id)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        editor = await _editor(ctx, entity_id, fresh=True)
        return _ok_response(
            {
                "entity": entity,
                "fields": ctx.metadata.fields.get(str(entity_id), []),
                "layouts": ctx.metadata.layouts.get(str(entity_id), []),
                "editor": _editor_state(editor),
            }
        )

    @app.post("/settings/layouts/{entity_id}/editor")
    async def edit_layout(entity_id: str, request: Request):
        if await _entity_by_id(ctx, entity_id) is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Editor operation must be an object")
        editor = await _editor(ctx, entity_id)
        result = editor.apply(body)
        if not result["ok"]:
            return _errors_response(result["errors"])
        return _ok_response({"editor": _editor_state(editor)})

    @app.post("/settings/layouts/{entity_id}/save")
    async def save_layout(entity_id: str):
        if await _entity_by_id(ctx, entity_id) is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        editor = await _editor(ctx, entity_id)
        result = await editor.save()
        if not result["ok"]:
            return _errors_response(result["errors"], status=502 if result["errors"][0]["code"] == "BACKEND_ERROR" else 400)
        return _ok_response({"layout": result["layout"], "editor": _editor_state(editor)})

    @app.post("/settings/layouts/{entity_id}")
    async def create_layout(entity_id: str, request: Request):
        if await _entity_by_id(ctx, entity_id) is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_id", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Layout must be an object")
        editor = await _editor(ctx, entity_id)
        result = await editor.create(
            body.get("name") or "",
            layout_type=body.get("type") or "detail",
            is_default=bool(body.get("is_default")),
            created_by=_user_id(request),
        )
        if not result["ok"]:
            return _errors_response(result["errors"], status=502 if result["errors"][0]["code"] == "BACKEND_ERROR" else 400)
        return _ok_response({"layout": result["layout"], "editor": _editor_state(editor)}, status=201)

    # console pages

    @app.get("/console", response_class=HTMLResponse)
    async def console_dashboard():
        entities, summary = await _summary()
        return HTMLResponse(render_dashboard(entities, summary))

    @app.get("/console/{entity_type}", response_class=HTMLResponse)
    async def console_list(entity_type: str, request: Request):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return HTMLResponse("<p>Entity not found</p>", status_code=404)
        fields = await ctx.metadata.fetch_fields(entity["id"])
        records = await ctx.records.fetch_records(entity_type)
        view = build_list_view(fields, records, _sort_state(request), request.query_params.get("q"))
        return HTMLResponse(render_list(ctx.metadata.entities, entity, view))

    async def _console_form_context(entity_type: str, record_id: str):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return None, None, None, None
        fields = await ctx.metadata.fetch_fields(entity["id"])
        layouts = await ctx.metadata.fetch_layouts(entity["id"])
        record = None
        if record_id != "new":
            record = await ctx.records.fetch_record(entity_type, record_id)
        return entity, fields, layouts, record

    @app.get("/console/{entity_type}/{record_id}", response_class=HTMLResponse)
    async def console_form(entity_type: str, record_id: str):
        entity, fields, layouts, record = await _console_form_context(entity_type, record_id)
        if entity is None or (record_id != "new" and record is None):
            return HTMLResponse("<p>Not found</p>", status_code=404)
        form = build_form(fields, layouts, record)
        return HTMLResponse(render_form(ctx.metadata.entities, entity, form))

    @app.post("/console/{entity_type}/{record_id}", response_class=HTMLResponse)
    async def console_submit(entity_type: str, record_id: str, request: Request):
        entity, fields, layouts, record = await _console_form_context(entity_type, record_id)
        if entity is None or (record_id != "new" and record is None):
            return HTMLResponse("<p>Not found</p>", status_code=404)
        submitted = dict(await request.form())
        for_create = record_id == "new"
        uid = _user_id(request)
        by_field, errors, clean = validate_form(
            fields,
            submitted,
            for_create=for_create,
            existing=await _records_cache(ctx, entity_type),
            record_id=None if for_create else record_id,
            system_values={"created_by": uid} if for_create and uid else None,
        )
        if errors:
            form = build_form(fields, layouts, record)
            form["values"].update(submitted)
            return HTMLResponse(render_form(ctx.metadata.entities, entity, form, by_field), status_code=400)
        if for_create:
            row = await ctx.records.create_record(entity_type, clean)
        else:
            row = await ctx.records.update_record(entity_type, record_id, clean)
        if row is None:
            form = build_form(fields, layouts, record)
            return HTMLResponse(
                render_form(ctx.metadata.entities, entity, form, {"_form": ctx.records.error}), status_code=502
            )
        return RedirectResponse(f"/console/{entity_type}", status_code=303)

    # records

    @app.get("/{entity_type}")
    async def list_records(entity_type: str, request: Request):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_type", status=404)
        fields = await ctx.metadata.fetch_fields(entity["id"])
        records = await ctx.records.fetch_records(entity_type)
        if ctx.records.error:
            return _store_error(ctx.records, "Failed to fetch records")
        view = build_list_view(fields, records, _sort_state(request), request.query_params.get("q"))
        return _ok_response({"entity": entity, "view": view})

    @app.get("/{entity_type}/{record_id}")
    async def get_record(entity_type: str, record_id: str):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_type", status=404)
        fields = await ctx.metadata.fetch_fields(entity["id"])
        layouts = await ctx.metadata.fetch_layouts(entity["id"])
        record = None
        if record_id != "new":
            record = await ctx.records.fetch_record(entity_type, record_id)
            if record is None:
                return _error_response("RECORD_NOT_FOUND", "Record not found", "record_id", status=404)
        return _ok_response({"entity": entity, "record": record, "form": build_form(fields, layouts, record)})

    @app.post("/{entity_type}")
    async def create_record(entity_type: str, request: Request):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_type", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Record data must be an object")
        fields = await ctx.metadata.fetch_fields(entity["id"])
        await _records_cache(ctx, entity_type)
        data = dict(body)
        uid = _user_id(request)
        if uid:
            data.setdefault("created_by", uid)
        row = await ctx.records.create_record(entity_type, data, fields=fields)
        if row is None:
            if ctx.records.validation_errors:
                return _errors_response(ctx.records.validation_errors)
            return _store_error(ctx.records, "Failed to create record")
        return _ok_response({"record": row}, status=201)

    @app.put("/{entity_type}/{record_id}")
    async def update_record(entity_type: str, record_id: str, request: Request):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_type", status=404)
        body = await _json_body(request)
        if body is None:
            return _error_response("INVALID_PAYLOAD", "Record data must be an object")
        fields = await ctx.metadata.fetch_fields(entity["id"])
        await _records_cache(ctx, entity_type)
        if await ctx.records.fetch_record(entity_type, record_id) is None:
            return _error_response("RECORD_NOT_FOUND", "Record not found", "record_id", status=404)
        row = await ctx.records.update_record(entity_type, record_id, body, fields=fields)
        if row is None:
            if ctx.records.validation_errors:
                return _errors_response(ctx.records.validation_errors)
            return _store_error(ctx.records, "Failed to update record")
        return _ok_response({"record": row})

    @app.delete("/{entity_type}/{record_id}")
    async def delete_record(entity_type: str, record_id: str):
        entity = await _entity_by_name(ctx, entity_type)
        if entity is None:
            return _error_response("ENTITY_NOT_FOUND", "Entity not found", "entity_type", status=404)
        if not await ctx.records.delete_record(entity_type, record_id):
            return _store_error(ctx.records, "Failed to delete record")
        return _ok_response({"deleted": record_id})

    return app


app = create_app(build_context())
