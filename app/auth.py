"""Session facade over the auth provider and the route guard middleware."""

from __future__ import annotations

import logging
import os
import time
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from flexcrm.errors import BackendError


logger = logging.getLogger("flexcrm.auth")

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
PUBLIC_PATHS = {"/health"}
PUBLIC_PREFIXES = ("/auth/",)
SESSION_COOKIE = "crm_access_token"
_REQUEST_TOKEN: ContextVar[str | None] = ContextVar("crm_request_token", default=None)


class AuthError(RuntimeError):
    """Raised by auth clients when the provider refuses a request."""


def get_request_token() -> str | None:
    return _REQUEST_TOKEN.get()


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def get_client_token(request: Request) -> Optional[str]:
    """Bearer token if present, else the client's session cookie."""
    return _get_bearer_token(request) or request.cookies.get(SESSION_COOKIE) or None


def set_session_cookie(response, session: dict | None) -> None:
    token = (session or {}).get("access_token")
    if not token:
        return
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=(session or {}).get("expires_in"),
        httponly=True,
        secure=os.getenv("CRM_SESSION_COOKIE_SECURE", "").strip().lower() in ("1", "true", "yes"),
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _verify_jwt(token: str, jwks_url: str, issuer: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    options = {"verify_aud": audience is not None}
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], issuer=issuer, audience=audience, options=options)


def jwks_verifier(supabase_url: str, audience: Optional[str] = "authenticated") -> Callable[[str], dict]:
    base = supabase_url.rstrip("/")
    jwks_url = f"{base}/auth/v1/.well-known/jwks.json"
    issuer = f"{base}/auth/v1"

    def verify(token: str) -> dict:
        return _verify_jwt(token, jwks_url, issuer, audience)

    return verify


class SessionFacade:
    """Wraps the auth provider calls for one client session.

    The HTTP layer builds one per request from the client's token, so no
    session is shared between clients. Each operation returns ``None`` on
    success or an error issue; nothing raises to the caller.
    """

    def __init__(self, client, backend=None, reset_redirect: str | None = None, session: dict | None = None) -> None:
        self._client = client
        self.backend = backend
        self._reset_redirect = reset_redirect or os.getenv(
            "CRM_PASSWORD_RESET_REDIRECT", "http://localhost:5173/reset-password"
        )
        self.session: dict | None = session

    @property
    def user(self) -> dict | None:
        return (self.session or {}).get("user")

    @property
    def access_token(self) -> str | None:
        return (self.session or {}).get("access_token")

    def set_session(self, session: dict | None) -> None:
        self.session = session

    async def sign_in(self, email: str, password: str) -> dict | None:
        try:
            self.session = await self._client.sign_in_with_password(email, password)
        except AuthError as exc:
            logger.info("auth_sign_in_failed email=%s error=%s", email, exc)
            return _issue("AUTH_FAILED", str(exc), "email")
        logger.info("auth_sign_in user=%s", (self.user or {}).get("id"))
        return None

    async def sign_up(self, email: str, password: str, full_name: str | None = None) -> dict | None:
        try:
            session = await self._client.sign_up(email, password, {"full_name": full_name})
        except AuthError as exc:
            logger.info("auth_sign_up_failed email=%s error=%s", email, exc)
            return _issue("AUTH_FAILED", str(exc), "email")
        user = (session or {}).get("user") or {}
        if self.backend is not None and user.get("id"):
            reset = _REQUEST_TOKEN.set((session or {}).get("access_token"))
            try:
                await self.backend.insert("users", {"id": user["id"], "email": email, "full_name": full_name})
            except BackendError as exc:
                logger.warning("auth_profile_insert_failed user=%s error=%s", user.get("id"), exc)
                return _issue("BACKEND_ERROR", str(exc), "users")
            finally:
                _REQUEST_TOKEN.reset(reset)
        if session and session.get("access_token"):
            self.session = session
        return None

    async def sign_out(self) -> dict | None:
        token = self.access_token
        self.session = None
        if not token:
            return None
        try:
            await self._client.sign_out(token)
        except AuthError as exc:
            logger.warning("auth_sign_out_failed error=%s", exc)
            return _issue("AUTH_FAILED", str(exc))
        return None

    async def reset_password(self, email: str) -> dict | None:
        try:
            await self._client.reset_password_for_email(email, redirect_to=self._reset_redirect)
        except AuthError as exc:
            return _issue("AUTH_FAILED", str(exc), "email")
        return None

    async def update_password(self, password: str) -> dict | None:
        if not self.access_token:
            return _issue("AUTH_REQUIRED", "Not signed in")
        try:
            user = await self._client.update_user(self.access_token, {"password": password})
        except AuthError as exc:
            return _issue("AUTH_FAILED", str(exc), "password")
        self.session = {**self.session, "user": user}
        return None


def _unauthorized(code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "errors": [_issue(code, message, "Authorization", detail)], "warnings": []},
        status_code=401,
    )


def user_from_claims(claims: dict) -> dict:
    return {
        "id": claims.get("sub"),
        "email": claims.get("email"),
        "role": claims.get("role"),
        "claims": claims,
    }


class SessionGuardMiddleware(BaseHTTPMiddleware):
    """Rejects requests without a valid session outside the public paths.

    The client's bearer token, or else its session cookie, is verified with
    ``verify``. There is no server-side fallback session.
    """

    def __init__(self, app, verify: Callable[[str], dict]) -> None:
        super().__init__(app)
        self._verify = verify

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if os.getenv("CRM_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes"):
            return await call_next(request)
        path = request.url.path
        if request.method == "OPTIONS" or path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        token = get_client_token(request)
        if not token:
            logger.warning("auth_missing_session path=%s", path)
            return _unauthorized("AUTH_REQUIRED", "Sign in required")

        try:
            claims = self._verify(token)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning("auth_invalid_token path=%s error=%s", path, exc)
            return _unauthorized("AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = user_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        reset = _REQUEST_TOKEN.set(token)
        try:
            return await call_next(request)
        finally:
            _REQUEST_TOKEN.reset(reset)
