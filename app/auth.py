"""Bearer JWT auth middleware; resolves the acting user for audit stamping."""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Optional

from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger("crm.auth")

_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_PUBLIC_PATHS = {"/health"}


def auth_disabled() -> bool:
    return os.getenv("CRM_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


def _unauthorized(request: Request, code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return _attach_local_cors(
        request,
        JSONResponse(
            {
                "ok": False,
                "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
                "warnings": [],
            },
            status_code=401,
        ),
    )


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def verify_token(token: str, secret: str, audience: Optional[str] = None) -> dict:
    options = {"verify_aud": audience is not None}
    claims = jwt.decode(token, secret, algorithms=["HS256"], audience=audience, options=options)
    if not claims.get("sub"):
        raise JWTError("Token has no subject")
    return claims


def issue_token(user_id: str, secret: str, role: str | None = None, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    claims = {"sub": user_id, "iat": now, "exp": now + ttl_seconds}
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


class JWTAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, secret: str | None = None, audience: Optional[str] = None) -> None:
        super().__init__(app)
        self._secret = secret
        self._audience = audience

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in _PUBLIC_PATHS:
            request.state.actor = None
            return await call_next(request)
        if auth_disabled():
            user_id = request.headers.get("X-User-Id")
            request.state.actor = {"id": user_id, "role": None} if user_id else None
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _unauthorized(request, "AUTH_MISSING_TOKEN", "Missing bearer token")
        if not self._secret:
            logger.error("auth_not_configured path=%s", request.url.path)
            return _unauthorized(request, "AUTH_NOT_CONFIGURED", "CRM_JWT_SECRET is not set")
        try:
            claims = verify_token(token, self._secret, self._audience)
        except JWTError as exc:
            logger.warning("auth_invalid_token path=%s error=%s", request.url.path, exc)
            return _unauthorized(request, "AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.actor = {"id": claims.get("sub"), "role": claims.get("role")}
        return await call_next(request)
