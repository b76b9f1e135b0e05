import base64
import secrets

from fastapi import HTTPException, Request
from fastapi.security.utils import get_authorization_scheme_param

from tarot_engine.core.settings import Settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Basic"},
    )


def enforce_basic_auth_for_request(request: Request, settings: Settings) -> None:
    if not settings.basic_auth_enabled:
        return

    if settings.basic_auth_username is None or settings.basic_auth_password is None:
        raise RuntimeError("Basic Auth enabled but credentials are not set")

    auth_header = request.headers.get("authorization")
    scheme, param = get_authorization_scheme_param(auth_header)
    if scheme.lower() != "basic" or not param:
        raise _unauthorized("Authentication required")

    try:
        decoded = base64.b64decode(param).decode("utf-8")
    except Exception:
        raise _unauthorized("Invalid credentials")

    if ":" not in decoded:
        raise _unauthorized("Invalid credentials")

    username, password = decoded.split(":", 1)
    username_ok = secrets.compare_digest(username, settings.basic_auth_username)
    password_ok = secrets.compare_digest(password, settings.basic_auth_password)

    if not (username_ok and password_ok):
        raise _unauthorized("Invalid credentials")
