from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import HTTPException, Request
from fastapi.security.utils import get_authorization_scheme_param

from tarot_engine.core.settings import Settings


@dataclass(frozen=True)
class CurrentUser:
    id: str


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_bearer_token(request: Request) -> str:
    scheme, token = get_authorization_scheme_param(request.headers.get("authorization"))
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


def get_current_user(request: Request) -> CurrentUser:
    """Identity is resolved by the upstream auth gateway, which forwards the
    verified user id in a trusted header."""
    settings = get_settings(request)
    user_id = (request.headers.get(settings.user_id_header) or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CurrentUser(id=user_id)


def require_cron_secret(request: Request) -> None:
    settings = get_settings(request)
    expected = settings.cron_secret
    if not expected:
        # an unset secret never authorizes anything
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = _get_bearer_token(request)
    if not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
