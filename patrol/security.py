from __future__ import annotations

import secrets

from fastapi import Header, Request

from patrol.errors import ApiError
from patrol.settings import get_settings, is_admin_api_enabled


def require_admin(
    request: Request,
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    if not is_admin_api_enabled():
        raise ApiError(status_code=403, code="ADMIN_API_DISABLED", message="Admin API is not configured.")
    expected = get_settings().admin_api_token.strip()
    if not x_admin_token or not secrets.compare_digest(x_admin_token.strip(), expected):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing or invalid admin token.")

    actor_id = (request.headers.get("X-Actor-Id") or "admin").strip() or "admin"
    request.state.actor = "admin"
    request.state.actor_id = actor_id
    return actor_id
