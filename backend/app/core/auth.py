"""
Auth helpers.

End users: we validate identity by calling Supabase Auth's /auth/v1/user endpoint with the
provided JWT (Authorization: Bearer ...). This avoids adding JWT verification deps
and keeps the backend stateless.

Workflow engine: deduction routes are called server-to-server and authenticate with a
shared key in `x-api-key` when JOBASSIST_SERVICE_API_KEY is configured.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException

from backend.app.core.config import Settings, get_settings


@dataclass(frozen=True)
class AuthUser:
    auth_id: str
    email: Optional[str] = None


async def _supabase_get_user(settings: Settings, token: str) -> AuthUser:
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status_code=500, detail="Supabase auth not configured")

    url = settings.supabase_url.rstrip("/") + "/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": settings.supabase_anon_key,
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(url, headers=headers)
    except httpx.HTTPError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    if resp.status_code != 200:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    data = resp.json()
    auth_id = data.get("id")
    if not isinstance(auth_id, str) or not auth_id:
        raise HTTPException(status_code=401, detail="Invalid session payload")

    return AuthUser(auth_id=auth_id, email=data.get("email"))


def _parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> AuthUser:
    token = _parse_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authorization: Bearer token required")
    return await _supabase_get_user(settings, token)


async def require_service_key(
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.service_api_key
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing x-api-key")
