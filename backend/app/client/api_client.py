"""
Thin async client for the JobAssist API, authenticated through a shared SessionManager.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.client.session import SessionManager

logger = logging.getLogger(__name__)


class ReconnectRequired(Exception):
    """No usable access token; the user has to sign in again."""


class JobAssistClient:
    def __init__(
        self,
        base_url: str,
        session: SessionManager,
        *,
        api_prefix: str = "/api/v1",
        timeout_s: Optional[float] = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + api_prefix,
            timeout=timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "JobAssistClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _authorized(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        for attempt in range(2):
            token = await self.session.get_valid_token(force=attempt > 0)
            if not token:
                raise ReconnectRequired("No valid session token")
            headers["Authorization"] = f"Bearer {token}"
            resp = await self._http.request(method, path, headers=headers, **kwargs)
            if resp.status_code != 401 or attempt:
                return resp
            logger.info("Token rejected on %s %s, refreshing", method, path)
            self.session.invalidate()
        return resp

    async def relay(self, payload: Dict[str, Any], *, execution_id: Optional[str] = None) -> Dict[str, Any]:
        """Send a workflow request through the relay; returns the relay's JSON body."""
        headers = {"x-execution-id": execution_id} if execution_id else None
        resp = await self._authorized("POST", "/webhooks/relay", json=payload, headers=headers)
        return resp.json()

    async def credits_me(self, limit: int = 20) -> Dict[str, Any]:
        resp = await self._authorized("GET", "/credits/me", params={"limit": limit})
        resp.raise_for_status()
        return resp.json()
