"""
Shared request helpers for the credit and relay routes.
"""

import json
from typing import Any, Dict

from fastapi import Request, Response

from backend.app.core.errors import ValidationError

# Callers are the browser app and the workflow engine; both need permissive CORS.
CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, x-api-key, "
        "x-fingerprint, x-source, x-webhook-type, x-execution-id"
    ),
}


def preflight_response() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object, or raise a 400."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON payload")
    if not isinstance(data, dict):
        raise ValidationError("Payload must be a JSON object")
    return data
