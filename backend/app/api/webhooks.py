"""
Front-end entry point for the workflow engine.

POST /webhooks/relay with `{ webhook_type, <data field>: {...}, user?, ... }`.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from backend.app.api.deps import CORS_HEADERS, preflight_response, read_json_body
from backend.app.core.config import Settings, get_settings
from backend.app.services.webhook_relay import relay_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Statuses that cannot carry a body are reported as 200 with the status in the payload.
_BODYLESS_STATUSES = {204, 304}


@router.options("/relay", include_in_schema=False)
async def relay_options() -> Response:
    return preflight_response()


@router.post("/relay")
async def relay(request: Request, settings: Settings = Depends(get_settings)) -> JSONResponse:
    payload = await read_json_body(request)
    result = await relay_webhook(payload, settings, headers=request.headers)
    status_code = 200 if result.status_code in _BODYLESS_STATUSES else result.status_code
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(result.to_response()),
        headers=CORS_HEADERS,
    )
