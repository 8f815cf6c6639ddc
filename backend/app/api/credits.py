"""
Credit deduction endpoints.

Called by the workflow engine once an AI result has been written:
POST /credits/{feature} with `{ <feature id field>: ..., description?: ... }`.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request, Response

from backend.app.api.deps import CORS_HEADERS, preflight_response, read_json_body
from backend.app.core.auth import AuthUser, get_current_user, require_service_key
from backend.app.core.database import db
from backend.app.core.errors import CreditsRecordNotFound, UserNotFound
from backend.app.services import credit_deduction
from backend.app.storage import ledger_storage

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/features")
async def list_features() -> Dict[str, Any]:
    """Prices and request fields for every chargeable feature."""
    return {
        "features": [
            {
                "feature": f.slug,
                "feature_used": f.feature_tag,
                "id_field": f.id_field,
                "credits": float(f.price),
            }
            for f in credit_deduction.FEATURES.values()
        ],
        "ai_interview": {"id_field": credit_deduction.AI_INTERVIEW_ID_FIELD, "credits": 1},
    }


@router.get("/me")
async def my_credits(
    limit: int = Query(20, ge=1, le=100),
    user: AuthUser = Depends(get_current_user),
) -> Dict[str, Any]:
    """Balance and recent ledger entries for the signed-in user."""
    async with db.connection() as conn:
        account = await ledger_storage.get_user_by_auth_id(conn, user.auth_id)
        if not account:
            raise UserNotFound(auth_id=user.auth_id)
        credits = await ledger_storage.get_user_credits(conn, account["id"])
        if not credits:
            raise CreditsRecordNotFound(user_id=str(account["id"]))
        transactions = await ledger_storage.list_transactions(conn, account["id"], limit=limit)

    return {
        "success": True,
        "user_id": str(account["id"]),
        "current_balance": float(credits["current_balance"]),
        "paid_credits": float(credits.get("paid_credits") or 0),
        "subscription_plan": credits.get("subscription_plan"),
        "transactions": transactions,
    }


@router.options("/ai-interview", include_in_schema=False)
async def ai_interview_options() -> Response:
    return preflight_response()


@router.post("/ai-interview", dependencies=[Depends(require_service_key)])
async def deduct_ai_interview(request: Request, response: Response) -> Dict[str, Any]:
    payload = await read_json_body(request)
    async with db.connection() as conn:
        result = await credit_deduction.charge_ai_interview(conn, payload)
    response.headers.update(CORS_HEADERS)
    return result


@router.options("/{feature}", include_in_schema=False)
async def deduct_options(feature: str) -> Response:
    return preflight_response()


@router.post("/{feature}", dependencies=[Depends(require_service_key)])
async def deduct(feature: str, request: Request, response: Response) -> Dict[str, Any]:
    charge = credit_deduction.get_feature(feature)
    payload = await read_json_body(request)
    async with db.connection() as conn:
        result = await credit_deduction.charge_feature(conn, charge, payload)
    response.headers.update(CORS_HEADERS)
    return result.to_response()
