"""
Payment webhook handler.

Receives subscription and payment events from the payments provider, records each
event once (keyed by webhook id) and tops up the customer's credit balance through
the ledger's add_credits procedure.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from backend.app.core.config import Settings, get_settings
from backend.app.core.database import db
from backend.app.core.errors import CreditsRecordNotFound, MissingParameter, UserNotFound, ValidationError
from backend.app.storage import ledger_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

SIGNATURE_TOLERANCE_S = 5 * 60

SUBSCRIPTION_EVENTS = {"subscription.created", "subscription.renewed"}
PAYMENT_EVENTS = {"payment.completed", "payment.failed"}
CANCEL_EVENTS = {"subscription.cancelled"}
# Events that put credits on the customer's balance.
CREDIT_EVENTS = {"payment.completed", "subscription.created", "subscription.renewed"}


class PaymentEvent(BaseModel):
    """One provider event, flattened to what the ledger records."""
    webhook_id: str
    event_type: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    product_id: Optional[str] = None
    quantity: int = 1
    amount: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        return base64.b64decode(secret[len("whsec_"):])
    return secret.encode()


def verify_webhook_signature(
    body: bytes,
    *,
    webhook_id: str,
    timestamp: str,
    signature_header: str,
    secret: str,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Standard Webhooks signature.

    The signed content is `{id}.{timestamp}.{body}`; the header carries one or more
    space-separated `v1,<base64 hmac-sha256>` entries.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > SIGNATURE_TOLERANCE_S:
        return False

    signed = f"{webhook_id}.{timestamp}.".encode() + body
    expected = base64.b64encode(hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()).decode()

    for entry in signature_header.split():
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig, expected):
            return True
    return False


def _to_int(value: Any, default: int = 1) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _minor_to_major(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return None


def normalize_event(envelope: Mapping[str, Any], headers: Mapping[str, str]) -> PaymentEvent:
    """
    Flatten a provider event into a PaymentEvent.

    Accepts either the raw event (`{type, timestamp, data}`) or the forwarded
    `{headers, body}` envelope.
    """
    if isinstance(envelope.get("body"), dict):
        body = envelope["body"]
        env_headers = envelope.get("headers") or {}
    else:
        body = envelope
        env_headers = {}

    event_type = body.get("type")
    data = body.get("data")
    if not event_type or not isinstance(data, dict):
        raise ValidationError("Invalid webhook payload")

    webhook_id = (
        headers.get("webhook-id")
        or env_headers.get("webhook-id")
        or f"evt_{int(time.time() * 1000)}"
    )
    customer = data.get("customer") or {}
    event = PaymentEvent(
        webhook_id=str(webhook_id),
        event_type=str(event_type),
        customer_email=customer.get("email"),
        customer_name=customer.get("name"),
        raw_payload=body,
    )

    if event_type in SUBSCRIPTION_EVENTS:
        event.product_id = data.get("product_id")
        event.quantity = _to_int(data.get("quantity"))
        event.amount = _minor_to_major(data.get("recurring_pre_tax_amount"))
        event.currency = data.get("currency")
        event.status = data.get("status")
        event.subscription_id = data.get("subscription_id")
    elif event_type in PAYMENT_EVENTS:
        event.payment_id = data.get("payment_id")
        event.amount = _minor_to_major(data.get("total_amount"))
        event.currency = data.get("currency")
        event.status = data.get("status")
        cart = data.get("product_cart") or []
        if isinstance(cart, list) and cart and isinstance(cart[0], dict):
            event.product_id = cart[0].get("product_id")
            event.quantity = _to_int(cart[0].get("quantity"))
    elif event_type in CANCEL_EVENTS:
        event.subscription_id = data.get("subscription_id")
        event.product_id = data.get("product_id")
        event.status = "cancelled"

    if not event.customer_email:
        raise MissingParameter("customer.email", webhook_id=event.webhook_id)
    return event


def credits_for(event: PaymentEvent, settings: Settings) -> Decimal:
    if event.event_type not in CREDIT_EVENTS or not event.product_id:
        return Decimal("0")
    per_unit = settings.product_credits.get(event.product_id)
    if not per_unit:
        logger.warning("No credit mapping for product %s (%s)", event.product_id, event.webhook_id)
        return Decimal("0")
    return Decimal(str(per_unit)) * max(event.quantity, 1)


async def _grant_purchase(conn, user_id, credits: Decimal, event: PaymentEvent) -> None:
    """
    Add purchased credits. A user without a credits row gets one first; if the
    grant still fails, raising here rolls back the payment record so a retry of the
    same webhook is processed again instead of being reported as a duplicate.
    """
    grant = dict(
        user_id=user_id,
        amount=credits,
        transaction_type="purchase",
        description=f"{event.event_type} ({event.product_id} x{event.quantity})",
        is_paid=True,
    )
    if await ledger_storage.add_credits(conn, **grant):
        return

    logger.warning("No credits row for user %s, initializing before grant (%s)", user_id, event.webhook_id)
    await ledger_storage.initialize_user_credits(conn, user_id)
    if not await ledger_storage.add_credits(conn, **grant):
        logger.error("Credit grant refused for user %s (%s)", user_id, event.webhook_id)
        raise CreditsRecordNotFound(
            "Credit grant refused by ledger",
            user_id=str(user_id),
            webhook_id=event.webhook_id,
        )


@router.post("/webhook")
async def handle_payment_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
):
    """
    Handle payment provider events.

    Events handled:
    - subscription.created / subscription.renewed: grant plan credits
    - payment.completed: grant purchased credits
    - payment.failed / subscription.cancelled: recorded only
    """
    body = await request.body()

    if settings.payment_webhook_secret:
        ok = verify_webhook_signature(
            body,
            webhook_id=request.headers.get("webhook-id", ""),
            timestamp=request.headers.get("webhook-timestamp", ""),
            signature_header=request.headers.get("webhook-signature", ""),
            secret=settings.payment_webhook_secret,
        )
        if not ok:
            logger.warning("Rejected payment webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        envelope = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON payload")
    if not isinstance(envelope, dict):
        raise ValidationError("Invalid webhook payload")

    event = normalize_event(envelope, request.headers)
    credits = credits_for(event, settings)
    logger.info(
        "Payment webhook %s: %s for %s (product=%s, credits=%s)",
        event.webhook_id, event.event_type, event.customer_email, event.product_id, credits,
    )

    async with db.connection() as conn:
        user = await ledger_storage.get_user_by_email(conn, event.customer_email)
        if not user:
            logger.warning("No user for payment webhook %s (%s)", event.webhook_id, event.customer_email)
            raise UserNotFound(customer_email=event.customer_email, webhook_id=event.webhook_id)

        async with conn.transaction():
            record = event.model_dump()
            record["credits_granted"] = credits
            inserted = await ledger_storage.record_payment_event(conn, record)
            if not inserted:
                logger.info("Payment webhook %s already processed", event.webhook_id)
                return {
                    "success": True,
                    "duplicate": True,
                    "webhook_id": event.webhook_id,
                    "credits_granted": 0.0,
                }
            if credits > 0:
                await _grant_purchase(conn, user["id"], credits, event)

    return {
        "success": True,
        "duplicate": False,
        "webhook_id": event.webhook_id,
        "event_type": event.event_type,
        "user_id": str(user["id"]),
        "credits_granted": float(credits),
    }
