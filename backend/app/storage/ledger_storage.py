"""
Storage functions for the credit ledger.

Handles users, profiles, feature records, balances, transactions and payment events.
Balances are never written here directly: every mutation goes through a stored procedure.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID
import json

import asyncpg


# Feature tables whose rows may be looked up by id. Table names are interpolated
# into SQL, so only these are accepted.
FEATURE_TABLES = frozenset(
    {
        "job_analyses",
        "job_cover_letters",
        "interview_prep",
        "company_role_analyses",
        "job_linkedin",
        "linkedin_post_images",
        "job_alerts",
    }
)

# Unique user_profile columns usable as a lookup key.
PROFILE_LOOKUP_COLUMNS = frozenset({"cv_chat_id", "chat_id"})


def _row(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    return dict(row) if row else None


# ==================== Users & Profiles ====================

async def get_user_by_auth_id(conn: asyncpg.Connection, auth_id: str) -> Optional[Dict[str, Any]]:
    """Get user by Supabase Auth user id."""
    row = await conn.fetchrow("SELECT * FROM users WHERE auth_id = $1", auth_id)
    return _row(row)


async def get_user_by_email(conn: asyncpg.Connection, email: str) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        "SELECT * FROM users WHERE lower(email) = lower($1) ORDER BY created_at LIMIT 1",
        email,
    )
    return _row(row)


async def get_profile(conn: asyncpg.Connection, profile_id: UUID) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow("SELECT * FROM user_profile WHERE id = $1", profile_id)
    return _row(row)


async def get_profile_by_field(
    conn: asyncpg.Connection,
    column: str,
    value: str,
) -> Optional[Dict[str, Any]]:
    """Get a profile by one of its unique channel columns (e.g. cv_chat_id)."""
    if column not in PROFILE_LOOKUP_COLUMNS:
        raise ValueError(f"Unsupported profile lookup column: {column}")
    row = await conn.fetchrow(f"SELECT * FROM user_profile WHERE {column} = $1", value)
    return _row(row)


# ==================== Feature Records ====================

async def get_feature_record(
    conn: asyncpg.Connection,
    table: str,
    record_id: UUID,
) -> Optional[Dict[str, Any]]:
    """Get one AI-generation request row. `user_id` on the row is a profile id."""
    if table not in FEATURE_TABLES:
        raise ValueError(f"Unsupported feature table: {table}")
    row = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1", record_id)
    return _row(row)


# ==================== Credit Ledger ====================

async def get_user_credits(conn: asyncpg.Connection, user_id: UUID) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        """
        SELECT user_id, current_balance, free_credits, paid_credits, subscription_plan, updated_at
        FROM user_credits
        WHERE user_id = $1
        """,
        user_id,
    )
    return _row(row)


async def deduct_credits(
    conn: asyncpg.Connection,
    *,
    user_id: UUID,
    amount: Decimal,
    feature: str,
    description: Optional[str] = None,
) -> Optional[UUID]:
    """
    Call the ledger procedure. Returns the id of the audit row it wrote, or None
    when the deduction was refused and nothing changed.
    """
    return await conn.fetchval(
        "SELECT deduct_credits_entry($1, $2, $3, $4)",
        user_id,
        amount,
        feature,
        description,
    )


async def add_credits(
    conn: asyncpg.Connection,
    *,
    user_id: UUID,
    amount: Decimal,
    transaction_type: str,
    description: Optional[str] = None,
    is_paid: bool = False,
) -> bool:
    result = await conn.fetchval(
        "SELECT add_credits($1, $2, $3, $4, $5)",
        user_id,
        amount,
        transaction_type,
        description,
        is_paid,
    )
    return bool(result)


async def initialize_user_credits(conn: asyncpg.Connection, user_id: UUID) -> Optional[UUID]:
    """Create the user_credits row if missing; returns its id."""
    return await conn.fetchval("SELECT initialize_user_credits($1)", user_id)


async def get_transaction(conn: asyncpg.Connection, transaction_id: UUID) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow("SELECT * FROM credit_transactions WHERE id = $1", transaction_id)
    return _row(row)


async def list_transactions(
    conn: asyncpg.Connection,
    user_id: UUID,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    rows = await conn.fetch(
        """
        SELECT *
        FROM credit_transactions
        WHERE user_id = $1
        ORDER BY created_at DESC
        LIMIT $2
        """,
        user_id,
        limit,
    )
    return [dict(r) for r in rows]


# ==================== AI Interview Credits ====================

async def get_ai_interview_credits(conn: asyncpg.Connection, record_id: UUID) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        """
        SELECT id, user_id, total_credits, used_credits, remaining_credits
        FROM ai_interview_credits
        WHERE id = $1
        """,
        record_id,
    )
    return _row(row)


async def use_ai_interview_credit(
    conn: asyncpg.Connection,
    *,
    user_id: UUID,
    description: Optional[str] = None,
) -> bool:
    result = await conn.fetchval(
        "SELECT use_ai_interview_credit($1, $2)",
        user_id,
        description,
    )
    return bool(result)


# ==================== Payments ====================

async def record_payment_event(conn: asyncpg.Connection, event: Dict[str, Any]) -> bool:
    """Insert a payment audit row. Returns False if this webhook id was already recorded."""
    row = await conn.fetchrow(
        """
        INSERT INTO payment_records (
            webhook_id, event_type, customer_email, customer_name, product_id, quantity,
            amount, currency, status, payment_id, subscription_id, credits_granted, raw_payload
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
        ON CONFLICT (webhook_id) DO NOTHING
        RETURNING id
        """,
        event["webhook_id"],
        event["event_type"],
        event.get("customer_email"),
        event.get("customer_name"),
        event.get("product_id"),
        event.get("quantity") or 1,
        event.get("amount"),
        event.get("currency"),
        event.get("status"),
        event.get("payment_id"),
        event.get("subscription_id"),
        event.get("credits_granted") or 0,
        json.dumps(event.get("raw_payload"), default=str) if event.get("raw_payload") is not None else None,
    )
    return row is not None
