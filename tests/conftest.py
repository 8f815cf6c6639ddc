"""
Pytest configuration and fixtures.

The storage layer is replaced by FakeLedger, an in-memory model of the tables and
procedures, so the services and routes run without Postgres.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional
from uuid import UUID, uuid4

import copy

import httpx
import pytest
import pytest_asyncio

from backend.app.core.config import Settings, get_settings
from backend.app.core.database import db
from backend.app.main import app
from backend.app.storage import ledger_storage

N8N_ENV_VARS = (
    "N8N_JG_WEBHOOK_URL",
    "N8N_CL_WEBHOOK_URL",
    "N8N_LINKEDIN_WEBHOOK_URL",
    "N8N_COMPANY_WEBHOOK_URL",
    "N8N_INTERVIEW_WEBHOOK_URL",
    "N8N_RESUME_PDF_WEBHOOK_URL",
    "N8N_LINKEDIN_IMAGE_WEBHOOK_URL",
)


class FakeConnection:
    """
    Stands in for asyncpg.Connection; only transactions are used directly.
    An exception leaving a transaction restores the ledger to its state on entry.
    """

    def __init__(self):
        self.transactions_opened = 0
        self.rollbacks = 0
        self.ledger: Optional["FakeLedger"] = None

    @asynccontextmanager
    async def transaction(self):
        self.transactions_opened += 1
        saved = self.ledger.snapshot() if self.ledger is not None else None
        try:
            yield
        except Exception:
            self.rollbacks += 1
            if saved is not None:
                self.ledger.restore(saved)
            raise


class FakeLedger:
    """In-memory users, profiles, feature rows and credit ledger."""

    def __init__(self):
        self.users: Dict[UUID, Dict[str, Any]] = {}
        self.profiles: Dict[UUID, Dict[str, Any]] = {}
        self.records: Dict[str, Dict[UUID, Dict[str, Any]]] = {t: {} for t in ledger_storage.FEATURE_TABLES}
        self.credits: Dict[UUID, Dict[str, Any]] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.ai_credits: Dict[UUID, Dict[str, Any]] = {}
        self.ai_transactions: List[Dict[str, Any]] = []
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.deduct_error: Optional[Exception] = None
        self.deduct_calls = 0

    # ---- seeding ----

    def add_user(
        self,
        *,
        balance: Optional[str] = "0",
        email: Optional[str] = None,
        auth_id: Optional[str] = None,
    ) -> UUID:
        user_id = uuid4()
        self.users[user_id] = {
            "id": user_id,
            "auth_id": auth_id or f"user_{user_id.hex[:8]}",
            "email": email,
            "created_at": datetime.now(timezone.utc),
        }
        if balance is not None:
            self.credits[user_id] = {
                "user_id": user_id,
                "current_balance": Decimal(balance),
                "free_credits": Decimal("0"),
                "paid_credits": Decimal("0"),
                "subscription_plan": None,
                "updated_at": datetime.now(timezone.utc),
            }
        return user_id

    def add_profile(self, user_id: Optional[UUID], **fields: Any) -> UUID:
        profile_id = uuid4()
        self.profiles[profile_id] = {"id": profile_id, "user_id": user_id, **fields}
        return profile_id

    def add_record(self, table: str, profile_id: UUID, **fields: Any) -> UUID:
        record_id = uuid4()
        self.records[table][record_id] = {"id": record_id, "user_id": profile_id, **fields}
        return record_id

    def add_ai_interview_credits(self, user_id: UUID, *, total: int, used: int = 0) -> UUID:
        record_id = uuid4()
        self.ai_credits[record_id] = {
            "id": record_id,
            "user_id": user_id,
            "total_credits": total,
            "used_credits": used,
            "remaining_credits": total - used,
        }
        return record_id

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {"credits": self.credits, "transactions": self.transactions, "payments": self.payments}
        )

    def restore(self, saved: Dict[str, Any]) -> None:
        self.credits = saved["credits"]
        self.transactions = saved["transactions"]
        self.payments = saved["payments"]

    def balance(self, user_id: UUID) -> Decimal:
        return self.credits[user_id]["current_balance"]

    def transactions_for(self, user_id: UUID) -> List[Dict[str, Any]]:
        return [t for t in self.transactions if t["user_id"] == user_id]

    # ---- ledger_storage replacements ----

    async def get_user_by_auth_id(self, conn, auth_id):
        return next((dict(u) for u in self.users.values() if u["auth_id"] == auth_id), None)

    async def get_user_by_email(self, conn, email):
        wanted = (email or "").lower()
        return next((dict(u) for u in self.users.values() if (u["email"] or "").lower() == wanted), None)

    async def get_profile(self, conn, profile_id):
        profile = self.profiles.get(profile_id)
        return dict(profile) if profile else None

    async def get_profile_by_field(self, conn, column, value):
        if column not in ledger_storage.PROFILE_LOOKUP_COLUMNS:
            raise ValueError(f"Unsupported profile lookup column: {column}")
        return next((dict(p) for p in self.profiles.values() if p.get(column) == value), None)

    async def get_feature_record(self, conn, table, record_id):
        if table not in ledger_storage.FEATURE_TABLES:
            raise ValueError(f"Unsupported feature table: {table}")
        record = self.records[table].get(record_id)
        return dict(record) if record else None

    async def get_user_credits(self, conn, user_id):
        row = self.credits.get(user_id)
        return dict(row) if row else None

    async def deduct_credits(self, conn, *, user_id, amount, feature, description=None):
        self.deduct_calls += 1
        if self.deduct_error is not None:
            raise self.deduct_error
        row = self.credits.get(user_id)
        if amount <= 0 or row is None or row["current_balance"] < amount:
            return None
        before = row["current_balance"]
        row["current_balance"] = before - amount
        transaction_id = uuid4()
        self.transactions.append(
            {
                "id": transaction_id,
                "user_id": user_id,
                "transaction_type": "deduction",
                "amount": -amount,
                "balance_before": before,
                "balance_after": row["current_balance"],
                "feature_used": feature,
                "description": description,
                "created_at": datetime.now(timezone.utc),
            }
        )
        return transaction_id

    async def add_credits(self, conn, *, user_id, amount, transaction_type, description=None, is_paid=False):
        row = self.credits.get(user_id)
        if amount <= 0 or row is None:
            return False
        before = row["current_balance"]
        row["current_balance"] = before + amount
        if is_paid:
            row["paid_credits"] = row.get("paid_credits", Decimal("0")) + amount
        self.transactions.append(
            {
                "id": uuid4(),
                "user_id": user_id,
                "transaction_type": transaction_type,
                "amount": amount,
                "balance_before": before,
                "balance_after": row["current_balance"],
                "feature_used": None,
                "description": description,
                "created_at": datetime.now(timezone.utc),
            }
        )
        return True

    async def initialize_user_credits(self, conn, user_id):
        row = self.credits.setdefault(
            user_id,
            {
                "user_id": user_id,
                "current_balance": Decimal("0"),
                "free_credits": Decimal("0"),
                "paid_credits": Decimal("0"),
                "subscription_plan": "free",
                "updated_at": datetime.now(timezone.utc),
            },
        )
        row.setdefault("id", uuid4())
        return row["id"]

    async def get_transaction(self, conn, transaction_id):
        return next((dict(t) for t in self.transactions if t["id"] == transaction_id), None)

    async def list_transactions(self, conn, user_id, limit=20):
        return [dict(t) for t in reversed(self.transactions_for(user_id))][:limit]

    async def get_ai_interview_credits(self, conn, record_id):
        row = self.ai_credits.get(record_id)
        return dict(row) if row else None

    async def use_ai_interview_credit(self, conn, *, user_id, description=None):
        row = next((r for r in self.ai_credits.values() if r["user_id"] == user_id and r["remaining_credits"] > 0), None)
        if row is None:
            return False
        row["used_credits"] += 1
        row["remaining_credits"] -= 1
        self.ai_transactions.append({"user_id": user_id, "amount": -1, "description": description})
        return True

    async def record_payment_event(self, conn, event):
        if event["webhook_id"] in self.payments:
            return False
        self.payments[event["webhook_id"]] = dict(event)
        return True


PATCHED_STORAGE_FUNCTIONS = (
    "get_user_by_auth_id",
    "get_user_by_email",
    "get_profile",
    "get_profile_by_field",
    "get_feature_record",
    "get_user_credits",
    "deduct_credits",
    "add_credits",
    "initialize_user_credits",
    "get_transaction",
    "list_transactions",
    "get_ai_interview_credits",
    "use_ai_interview_credit",
    "record_payment_event",
)


@pytest.fixture
def conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def ledger(monkeypatch, conn) -> FakeLedger:
    """Patch the storage layer and the pool with in-memory fakes."""
    fake = FakeLedger()
    conn.ledger = fake
    for name in PATCHED_STORAGE_FUNCTIONS:
        monkeypatch.setattr(ledger_storage, name, getattr(fake, name))

    @asynccontextmanager
    async def _connection():
        yield conn

    monkeypatch.setattr(db, "connection", _connection)
    return fake


@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings with no workflow URLs, no service key and no payment secret."""
    for name in N8N_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return Settings(
        _env_file=None,
        service_api_key=None,
        payment_webhook_secret=None,
        product_credits={"prod_starter": 10, "prod_pro": 50},
    )


@pytest_asyncio.fixture
async def client(ledger, settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create test HTTP client."""
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
