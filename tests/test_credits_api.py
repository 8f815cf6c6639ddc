"""
Tests for the credit deduction routes.
"""

from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from backend.app.core import auth
from backend.app.core.auth import AuthUser
from backend.app.core.config import get_settings
from backend.app.main import app

API = "/api/v1/credits"


@pytest.mark.asyncio
async def test_resume_pdf_route(client, ledger):
    user_id = ledger.add_user(balance="5.0")
    ledger.add_profile(user_id, cv_chat_id="chat-7")

    resp = await client.post(f"{API}/resume-pdf", json={"cv_chat_id": "chat-7"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["feature_used"] == "resume_pdf"
    assert body["previous_balance"] == 5.0
    assert body["remaining_balance"] == 3.0
    assert body["user_id"] == str(user_id)
    assert resp.headers["access-control-allow-origin"] == "*"
    assert ledger.balance(user_id) == Decimal("3.0")


@pytest.mark.asyncio
async def test_insufficient_credits_is_402(client, ledger):
    user_id = ledger.add_user(balance="1.0")
    profile_id = ledger.add_profile(user_id)

    resp = await client.post(f"{API}/interview-prep-telegram", json={"user_profile_id": str(profile_id)})

    assert resp.status_code == 402
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "insufficient_credits"
    assert body["current_balance"] == 1.0
    assert body["required"] == 6.0
    assert ledger.balance(user_id) == Decimal("1.0")


@pytest.mark.asyncio
async def test_missing_record_and_deleted_profile_codes(client, ledger):
    user_id = ledger.add_user(balance="10")
    profile_id = ledger.add_profile(user_id)
    record_id = ledger.add_record("job_analyses", profile_id)
    del ledger.profiles[profile_id]

    missing = await client.post(f"{API}/job-analysis", json={"job_analysis_id": str(uuid4())})
    orphaned = await client.post(f"{API}/job-analysis", json={"job_analysis_id": str(record_id)})

    assert missing.status_code == 404
    assert orphaned.status_code == 404
    assert missing.json()["error_code"] == "record_not_found"
    assert orphaned.json()["error_code"] == "profile_not_found"


@pytest.mark.asyncio
async def test_missing_field_is_400(client, ledger):
    resp = await client.post(f"{API}/cover-letter", json={})

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "missing_parameter"
    assert resp.json()["field"] == "cover_letter_id"


@pytest.mark.asyncio
async def test_invalid_json_is_400(client, ledger):
    resp = await client.post(
        f"{API}/cover-letter",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "validation_error"


@pytest.mark.asyncio
async def test_unknown_feature_is_404(client, ledger):
    resp = await client.post(f"{API}/resume-fax", json={"id": "x"})

    assert resp.status_code == 404
    assert resp.json()["error_code"] == "not_found"


@pytest.mark.asyncio
async def test_options_preflight(client, ledger):
    for path in ("/linkedin-image", "/ai-interview"):
        resp = await client.options(f"{API}{path}")
        assert resp.status_code == 204
        assert "x-api-key" in resp.headers["access-control-allow-headers"]


@pytest.mark.asyncio
async def test_get_on_deduction_route_is_405(client, ledger):
    resp = await client.get(f"{API}/linkedin-image")

    assert resp.status_code == 405
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_service_key_required_when_configured(client, ledger, settings):
    settings.service_api_key = "s3cret"
    user_id = ledger.add_user(balance="5")
    profile_id = ledger.add_profile(user_id)
    payload = {"user_profile_id": str(profile_id)}

    rejected = await client.post(f"{API}/resume-telegram", json=payload)
    accepted = await client.post(f"{API}/resume-telegram", json=payload, headers={"x-api-key": "s3cret"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert ledger.balance(user_id) == Decimal("3")


@pytest.mark.asyncio
async def test_ai_interview_route(client, ledger):
    user_id = ledger.add_user()
    record_id = ledger.add_ai_interview_credits(user_id, total=1)

    first = await client.post(f"{API}/ai-interview", json={"credits_record_id": str(record_id)})
    second = await client.post(f"{API}/ai-interview", json={"credits_record_id": str(record_id)})

    assert first.status_code == 200
    assert first.json()["remaining_credits"] == 0
    assert second.status_code == 402


@pytest.mark.asyncio
async def test_list_features(client, ledger):
    resp = await client.get(f"{API}/features")

    assert resp.status_code == 200
    features = {f["feature"]: f for f in resp.json()["features"]}
    assert features["job-alert"]["feature_used"] == "job_alert_execution"
    assert features["linkedin-post"]["credits"] == 3.0


@pytest.mark.asyncio
async def test_my_credits(client, ledger, monkeypatch):
    user_id = ledger.add_user(balance="4", auth_id="auth-abc")
    profile_id = ledger.add_profile(user_id)
    await client.post(f"{API}/resume-telegram", json={"user_profile_id": str(profile_id)})

    async def _fake_user(settings, token):
        assert token == "tok"
        return AuthUser(auth_id="auth-abc")

    monkeypatch.setattr(auth, "_supabase_get_user", _fake_user)

    unauthenticated = await client.get(f"{API}/me")
    resp = await client.get(f"{API}/me", headers={"Authorization": "Bearer tok"})

    assert unauthenticated.status_code == 401
    assert resp.status_code == 200
    body = resp.json()
    assert body["current_balance"] == 2.0
    assert len(body["transactions"]) == 1
    assert body["transactions"][0]["feature_used"] == "resume_telegram"


@pytest.mark.asyncio
async def test_missing_credits_row_is_404(client, ledger, monkeypatch):
    user_id = ledger.add_user(balance=None, auth_id="auth-nocredits")
    profile_id = ledger.add_profile(user_id)

    async def _fake_user(settings, token):
        return AuthUser(auth_id="auth-nocredits")

    monkeypatch.setattr(auth, "_supabase_get_user", _fake_user)

    deduction = await client.post(f"{API}/resume-telegram", json={"user_profile_id": str(profile_id)})
    me = await client.get(f"{API}/me", headers={"Authorization": "Bearer tok"})

    for resp in (deduction, me):
        assert resp.status_code == 404
        assert resp.json()["success"] is False
        assert resp.json()["error_code"] == "credits_record_not_found"
        assert resp.json()["user_id"] == str(user_id)


@pytest.mark.asyncio
async def test_unhandled_error_is_500_internal_error(ledger, settings, monkeypatch):
    user_id = ledger.add_user(balance="5")
    profile_id = ledger.add_profile(user_id)

    async def _broken(conn, user_id):
        raise RuntimeError("pool exhausted")

    monkeypatch.setattr("backend.app.storage.ledger_storage.get_user_credits", _broken)
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.post(
                f"{API}/resume-telegram",
                json={"user_profile_id": str(profile_id)},
                headers={"Origin": "https://app.example.com"},
            )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    body = resp.json()
    assert body == {"success": False, "error": "Internal server error", "error_code": "internal_error"}
    assert "pool exhausted" not in resp.text
    assert resp.headers["access-control-allow-origin"]
    assert ledger.balance(user_id) == Decimal("5")
