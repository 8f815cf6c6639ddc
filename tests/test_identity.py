"""
Tests for the record -> profile -> user resolution chain.
"""

from uuid import uuid4

import pytest

from backend.app.core.errors import ProfileNotFound, RecordNotFound
from backend.app.services.identity import LookupKind, resolve_owner


@pytest.mark.asyncio
async def test_feature_record_resolves_through_profile(ledger, conn):
    user_id = ledger.add_user(balance="5")
    profile_id = ledger.add_profile(user_id)
    record_id = ledger.add_record("job_cover_letters", profile_id, company_name="Acme")

    owner = await resolve_owner(conn, str(record_id), LookupKind.FEATURE_RECORD, table="job_cover_letters")

    assert owner.user_id == user_id
    assert owner.profile_id == profile_id
    assert owner.record["company_name"] == "Acme"


@pytest.mark.asyncio
async def test_random_record_id_is_record_not_found(ledger, conn):
    with pytest.raises(RecordNotFound):
        await resolve_owner(conn, str(uuid4()), LookupKind.FEATURE_RECORD, table="job_analyses")


@pytest.mark.asyncio
async def test_malformed_record_id_is_record_not_found(ledger, conn):
    with pytest.raises(RecordNotFound):
        await resolve_owner(conn, "not-a-uuid", LookupKind.FEATURE_RECORD, table="job_analyses")


@pytest.mark.asyncio
async def test_record_with_deleted_profile_is_profile_not_found(ledger, conn):
    user_id = ledger.add_user()
    profile_id = ledger.add_profile(user_id)
    record_id = ledger.add_record("interview_prep", profile_id)
    del ledger.profiles[profile_id]

    with pytest.raises(ProfileNotFound) as exc_info:
        await resolve_owner(conn, record_id, LookupKind.FEATURE_RECORD, table="interview_prep")
    assert exc_info.value.error_code == "profile_not_found"


@pytest.mark.asyncio
async def test_profile_without_user_is_profile_not_found(ledger, conn):
    profile_id = ledger.add_profile(None)

    with pytest.raises(ProfileNotFound):
        await resolve_owner(conn, profile_id, LookupKind.PROFILE)


@pytest.mark.asyncio
async def test_profile_lookup(ledger, conn):
    user_id = ledger.add_user()
    profile_id = ledger.add_profile(user_id)

    owner = await resolve_owner(conn, str(profile_id), LookupKind.PROFILE)

    assert owner.user_id == user_id
    assert owner.record is None


@pytest.mark.asyncio
async def test_profile_field_lookup(ledger, conn):
    user_id = ledger.add_user()
    ledger.add_profile(user_id, cv_chat_id="cv-123")

    owner = await resolve_owner(conn, "cv-123", LookupKind.PROFILE_FIELD, column="cv_chat_id")
    assert owner.user_id == user_id

    with pytest.raises(ProfileNotFound):
        await resolve_owner(conn, "cv-missing", LookupKind.PROFILE_FIELD, column="cv_chat_id")
