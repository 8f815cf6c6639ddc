"""
Identity resolution: feature record -> user profile -> user.

Feature tables store the owning *profile* id in their `user_id` column; the billing
owner is the profile's `user_id`. Every deduction resolves through both hops.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

import asyncpg

from backend.app.core.errors import ProfileNotFound, RecordNotFound
from backend.app.storage import ledger_storage

logger = logging.getLogger(__name__)


class LookupKind(str, Enum):
    FEATURE_RECORD = "feature_record"
    PROFILE = "profile"
    PROFILE_FIELD = "profile_field"


@dataclass(frozen=True)
class ResolvedOwner:
    user_id: UUID
    profile_id: UUID
    record: Optional[Dict[str, Any]] = field(default=None, compare=False)


def _as_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def _owner_of_profile(
    conn: asyncpg.Connection,
    profile_id: Any,
    *,
    record: Optional[Dict[str, Any]] = None,
) -> ResolvedOwner:
    pid = _as_uuid(profile_id)
    profile = await ledger_storage.get_profile(conn, pid) if pid else None
    if not profile:
        logger.warning("Profile %s not found", profile_id)
        raise ProfileNotFound(profile_id=str(profile_id) if profile_id is not None else None)
    return _owner_from_profile(profile, record=record)


def _owner_from_profile(profile: Dict[str, Any], *, record: Optional[Dict[str, Any]] = None) -> ResolvedOwner:
    user_id = _as_uuid(profile.get("user_id"))
    if user_id is None:
        logger.warning("Profile %s has no owning user", profile.get("id"))
        raise ProfileNotFound(
            "User profile has no owning user",
            profile_id=str(profile.get("id")),
        )
    return ResolvedOwner(user_id=user_id, profile_id=_as_uuid(profile.get("id")), record=record)


async def resolve_owner(
    conn: asyncpg.Connection,
    identifier: Any,
    kind: LookupKind,
    *,
    table: Optional[str] = None,
    column: Optional[str] = None,
) -> ResolvedOwner:
    """
    Resolve the user that owns `identifier`.

    - FEATURE_RECORD: `identifier` is a row id in `table`.
    - PROFILE: `identifier` is a user_profile id (Telegram flows).
    - PROFILE_FIELD: `identifier` is the value of the unique profile `column`.

    Raises RecordNotFound / ProfileNotFound; never returns a partial result.
    """
    if kind is LookupKind.FEATURE_RECORD:
        if not table:
            raise ValueError("FEATURE_RECORD lookup requires a table")
        record_id = _as_uuid(identifier)
        record = await ledger_storage.get_feature_record(conn, table, record_id) if record_id else None
        if not record:
            logger.info("No %s row with id %s", table, identifier)
            raise RecordNotFound(record_id=str(identifier), table=table)
        return await _owner_of_profile(conn, record.get("user_id"), record=record)

    if kind is LookupKind.PROFILE:
        return await _owner_of_profile(conn, identifier)

    if kind is LookupKind.PROFILE_FIELD:
        if not column:
            raise ValueError("PROFILE_FIELD lookup requires a column")
        profile = await ledger_storage.get_profile_by_field(conn, column, str(identifier))
        if not profile:
            logger.warning("No profile with %s=%s", column, identifier)
            raise ProfileNotFound(**{column: str(identifier)})
        return _owner_from_profile(profile)

    raise ValueError(f"Unknown lookup kind: {kind}")
