"""
Credit deduction for AI features.

One routine charges every feature; each feature is a FeatureCharge record naming
its request field, how the owner is looked up, its fixed price and its ledger tag.

Flow: resolve owner -> load balance -> advisory balance check -> deduct_credits
procedure -> read back balance and the audit row. The procedure is the only
authority on the balance; the pre-check exists to fail fast with the shortfall.
No retries and no de-duplication: charging the same record twice deducts twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import UUID

import asyncpg

from backend.app.core.errors import (
    CreditsRecordNotFound,
    DeductionRpcFailed,
    InsufficientCredits,
    MissingParameter,
    NotFoundError,
    RecordNotFound,
)
from backend.app.services.identity import LookupKind, ResolvedOwner, resolve_owner
from backend.app.storage import ledger_storage

logger = logging.getLogger(__name__)


class _BlankMissing(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class FeatureCharge:
    slug: str
    id_field: str
    price: Decimal
    feature_tag: str
    lookup: LookupKind
    label: str
    table: Optional[str] = None
    column: Optional[str] = None
    description_template: str = ""
    context_fields: Tuple[str, ...] = ()

    def describe(self, record: Optional[Mapping[str, Any]], override: Any = None) -> str:
        if isinstance(override, str) and override.strip():
            return override.strip()
        values = _BlankMissing({k: v for k, v in (record or {}).items() if v is not None})
        text = self.description_template.format_map(values)
        return " ".join(text.split()) or f"Credits deducted for {self.label}"

    def context(self, record: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not record:
            return {}
        return {k: record.get(k) for k in self.context_fields}


FEATURES: Dict[str, FeatureCharge] = {
    f.slug: f
    for f in (
        FeatureCharge(
            slug="resume-pdf",
            id_field="cv_chat_id",
            price=Decimal("2"),
            feature_tag="resume_pdf",
            lookup=LookupKind.PROFILE_FIELD,
            column="cv_chat_id",
            label="resume PDF generation",
            description_template="Credits deducted for resume PDF generation",
        ),
        FeatureCharge(
            slug="resume-telegram",
            id_field="user_profile_id",
            price=Decimal("2"),
            feature_tag="resume_telegram",
            lookup=LookupKind.PROFILE,
            label="resume (Telegram)",
            description_template="Resume - telegram",
        ),
        FeatureCharge(
            slug="cover-letter",
            id_field="cover_letter_id",
            price=Decimal("1.5"),
            feature_tag="cover_letter",
            lookup=LookupKind.FEATURE_RECORD,
            table="job_cover_letters",
            label="cover letter",
            description_template="Credits deducted for cover letter - {company_name} {job_title}",
            context_fields=("company_name", "job_title"),
        ),
        FeatureCharge(
            slug="job-analysis",
            id_field="job_analysis_id",
            price=Decimal("1.0"),
            feature_tag="job_analysis",
            lookup=LookupKind.FEATURE_RECORD,
            table="job_analyses",
            label="job analysis",
            description_template="Credits deducted for job analysis - {company_name} {job_title}",
            context_fields=("company_name", "job_title"),
        ),
        FeatureCharge(
            slug="interview-prep",
            id_field="interview_prep_id",
            price=Decimal("2.0"),
            feature_tag="interview_prep",
            lookup=LookupKind.FEATURE_RECORD,
            table="interview_prep",
            label="interview prep",
            description_template="Credits deducted for interview prep - {company_name} {job_title}",
            context_fields=("company_name", "job_title"),
        ),
        FeatureCharge(
            slug="interview-prep-telegram",
            id_field="user_profile_id",
            price=Decimal("6.0"),
            feature_tag="interview_prep_telegram",
            lookup=LookupKind.PROFILE,
            label="interview prep (Telegram)",
            description_template="Interview Prep - telegram",
        ),
        FeatureCharge(
            slug="company-analysis",
            id_field="analysis_id",
            price=Decimal("3.0"),
            feature_tag="company_analysis",
            lookup=LookupKind.FEATURE_RECORD,
            table="company_role_analyses",
            label="company analysis",
            description_template="Company analysis completed for {company_name} - {job_title}",
            context_fields=("company_name", "job_title"),
        ),
        FeatureCharge(
            slug="linkedin-post",
            id_field="post_id",
            price=Decimal("3.0"),
            feature_tag="linkedin_post",
            lookup=LookupKind.FEATURE_RECORD,
            table="job_linkedin",
            label="LinkedIn post",
            description_template="LinkedIn post generation completed for post {id}",
            context_fields=("topic",),
        ),
        FeatureCharge(
            slug="linkedin-image",
            id_field="image_id",
            price=Decimal("1.5"),
            feature_tag="linkedin_image",
            lookup=LookupKind.FEATURE_RECORD,
            table="linkedin_post_images",
            label="LinkedIn image",
            description_template=(
                "LinkedIn image generation completed for post {post_id}, variation {variation_number}"
            ),
            context_fields=("post_id", "variation_number"),
        ),
        FeatureCharge(
            slug="job-alert",
            id_field="alert_id",
            price=Decimal("1.5"),
            feature_tag="job_alert_execution",
            lookup=LookupKind.FEATURE_RECORD,
            table="job_alerts",
            label="job alert",
            description_template="Job alert executed for {job_title} in {location}, {country}",
            context_fields=("job_title", "location", "country"),
        ),
        FeatureCharge(
            slug="visa-sponsorship-telegram",
            id_field="user_profile_id",
            price=Decimal("2.0"),
            feature_tag="visa_sponsorship_telegram",
            lookup=LookupKind.PROFILE,
            label="visa sponsorship lookup (Telegram)",
            description_template="Visa Sponsor details - telegram",
        ),
    )
}

AI_INTERVIEW_ID_FIELD = "credits_record_id"
AI_INTERVIEW_DEFAULT_DESCRIPTION = "AI mock interview credit deducted via API"


def get_feature(slug: str) -> FeatureCharge:
    feature = FEATURES.get(slug)
    if feature is None:
        raise NotFoundError("Unknown feature", feature=slug, available=sorted(FEATURES))
    return feature


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _num(value: Any) -> float:
    return float(value)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value if value is not None else 0))


def _required_identifier(payload: Mapping[str, Any], field_name: str) -> Any:
    value = payload.get(field_name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingParameter(field_name)
    return value.strip() if isinstance(value, str) else value


@dataclass
class DeductionResult:
    feature: FeatureCharge
    identifier: Any
    owner: ResolvedOwner
    previous_balance: Decimal
    new_balance: Decimal
    description: str
    transaction: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": f"Credits deducted successfully for {self.feature.label}",
            "feature_used": self.feature.feature_tag,
            "credits_deducted": _num(self.feature.price),
            "previous_balance": _num(self.previous_balance),
            "remaining_balance": _num(self.new_balance),
            "user_id": str(self.owner.user_id),
            "profile_id": str(self.owner.profile_id) if self.owner.profile_id else None,
            self.feature.id_field: str(self.identifier),
            "description": self.description,
            "details": self.feature.context(self.owner.record),
            "transaction": self.transaction,
            "timestamp": self.timestamp,
        }


async def charge_feature(
    conn: asyncpg.Connection,
    feature: FeatureCharge,
    payload: Mapping[str, Any],
) -> DeductionResult:
    """Charge `feature.price` credits to the owner of the identifier in `payload`."""
    identifier = _required_identifier(payload, feature.id_field)

    owner = await resolve_owner(
        conn,
        identifier,
        feature.lookup,
        table=feature.table,
        column=feature.column,
    )
    logger.info("%s: %s=%s resolved to user %s", feature.slug, feature.id_field, identifier, owner.user_id)

    credits = await ledger_storage.get_user_credits(conn, owner.user_id)
    if not credits:
        logger.warning("%s: no user_credits row for user %s", feature.slug, owner.user_id)
        raise CreditsRecordNotFound(user_id=str(owner.user_id))

    balance = _to_decimal(credits.get("current_balance"))
    price = feature.price
    if balance < price:
        logger.info("%s: insufficient credits for user %s (%s < %s)", feature.slug, owner.user_id, balance, price)
        raise InsufficientCredits(
            current_balance=_num(balance),
            required=_num(price),
            shortfall=_num(price - balance),
            user_id=str(owner.user_id),
            feature_used=feature.feature_tag,
        )

    description = feature.describe(owner.record, payload.get("description"))
    try:
        transaction_id = await ledger_storage.deduct_credits(
            conn,
            user_id=owner.user_id,
            amount=price,
            feature=feature.feature_tag,
            description=description,
        )
    except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("%s: deduct_credits failed for user %s: %s", feature.slug, owner.user_id, e)
        raise DeductionRpcFailed(details=str(e), user_id=str(owner.user_id)) from e

    if not transaction_id:
        # The procedure re-checks atomically; a concurrent charge may have drained the balance.
        logger.warning("%s: ledger refused deduction for user %s", feature.slug, owner.user_id)
        raise InsufficientCredits(
            "Credit deduction refused by ledger",
            current_balance=_num(balance),
            required=_num(price),
            shortfall=_num(max(price - balance, Decimal("0"))),
            user_id=str(owner.user_id),
            feature_used=feature.feature_tag,
        )

    updated = await ledger_storage.get_user_credits(conn, owner.user_id)
    new_balance = _to_decimal(updated["current_balance"]) if updated else balance - price
    transaction = await ledger_storage.get_transaction(conn, transaction_id)

    logger.info(
        "%s: deducted %s credits from user %s (%s -> %s)",
        feature.slug, price, owner.user_id, balance, new_balance,
    )
    return DeductionResult(
        feature=feature,
        identifier=identifier,
        owner=owner,
        previous_balance=balance,
        new_balance=new_balance,
        description=description,
        transaction=transaction,
    )


async def charge_ai_interview(conn: asyncpg.Connection, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Use one unit of the separate AI phone interview pool."""
    identifier = _required_identifier(payload, AI_INTERVIEW_ID_FIELD)
    try:
        record_id = UUID(str(identifier))
    except ValueError:
        record_id = None

    record = await ledger_storage.get_ai_interview_credits(conn, record_id) if record_id else None
    if not record:
        raise RecordNotFound(
            "Invalid credits_record_id",
            record_id=str(identifier),
            table="ai_interview_credits",
        )

    user_id = record["user_id"]
    remaining = int(record.get("remaining_credits") or 0)
    if remaining <= 0:
        raise InsufficientCredits(
            remaining_credits=remaining,
            required=1,
            shortfall=1 - remaining,
            user_id=str(user_id),
        )

    description = payload.get("description")
    if not isinstance(description, str) or not description.strip():
        description = AI_INTERVIEW_DEFAULT_DESCRIPTION
    try:
        used = await ledger_storage.use_ai_interview_credit(conn, user_id=user_id, description=description)
    except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("ai-interview: use_ai_interview_credit failed for user %s: %s", user_id, e)
        raise DeductionRpcFailed("Failed to deduct credit", details=str(e), user_id=str(user_id)) from e

    if not used:
        logger.warning("ai-interview: ledger refused deduction for user %s", user_id)
        raise InsufficientCredits(
            "Credit deduction refused by ledger",
            remaining_credits=remaining,
            required=1,
            shortfall=1,
            user_id=str(user_id),
        )

    updated = await ledger_storage.get_ai_interview_credits(conn, record_id) or {}
    logger.info("ai-interview: used one credit for user %s", user_id)
    return {
        "success": True,
        "message": "Credit deducted successfully",
        "credits_deducted": 1,
        "remaining_credits": updated.get("remaining_credits", remaining - 1),
        "used_credits": updated.get("used_credits", int(record.get("used_credits") or 0) + 1),
        "total_credits": updated.get("total_credits", record.get("total_credits")),
        "user_id": str(user_id),
        AI_INTERVIEW_ID_FIELD: str(identifier),
        "timestamp": _now_iso(),
    }
