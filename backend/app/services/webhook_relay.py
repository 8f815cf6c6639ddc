"""
Webhook relay to the n8n workflow engine.

The front end posts a typed request (`webhook_type` + one data sub-object); we pick the
configured workflow URL for that type, attach traceability metadata and forward the
payload unchanged. The downstream status and body are handed back to the caller.
No de-duplication happens here: the fingerprint and execution id let the workflow
engine do its own.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from backend.app.core.config import Settings
from backend.app.core.errors import ConfigurationError, MissingParameter, UpstreamError, ValidationError

logger = logging.getLogger(__name__)


class WebhookType(str, Enum):
    JOB_GUIDE = "job_guide"
    COVER_LETTER = "cover_letter"
    LINKEDIN_POST = "linkedin_post"
    COMPANY_ANALYSIS = "company_analysis"
    INTERVIEW_PREP = "interview_prep"
    RESUME_PDF = "resume_pdf"
    LINKEDIN_IMAGE = "linkedin_image"


@dataclass(frozen=True)
class RelayRoute:
    webhook_type: WebhookType
    data_field: str
    env_var: str
    settings_attr: str


ROUTES: Dict[WebhookType, RelayRoute] = {
    r.webhook_type: r
    for r in (
        RelayRoute(WebhookType.JOB_GUIDE, "job_analysis", "N8N_JG_WEBHOOK_URL", "n8n_jg_webhook_url"),
        RelayRoute(WebhookType.COVER_LETTER, "job_cover_letter", "N8N_CL_WEBHOOK_URL", "n8n_cl_webhook_url"),
        RelayRoute(WebhookType.LINKEDIN_POST, "job_linkedin", "N8N_LINKEDIN_WEBHOOK_URL", "n8n_linkedin_webhook_url"),
        RelayRoute(
            WebhookType.COMPANY_ANALYSIS,
            "company_role_analysis",
            "N8N_COMPANY_WEBHOOK_URL",
            "n8n_company_webhook_url",
        ),
        RelayRoute(WebhookType.INTERVIEW_PREP, "interview_prep", "N8N_INTERVIEW_WEBHOOK_URL", "n8n_interview_webhook_url"),
        RelayRoute(WebhookType.RESUME_PDF, "resume", "N8N_RESUME_PDF_WEBHOOK_URL", "n8n_resume_pdf_webhook_url"),
        RelayRoute(
            WebhookType.LINKEDIN_IMAGE,
            "linkedin_image",
            "N8N_LINKEDIN_IMAGE_WEBHOOK_URL",
            "n8n_linkedin_image_webhook_url",
        ),
    )
}


# ==================== Tagged payloads ====================

class _RelayPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    user: Optional[Dict[str, Any]] = None
    event_type: Optional[str] = None
    timestamp: Optional[Any] = None
    anti_duplicate_metadata: Optional[Dict[str, Any]] = None


class JobGuidePayload(_RelayPayload):
    webhook_type: Literal["job_guide"]
    job_analysis: Dict[str, Any]


class CoverLetterPayload(_RelayPayload):
    webhook_type: Literal["cover_letter"]
    job_cover_letter: Dict[str, Any]


class LinkedInPostPayload(_RelayPayload):
    webhook_type: Literal["linkedin_post"]
    job_linkedin: Dict[str, Any]


class CompanyAnalysisPayload(_RelayPayload):
    webhook_type: Literal["company_analysis"]
    company_role_analysis: Dict[str, Any]


class InterviewPrepPayload(_RelayPayload):
    webhook_type: Literal["interview_prep"]
    interview_prep: Dict[str, Any]


class ResumePdfPayload(_RelayPayload):
    webhook_type: Literal["resume_pdf"]
    resume: Dict[str, Any]


class LinkedInImagePayload(_RelayPayload):
    webhook_type: Literal["linkedin_image"]
    linkedin_image: Dict[str, Any]


RelayPayload = Annotated[
    Union[
        JobGuidePayload,
        CoverLetterPayload,
        LinkedInPostPayload,
        CompanyAnalysisPayload,
        InterviewPrepPayload,
        ResumePdfPayload,
        LinkedInImagePayload,
    ],
    Field(discriminator="webhook_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(RelayPayload)


# ==================== Fingerprint ====================

def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _created_at_minute(value: Any) -> int:
    if not isinstance(value, str) or not value:
        return 0
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() // 60)


def generate_fingerprint(payload: Mapping[str, Any], route: RelayRoute) -> str:
    """Stable hash of who asked for what; identical requests within a minute collide."""
    data = payload.get(route.data_field) or {}
    user = payload.get("user") or {}
    meta = payload.get("anti_duplicate_metadata") or {}
    description = data.get("job_description") or ""
    fingerprint_data = {
        "user_id": user.get("id") or user.get("clerk_id") or "unknown",
        "record_id": data.get("id") or "unknown",
        "webhook_type": route.webhook_type.value,
        "company_name": data.get("company_name") or "",
        "job_title": data.get("job_title") or "",
        "job_description_hash": _sha256(description[:500]) if isinstance(description, str) and description else "no-desc",
        "execution_id": meta.get("execution_id") or "",
        "trigger_source": meta.get("trigger_source") or "unknown",
        "created_at_epoch": _created_at_minute(data.get("created_at")),
    }
    return _sha256(json.dumps(fingerprint_data, sort_keys=True, default=str))


# ==================== Relay ====================

@dataclass
class RelayResult:
    webhook_type: WebhookType
    status_code: int
    body: Any
    request_id: str
    execution_id: str
    fingerprint: str
    source: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "webhook_type": self.webhook_type.value,
            "status": self.status_code,
            "data": self.body,
            "metadata": {
                "request_id": self.request_id,
                "execution_id": self.execution_id,
                "fingerprint": self.fingerprint,
                "source": self.source,
                "duration_ms": self.duration_ms,
            },
        }


def resolve_route(payload: Any, settings: Settings) -> tuple[RelayRoute, str]:
    """Return (route, url) or raise ValidationError / ConfigurationError."""
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")
    raw_type = payload.get("webhook_type")
    if raw_type is None or raw_type == "":
        raise MissingParameter("webhook_type", supported=[t.value for t in WebhookType])
    try:
        webhook_type = WebhookType(raw_type)
    except ValueError:
        raise ValidationError(
            "Unknown webhook type",
            webhook_type=str(raw_type),
            supported=[t.value for t in WebhookType],
        )

    route = ROUTES[webhook_type]
    url = getattr(settings, route.settings_attr, None)
    if not url:
        logger.error("Webhook URL not configured for %s (%s)", webhook_type.value, route.env_var)
        raise ConfigurationError(
            f"{route.env_var} is not configured",
            webhook_type=webhook_type.value,
            env_var=route.env_var,
        )
    return route, url


def _validate_payload(payload: Dict[str, Any], route: RelayRoute) -> None:
    try:
        _payload_adapter.validate_python(payload)
    except PydanticValidationError as e:
        errors: List[Dict[str, Any]] = [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg")} for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {route.webhook_type.value} payload",
            webhook_type=route.webhook_type.value,
            required_field=route.data_field,
            errors=errors,
        )


def _http_client(settings: Settings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(settings.relay_timeout_s) if settings.relay_timeout_s else httpx.Timeout(None)
    return httpx.AsyncClient(timeout=timeout)


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


async def relay_webhook(
    payload: Any,
    settings: Settings,
    *,
    headers: Optional[Mapping[str, str]] = None,
) -> RelayResult:
    """Forward `payload` to the workflow URL configured for its webhook_type."""
    route, url = resolve_route(payload, settings)
    _validate_payload(payload, route)

    headers = headers or {}
    meta = payload.get("anti_duplicate_metadata") or {}
    request_id = str(uuid4())
    fingerprint = headers.get("x-fingerprint") or generate_fingerprint(payload, route)
    execution_id = headers.get("x-execution-id") or meta.get("execution_id") or request_id
    source = headers.get("x-source") or settings.relay_source
    webhook_type = route.webhook_type.value

    outbound = dict(payload)
    outbound["metadata"] = {
        "request_id": request_id,
        "execution_id": execution_id,
        "fingerprint": fingerprint,
        "source": source,
        "webhook_type": webhook_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "trigger_source": meta.get("trigger_source"),
    }
    outbound_headers = {
        "Content-Type": "application/json",
        "x-request-id": request_id,
        "x-fingerprint": fingerprint,
        "x-source": source,
        "x-webhook-type": webhook_type,
        "x-execution-id": execution_id,
    }

    logger.info("Relaying %s request %s (execution %s)", webhook_type, request_id, execution_id)
    started = time.monotonic()
    try:
        async with _http_client(settings) as client:
            resp = await client.post(url, content=json.dumps(outbound, default=str), headers=outbound_headers)
    except httpx.HTTPError as e:
        logger.error("Relay of %s request %s failed: %s", webhook_type, request_id, e)
        raise UpstreamError(
            "Failed to reach workflow engine",
            webhook_type=webhook_type,
            request_id=request_id,
            execution_id=execution_id,
            details=str(e),
        ) from e

    duration_ms = int((time.monotonic() - started) * 1000)
    if resp.is_success:
        logger.info("Workflow engine accepted %s request %s (%s)", webhook_type, request_id, resp.status_code)
    else:
        logger.warning(
            "Workflow engine returned %s for %s request %s: %s",
            resp.status_code, webhook_type, request_id, resp.text[:500],
        )

    return RelayResult(
        webhook_type=route.webhook_type,
        status_code=resp.status_code,
        body=_parse_body(resp),
        request_id=request_id,
        execution_id=execution_id,
        fingerprint=fingerprint,
        source=source,
        duration_ms=duration_ms,
    )
