"""
Application configuration via environment variables.
"""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings

_CORS_ENV = "JOBASSIST_CORS_ORIGINS"
_DEFAULT_CORS_RAW = '["*"]'


def _parse_cors_origins(v: str) -> List[str]:
    """Parse CORS origins from env string (JSON or comma-separated). Never raises."""
    if not v or not isinstance(v, str):
        return ["*"]
    v = v.strip()
    if not v:
        return ["*"]
    # Try JSON (double-quoted only)
    try:
        parsed = json.loads(v)
        if isinstance(parsed, list):
            return [x.strip() for x in parsed if isinstance(x, str) and x.strip()]
    except (json.JSONDecodeError, TypeError):
        pass
    # Try single-quoted JSON (replace ' with " for valid JSON)
    try:
        normalized = v.replace("'", '"')
        parsed = json.loads(normalized)
        if isinstance(parsed, list):
            return [x.strip() for x in parsed if isinstance(x, str) and x.strip()]
    except (json.JSONDecodeError, TypeError):
        pass
    # Comma-separated
    if "," in v:
        return [origin.strip() for origin in v.split(",") if origin.strip()]
    return [v]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "JobAssist Credits API"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database (Supabase Postgres, service-role connection string)
    database_url: str = "postgresql://localhost/jobassist"
    init_schema: bool = False
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # CORS: read JOBASSIST_CORS_ORIGINS ourselves so pydantic-settings never JSON-decodes it.
    cors_origins_raw: str = Field(
        default=_DEFAULT_CORS_RAW,
        description="JSON array or comma-separated origins",
    )

    @model_validator(mode="before")
    @classmethod
    def inject_cors_from_env(cls, data: Any) -> Any:
        env_val = os.environ.get(_CORS_ENV)
        if env_val is not None and isinstance(data, dict):
            data.setdefault("cors_origins_raw", env_val)
        return data

    @computed_field
    @property
    def cors_origins_list(self) -> List[str]:
        """Parsed CORS origins."""
        return _parse_cors_origins(self.cors_origins_raw)

    # Shared secret the workflow engine sends in x-api-key. Empty => deduction routes are open.
    service_api_key: Optional[str] = None

    # Webhook relay
    relay_source: str = "jobassist-relay"
    relay_timeout_s: Optional[float] = None  # None => no client-side timeout

    # Workflow engine endpoints (one per feature). Unprefixed env names.
    n8n_jg_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_JG_WEBHOOK_URL")
    n8n_cl_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_CL_WEBHOOK_URL")
    n8n_linkedin_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_LINKEDIN_WEBHOOK_URL")
    n8n_company_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_COMPANY_WEBHOOK_URL")
    n8n_interview_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_INTERVIEW_WEBHOOK_URL")
    n8n_resume_pdf_webhook_url: Optional[str] = Field(default=None, validation_alias="N8N_RESUME_PDF_WEBHOOK_URL")
    n8n_linkedin_image_webhook_url: Optional[str] = Field(
        default=None, validation_alias="N8N_LINKEDIN_IMAGE_WEBHOOK_URL"
    )

    # Payments provider
    payment_webhook_secret: Optional[str] = None
    # NOTE: Union[...] prevents pydantic-settings from crashing on non-JSON env strings.
    product_credits: Union[str, Dict[str, float], None] = {}

    @field_validator("product_credits", mode="before")
    @classmethod
    def parse_product_credits(cls, v: Any) -> Dict[str, float]:
        """Parse the product -> credits mapping from a JSON object or `id:credits` pairs."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): float(c) for k, c in v.items()}
        if isinstance(v, str):
            if not v.strip():
                return {}
            try:
                parsed = json.loads(v)
                if isinstance(parsed, dict):
                    return {str(k): float(c) for k, c in parsed.items()}
            except (json.JSONDecodeError, TypeError, ValueError):
                pass
            # Fallback: "prod_a:10,prod_b:25"
            out: Dict[str, float] = {}
            for pair in v.split(","):
                key, _, credits = pair.partition(":")
                if key.strip() and credits.strip():
                    out[key.strip()] = float(credits)
            return out
        return {}

    # Supabase (Auth)
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None

    class Config:
        env_prefix = "JOBASSIST_"
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
