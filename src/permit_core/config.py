"""Application settings.

Settings are built once at startup (``Settings.from_env()`` or direct
construction in tests) and handed to the app factory and the services that
need them. Nothing in the package reads configuration at import time.

Environment variables:
    PERMIT_CORE_DATABASE_URL: SQLAlchemy database URL
    PERMIT_CORE_UPLOAD_DIR: Root directory for stored attachments
    PERMIT_CORE_MAX_UPLOAD_BYTES: Maximum size of a single attachment
    PERMIT_CORE_CORS_ORIGINS: Comma-separated list of allowed origins
    PERMIT_CORE_LOG_LEVEL: Logging level name (INFO, DEBUG, ...)
    PERMIT_CORE_CODE_RETRIES: Attempts for task code generation on conflict
    PERMIT_CORE_ENFORCE_APPROVAL_ORDER: "true" to require slot 1 before slot 2
    PERMIT_CORE_ROLE_CAPABILITIES: JSON object of role id -> capability list
"""
import json
import os
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "PERMIT_CORE_"

DEFAULT_ALLOWED_EXTENSIONS = [".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"]


class Settings(BaseModel):
    """Runtime configuration for the task engine and its HTTP surface."""

    database_url: str = Field(default="sqlite:///./permit_core.db")
    upload_dir: str = Field(default="file", description="Root directory for attachments")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    allowed_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    # Task code generation
    code_generation_max_retries: int = Field(default=3, ge=1)

    # Approval pipeline
    enforce_approval_order: bool = Field(
        default=False,
        description="Reject resolving sequence 2 while sequence 1 is still waiting",
    )

    # Role id -> capability names; empty mapping allows every capability
    role_capabilities: dict[int, list[str]] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}

        if val := env.get(f"{ENV_PREFIX}DATABASE_URL"):
            kwargs["database_url"] = val
        if val := env.get(f"{ENV_PREFIX}UPLOAD_DIR"):
            kwargs["upload_dir"] = val
        if val := env.get(f"{ENV_PREFIX}MAX_UPLOAD_BYTES"):
            kwargs["max_upload_bytes"] = int(val)
        if val := env.get(f"{ENV_PREFIX}CORS_ORIGINS"):
            kwargs["cors_origins"] = [o.strip() for o in val.split(",") if o.strip()]
        if val := env.get(f"{ENV_PREFIX}LOG_LEVEL"):
            kwargs["log_level"] = val.upper()
        if val := env.get(f"{ENV_PREFIX}CODE_RETRIES"):
            kwargs["code_generation_max_retries"] = int(val)
        if val := env.get(f"{ENV_PREFIX}ENFORCE_APPROVAL_ORDER"):
            kwargs["enforce_approval_order"] = val.strip().lower() in ("1", "true", "yes")
        if val := env.get(f"{ENV_PREFIX}ROLE_CAPABILITIES"):
            kwargs["role_capabilities"] = {int(k): v for k, v in json.loads(val).items()}

        return cls(**kwargs)
