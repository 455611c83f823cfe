"""
Application configuration using pydantic-settings.
All settings read from environment variables with sensible defaults.

Business thresholds (auto-approval ceilings, risk cut-offs) live in
VerificationConfig in settlement.models so they can be tuned at runtime
through the /api/rules endpoint; this module only holds process settings.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for the verification service."""

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "settlement-verification"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Optional JSON file with VerificationConfig overrides
    RULES_CONFIG_PATH: Optional[str] = None
    # Comma-separated business ids registered at startup
    SEED_BUSINESSES: str = ""

    # ── Uploads ──────────────────────────────────────────────
    MAX_UPLOAD_SIZE_MB: int = 10
    ALLOWED_UPLOAD_TYPES: str = "text/csv"

    # ── File storage ─────────────────────────────────────────
    SIGNED_URL_BASE: str = "https://files.local/verification"
    SIGNED_URL_TTL_SECONDS: int = 3600
    SIGNED_URL_SECRET: str = "change-me-in-production"

    # ── Fraud advisory service ───────────────────────────────
    # Feature flag: call the external reasoning service during assessment
    ADVISORY_ENABLED: bool = False
    ADVISORY_API_URL: str = "https://api.openai.com/v1/chat/completions"
    ADVISORY_API_KEY: Optional[str] = None
    ADVISORY_MODEL: str = "gpt-4o-mini"
    ADVISORY_TIMEOUT_SECONDS: float = 10.0
    ASSESSMENT_CACHE_TTL_SECONDS: int = 900

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }

    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024


# Singleton instance
settings = Settings()
