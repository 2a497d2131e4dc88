"""
Architect Studio - Configuration
Environment-driven settings, loaded once from .env at import.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Read environment variables. Instantiate again to pick up changes (tests do)."""

    def __init__(self):
        # ── Core ──────────────────────────────────────────────────────────────
        self.environment      = os.getenv("NODE_ENV", os.getenv("ENVIRONMENT", "development"))
        self.database_url     = os.getenv("DATABASE_URL", "sqlite:///./architect_studio.db")
        self.session_secret   = os.getenv("SESSION_SECRET", "fallback-secret")
        self.app_url          = os.getenv("APP_URL", "")
        self.allowed_origins  = [o.strip() for o in os.getenv(
            "ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000"
        ).split(",") if o.strip()]
        self.rate_limit_enabled = _flag("RATE_LIMIT_ENABLED")

        # ── Google OAuth ──────────────────────────────────────────────────────
        self.google_client_id     = os.getenv("GOOGLE_CLIENT_ID", "")
        self.google_client_secret = os.getenv("GOOGLE_CLIENT_SECRET", "")
        self.google_redirect_uri  = os.getenv("GOOGLE_REDIRECT_URI", "")

        # ── AI providers ──────────────────────────────────────────────────────
        self.gemini_api_key     = os.getenv("GOOGLE_GEMINI_API_KEY", os.getenv("GEMINI_API_KEY", ""))
        self.meshy_api_key      = os.getenv("MESHY_API_KEY", "")
        self.trellis_space      = os.getenv("TRELLIS_SPACE", "trellis-community/TRELLIS")
        self.hf_token           = os.getenv("HF_TOKEN", "")
        self.perplexity_api_key = os.getenv("PERPLEXITY_API_KEY", "")
        self.epc_api_token      = os.getenv("EPC_API_TOKEN", "")

        # ── Storage / payments ────────────────────────────────────────────────
        self.blob_token             = os.getenv("BLOB_READ_WRITE_TOKEN", "")
        self.stripe_secret_key      = os.getenv("STRIPE_SECRET_KEY", "")
        self.stripe_publishable_key = os.getenv("STRIPE_PUBLISHABLE_KEY", "")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
