# config.py - Configuration management for the Simpli Immo sync backend

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class AppConfig:
    """
    Centralized configuration management for the application
    """

    # GHL OAuth / API Configuration
    GHL_CLIENT_ID: str = os.getenv("GHL_CLIENT_ID", "")
    GHL_CLIENT_SECRET: str = os.getenv("GHL_CLIENT_SECRET", "")
    GHL_API_BASE: str = os.getenv("GHL_API_BASE", "https://services.leadconnectorhq.com")
    GHL_TOKEN_URL: str = os.getenv("GHL_TOKEN_URL", "https://services.leadconnectorhq.com/oauth/token")
    GHL_API_VERSION: str = os.getenv("GHL_API_VERSION", "2021-07-28")
    OAUTH_REDIRECT_URI: str = os.getenv("OAUTH_REDIRECT_URI", "http://localhost:8000/api/v1/oauth/callback")
    GHL_WEBHOOK_URL: str = os.getenv("GHL_WEBHOOK_URL", "http://localhost:8000/api/v1/webhooks/ghl")

    # Deep links the mobile app listens on after OAuth
    APP_SUCCESS_REDIRECT: str = os.getenv("APP_SUCCESS_REDIRECT", "simpliimmo://oauth/success")
    APP_ERROR_REDIRECT: str = os.getenv("APP_ERROR_REDIRECT", "simpliimmo://oauth/error")

    # Location of the Simpli Finance sub-account (financing pipeline)
    FINANCE_LOCATION_ID: str = os.getenv("FINANCE_LOCATION_ID", "iDLo7b4WOOCkE9voshIM")

    # Security Configuration
    SERVICE_ROLE_KEY: str = os.getenv("SERVICE_ROLE_KEY", "")

    # Server Configuration
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = _env_bool("DEBUG")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./simpli_immo.db")

    # LLM Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "gemini")
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-haiku-20240307")
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    LLM_CACHE_TTL: int = int(os.getenv("LLM_CACHE_TTL", "0"))

    # Sync tuning
    TOKEN_REFRESH_LOOKAHEAD_SECONDS: int = int(os.getenv("TOKEN_REFRESH_LOOKAHEAD_SECONDS", "300"))
    HTTP_TIMEOUT: int = int(os.getenv("HTTP_TIMEOUT", "30"))
    CONTACTS_PAGE_DELAY: float = float(os.getenv("CONTACTS_PAGE_DELAY", "0.1"))
    CONVERSATIONS_DELAY: float = float(os.getenv("CONVERSATIONS_DELAY", "0.15"))
    TASKS_DELAY: float = float(os.getenv("TASKS_DELAY", "0.1"))
    OPPORTUNITY_CONTACT_DELAY: float = float(os.getenv("OPPORTUNITY_CONTACT_DELAY", "0.05"))
    ANALYSIS_BATCH_SIZE: int = int(os.getenv("ANALYSIS_BATCH_SIZE", "20"))
    ANALYSIS_WORKERS: int = int(os.getenv("ANALYSIS_WORKERS", "5"))
    TRANSLATE_TASKS: bool = _env_bool("TRANSLATE_TASKS")

    @classmethod
    def validate_config(cls) -> bool:
        """
        Validate that required configuration is present
        """
        required_fields = [
            "GHL_CLIENT_ID",
            "GHL_CLIENT_SECRET",
            "SERVICE_ROLE_KEY",
        ]

        missing_fields = [field for field in required_fields if not getattr(cls, field)]

        if missing_fields:
            logger.error(f"❌ Missing required configuration: {', '.join(missing_fields)}")
            return False

        return True

    @classmethod
    def llm_api_key(cls) -> Optional[str]:
        if cls.LLM_PROVIDER == "anthropic":
            return cls.ANTHROPIC_API_KEY or None
        return cls.GEMINI_API_KEY or None

    @classmethod
    def get_security_config(cls) -> dict:
        """
        Get security-related configuration
        """
        return {
            "service_key_configured": bool(cls.SERVICE_ROLE_KEY),
            "environment": cls.ENVIRONMENT,
            "debug": cls.DEBUG
        }
