"""Configuration settings for the routine import API."""
import os
from typing import List, Literal


EnvironmentType = Literal["development", "staging", "production"]
RepositoryType = Literal["supabase", "memory"]


class Settings:
    """Application settings."""

    # Feature flags
    IMPORT_V1_ENABLED: bool = True
    IMPORT_PDF_DIGITAL_ENABLED: bool = True

    # Environment
    ENVIRONMENT: EnvironmentType = "development"

    # Backing store
    IMPORT_REPOSITORY: RepositoryType = "memory"
    SUPABASE_URL: str | None = None
    SUPABASE_SERVICE_ROLE_KEY: str | None = None

    # Internal endpoints
    IMPORT_INTERNAL_SECRET: str | None = None

    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    def __init__(self):
        # Environment
        env = os.getenv("ENVIRONMENT", "development").lower()
        if env in ("development", "staging", "production"):
            self.ENVIRONMENT = env  # type: ignore
        else:
            self.ENVIRONMENT = "development"

        # Feature flags ("0" is the only disabling value)
        self.IMPORT_V1_ENABLED = os.getenv("IMPORT_V1_ENABLED", "1").strip() != "0"
        self.IMPORT_PDF_DIGITAL_ENABLED = os.getenv("IMPORT_PDF_DIGITAL_ENABLED", "1").strip() != "0"

        # Backing store
        self.SUPABASE_URL = os.getenv("SUPABASE_URL")
        self.SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        default_repo = "supabase" if self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY else "memory"
        repo = os.getenv("IMPORT_REPOSITORY", default_repo).lower()
        self.IMPORT_REPOSITORY = repo if repo in ("supabase", "memory") else default_repo  # type: ignore

        self.IMPORT_INTERNAL_SECRET = os.getenv("IMPORT_INTERNAL_SECRET") or None

        origins = os.getenv("CORS_ORIGINS", "")
        if origins.strip():
            self.CORS_ORIGINS = [o.strip() for o in origins.split(",") if o.strip()]


settings = Settings()


def is_import_enabled() -> bool:
    """Kill switch for new import jobs, re-read on every call."""
    return Settings().IMPORT_V1_ENABLED


def is_pdf_import_enabled() -> bool:
    return Settings().IMPORT_PDF_DIGITAL_ENABLED
