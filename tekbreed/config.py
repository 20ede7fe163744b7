"""Configuration management for the TekBreed service."""
import os
from dotenv import load_dotenv

load_dotenv(override=True)


class Config:
    """Application configuration class."""

    # Runtime
    ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")  # development, test, production
    ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    DOMAIN_URL = os.environ.get("DOMAIN_URL", "http://localhost:5173")
    DEBUG = os.environ.get("DEBUG", "true").lower() == "true"
    PORT = int(os.environ.get("PORT", "8009"))

    # JWT Configuration (shared secret with the auth service)
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY")

    # SQLite databases
    APP_DB_PATH = os.environ.get("APP_DB_PATH", "data/tekbreed.db")
    AUDIT_LOG_DB_PATH = os.environ.get("AUDIT_LOG_DB_PATH", "data/audit_logs.db")
    RAG_DB_PATH = os.environ.get("RAG_DB_PATH", "data/rag.db")
    LOG_ARCHIVE_DIR = os.environ.get("LOG_ARCHIVE_DIR", "data/archives")

    # Audit log retention
    LOG_RETENTION_DAYS = 60

    # OpenAI Configuration
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    CHAT_MODEL = os.environ.get("CHAT_MODEL", "gpt-4o-mini")
    EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
    OPENAI_TIMEOUT = float(os.environ.get("OPENAI_TIMEOUT", "10"))
    MAX_TOKENS = 1000
    TEMPERATURE = 0.7

    # Polar (payments)
    POLAR_ACCESS_TOKEN = os.environ.get("POLAR_ACCESS_TOKEN")
    POLAR_WEBHOOK_SECRET = os.environ.get("POLAR_WEBHOOK_SECRET")
    POLAR_ORGANIZATION_ID = os.environ.get("POLAR_ORGANIZATION_ID", "ae1bc13f-e313-4066-87dc-dabcd7314261")
    POLAR_SERVER = os.environ.get(
        "POLAR_SERVER",
        "sandbox" if ENVIRONMENT == "development" else "production"
    )

    # Resend (email)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_AUDIENCE_ID = os.environ.get("RESEND_AUDIENCE_ID")

    # Sanity (CMS)
    SANITY_PROJECT_ID = os.environ.get("SANITY_PROJECT_ID")
    SANITY_DATASET = os.environ.get("SANITY_DATASET", "production")
    SANITY_API_VERSION = os.environ.get("SANITY_API_VERSION", "2024-01-01")
    SANITY_TOKEN = os.environ.get("SANITY_TOKEN")

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "false").lower() == "true"

    @classmethod
    def validate(cls):
        """Validate required configuration."""
        if cls.ENVIRONMENT == "test":
            return True

        if not cls.JWT_SECRET_KEY:
            raise RuntimeError("❌ JWT_SECRET_KEY environment variable is not set!")

        if not cls.OPENAI_API_KEY:
            print("⚠ OPENAI_API_KEY is not set - RAG endpoints will fail until configured")

        return True
