"""
Core configuration module for the mailbox sync service.

All settings are read from environment variables (a local ``.env`` file is
loaded first) and exposed through the :class:`Config` dataclass.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass
class Config:
    """
    Application configuration.

    Centralizes all configuration settings with type hints and default
    values from environment variables.
    """

    # Flask Configuration
    FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
    FLASK_PORT: int = int(os.getenv("FLASK_PORT", "3000"))
    FLASK_DEBUG: bool = os.getenv("FLASK_DEBUG", "False").lower() == "true"
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")

    # PostgreSQL Configuration
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "mailbox_sync")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "sync_user")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "secure_password")

    # Embedding Model Configuration
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large")
    OLLAMA_EMBEDDING_HOST: str = os.getenv("OLLAMA_EMBEDDING_HOST", "localhost")
    OLLAMA_EMBEDDING_PORT: int = int(os.getenv("OLLAMA_EMBEDDING_PORT", "11434"))
    EMBEDDING_BASE_URL: str = os.getenv(
        "EMBEDDING_BASE_URL",
        f"http://{os.getenv('OLLAMA_EMBEDDING_HOST', 'localhost')}:{os.getenv('OLLAMA_EMBEDDING_PORT', '11434')}"
    )

    # Gmail OAuth client and push notifications
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_TOKEN_URI: str = os.getenv("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")
    GMAIL_PUBSUB_TOPIC: str = os.getenv("GMAIL_PUBSUB_TOPIC", "")
    GMAIL_MAX_EMAILS_PER_SYNC: int = int(os.getenv("GMAIL_MAX_EMAILS_PER_SYNC", "200"))
    MAX_EMAIL_CONTENT_LENGTH: int = int(os.getenv("MAX_EMAIL_CONTENT_LENGTH", "50000"))

    # Cron trigger
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # Scheduler settings
    EMAIL_SYNC_INTERVAL_MINUTES: int = int(os.getenv("EMAIL_SYNC_INTERVAL_MINUTES", "360"))
    SCHEDULER_POLL_SECONDS_BUSY: float = float(os.getenv("SCHEDULER_POLL_SECONDS_BUSY", "10"))
    SCHEDULER_POLL_SECONDS_IDLE: float = float(os.getenv("SCHEDULER_POLL_SECONDS_IDLE", "30"))
    SYNC_WORKERS: int = int(os.getenv("SYNC_WORKERS", "4"))

    # Job tracker
    JOB_WORKERS: int = int(os.getenv("JOB_WORKERS", "2"))
    JOB_STALE_AFTER_SECONDS: int = int(os.getenv("JOB_STALE_AFTER_SECONDS", "900"))

    # Gmail client cache
    CLIENT_CACHE_MAX_ENTRIES: int = int(os.getenv("CLIENT_CACHE_MAX_ENTRIES", "128"))
    CLIENT_CACHE_TTL_SECONDS: int = int(os.getenv("CLIENT_CACHE_TTL_SECONDS", "1800"))

    # Notion template provisioning
    NOTION_API_URL: str = os.getenv("NOTION_API_URL", "https://api.notion.com/v1")
    NOTION_API_VERSION: str = os.getenv("NOTION_API_VERSION", "2022-06-28")
    NOTION_REQUEST_TIMEOUT: int = int(os.getenv("NOTION_REQUEST_TIMEOUT", "30"))

    # Logging
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")
