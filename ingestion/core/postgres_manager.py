"""
PostgreSQL Database Manager for the mailbox sync service.
Owns the connection pool and the schema every row store relies on.
"""

import logging
import os
from typing import Optional
from dataclasses import dataclass
import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@dataclass
class PostgreSQLConfig:
    """Configuration for PostgreSQL connection."""
    host: str = os.getenv('POSTGRES_HOST', 'localhost')
    port: int = int(os.getenv('POSTGRES_PORT', '5432'))
    database: str = os.getenv('POSTGRES_DB', 'mailbox_sync')
    user: str = os.getenv('POSTGRES_USER', 'sync_user')
    password: str = os.getenv('POSTGRES_PASSWORD', 'secure_password')
    min_connections: int = 2
    max_connections: int = 20


SCHEMA_SQL = """
-- Enable required extensions
CREATE EXTENSION IF NOT EXISTS "uuid-ossp";

-- Provider credentials, one row per (user, service)
CREATE TABLE IF NOT EXISTS user_credentials (
    user_id TEXT NOT NULL,
    service_name VARCHAR(50) NOT NULL,
    email_address TEXT,
    encrypted_token TEXT NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (user_id, service_name)
);
CREATE INDEX IF NOT EXISTS idx_user_credentials_email
    ON user_credentials (LOWER(email_address));

-- Incremental sync position and counters per (user, source)
CREATE TABLE IF NOT EXISTS sync_cursors (
    user_id TEXT NOT NULL,
    source_name VARCHAR(50) NOT NULL,
    cursor_token TEXT,
    sync_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    last_sync_at TIMESTAMP WITH TIME ZONE,
    emails_synced INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_error_at TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (user_id, source_name)
);

-- Inclusion filters and push watch state per (user, source)
CREATE TABLE IF NOT EXISTS sync_settings (
    user_id TEXT NOT NULL,
    source_name VARCHAR(50) NOT NULL,
    excluded_labels TEXT[] NOT NULL DEFAULT '{}',
    included_labels TEXT[],
    exclude_promotions BOOLEAN NOT NULL DEFAULT TRUE,
    exclude_social BOOLEAN NOT NULL DEFAULT TRUE,
    unread_only BOOLEAN NOT NULL DEFAULT TRUE,
    inbox_only BOOLEAN NOT NULL DEFAULT TRUE,
    max_content_length INTEGER NOT NULL DEFAULT 50000,
    watch_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    watch_topic_name TEXT,
    watch_expiration TIMESTAMP WITH TIME ZONE,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (user_id, source_name)
);

-- Ingested items with their embedding
CREATE TABLE IF NOT EXISTS ingested_documents (
    id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
    user_id TEXT NOT NULL,
    source_type VARCHAR(50) NOT NULL,
    source_id TEXT NOT NULL,
    content TEXT NOT NULL,
    content_hash VARCHAR(64),
    embedding REAL[] NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    CONSTRAINT uk_ingested_documents_source UNIQUE (user_id, source_type, source_id)
);
CREATE INDEX IF NOT EXISTS idx_ingested_documents_user ON ingested_documents (user_id, source_type);

-- Long running background jobs, one row per (user, kind)
CREATE TABLE IF NOT EXISTS jobs (
    job_id UUID NOT NULL DEFAULT uuid_generate_v4(),
    user_id TEXT NOT NULL,
    job_kind VARCHAR(50) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    params JSONB NOT NULL DEFAULT '{}'::jsonb,
    result JSONB,
    error TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    started_at TIMESTAMP WITH TIME ZONE,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    completed_at TIMESTAMP WITH TIME ZONE,
    PRIMARY KEY (job_id),
    CONSTRAINT uk_jobs_user_kind UNIQUE (user_id, job_kind)
);

-- Provisioning templates offered to users
CREATE TABLE IF NOT EXISTS template_catalog (
    template_pack_id VARCHAR(100) PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    template_structure JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    display_order INTEGER NOT NULL DEFAULT 0
);
"""


class PostgreSQLManager:
    """PostgreSQL manager for sync state, documents and jobs."""

    def __init__(self, config: Optional[PostgreSQLConfig] = None):
        """
        Initialize PostgreSQL manager with connection pooling.

        Args:
            config: PostgreSQL configuration object. If None, creates default config.
        """
        self.config = config or PostgreSQLConfig()
        self._initialize_pool()
        self._ensure_schema()

    def _initialize_pool(self) -> None:
        """Initialize connection pool."""
        try:
            self.pool = ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                cursor_factory=RealDictCursor
            )
            logger.info(f"PostgreSQL connection pool initialized for {self.config.database}")
        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        if not self.pool:
            raise RuntimeError("No connection pool available")

        conn = None
        try:
            logger.debug("Requesting database connection from pool")
            conn = self.pool.getconn()
            conn.autocommit = True
            yield conn
        except Exception as e:
            if conn:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass  # nothing to roll back in autocommit mode
            logger.error(f"Database operation failed: {e} (type: {type(e)})")
            raise
        finally:
            if conn:
                self.pool.putconn(conn)

    def _ensure_schema(self) -> None:
        """Create necessary tables and indexes."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
                conn.commit()
            logger.info("PostgreSQL schema ensured")
        except Exception as e:
            logger.error(f"Failed to create PostgreSQL schema: {e}")
            raise

    def close(self) -> None:
        """Close all pooled connections."""
        if self.pool:
            self.pool.closeall()
            logger.info("PostgreSQL connection pool closed")
