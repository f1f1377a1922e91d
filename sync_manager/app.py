"""
Main application class for the mailbox sync service.

This module contains the SyncServiceManager class that wires the datastore,
the Gmail ingestion engine, the job tracker, the scheduler and the Flask API.
"""

import logging
from typing import Callable, Optional

from flask import Flask

from ingestion.core.cursor_store import SyncCursorStore
from ingestion.core.document_store import DocumentStore
from ingestion.core.postgres_manager import PostgreSQLConfig, PostgreSQLManager
from ingestion.core.settings_store import SyncSettingsStore
from ingestion.email.classifier import EmailClassifier
from ingestion.email.client_cache import GmailClientCache
from ingestion.email.connectors.gmail_connector import GmailConnectorFactory
from ingestion.email.credentials import CredentialStore
from ingestion.email.orchestrator import EmailSyncOrchestrator
from ingestion.email.processor import EmailProcessor, default_embedding_model

from .core.config import Config
from .jobs.store import JobStore
from .jobs.template_installer import NotionClient, TemplateCatalog, TemplateInstaller
from .jobs.tracker import JobTracker
from .scheduler_manager import SchedulerManager
from .utils.logger import setup_logging
from .web.routes import TEMPLATE_JOB_KIND, WebRoutes

logger = logging.getLogger(__name__)


class SyncServiceManager:
    """
    Main application class that wires ingestion, jobs and the web API.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        configure_logging: bool = True,
        user_resolver: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        """Initialize the mailbox sync service."""
        self.config = config or Config()
        if configure_logging:
            setup_logging(self.config.LOG_DIR)

        self.app = Flask(__name__)
        self.app.config['SECRET_KEY'] = self.config.SECRET_KEY

        self._initialize_database_managers()
        self._initialize_ingestion()
        self._initialize_jobs()

        self.scheduler_manager = SchedulerManager(self.config, self.orchestrator, client_cache=self.client_cache)
        self.web_routes = WebRoutes(self.app, self.config, self, user_resolver=user_resolver)

        logger.info("Mailbox sync service initialized")

    def _initialize_database_managers(self) -> None:
        """Initialize the PostgreSQL pool and the row stores."""
        postgres_config = PostgreSQLConfig(
            host=self.config.POSTGRES_HOST,
            port=self.config.POSTGRES_PORT,
            database=self.config.POSTGRES_DB,
            user=self.config.POSTGRES_USER,
            password=self.config.POSTGRES_PASSWORD
        )
        self.postgres_manager = PostgreSQLManager(postgres_config)
        self.credential_store = CredentialStore(self.postgres_manager)
        self.cursor_store = SyncCursorStore(self.postgres_manager)
        self.settings_store = SyncSettingsStore(self.postgres_manager)
        self.document_store = DocumentStore(self.postgres_manager)
        logger.info("PostgreSQL managers initialized")

    def _initialize_ingestion(self) -> None:
        """Initialize the Gmail ingestion engine."""
        self.client_cache = GmailClientCache(
            max_entries=self.config.CLIENT_CACHE_MAX_ENTRIES,
            ttl_seconds=self.config.CLIENT_CACHE_TTL_SECONDS,
        )
        connector_factory = GmailConnectorFactory(
            self.config.GOOGLE_CLIENT_ID,
            self.config.GOOGLE_CLIENT_SECRET,
            token_uri=self.config.GOOGLE_TOKEN_URI,
            client_cache=self.client_cache,
            max_items=self.config.GMAIL_MAX_EMAILS_PER_SYNC or None,
        )
        processor = EmailProcessor(
            self.document_store,
            embedding_model=default_embedding_model(self.config.EMBEDDING_MODEL, self.config.EMBEDDING_BASE_URL),
            classifier=EmailClassifier(max_content_length=self.config.MAX_EMAIL_CONTENT_LENGTH),
        )
        self.orchestrator = EmailSyncOrchestrator(
            credential_store=self.credential_store,
            cursor_store=self.cursor_store,
            settings_store=self.settings_store,
            document_store=self.document_store,
            processor=processor,
            connector_factory=connector_factory,
            client_cache=self.client_cache,
            pubsub_topic=self.config.GMAIL_PUBSUB_TOPIC or None,
        )

    def _initialize_jobs(self) -> None:
        """Initialize the job tracker and register job kinds."""
        self.template_catalog = TemplateCatalog(self.postgres_manager)
        self.job_tracker = JobTracker(
            JobStore(self.postgres_manager),
            max_workers=self.config.JOB_WORKERS,
            stale_after_seconds=self.config.JOB_STALE_AFTER_SECONDS,
        )
        config = self.config
        self.job_tracker.register_kind(
            TEMPLATE_JOB_KIND,
            TemplateInstaller(
                self.template_catalog,
                self.credential_store,
                client_factory=lambda token: NotionClient(
                    token,
                    base_url=config.NOTION_API_URL,
                    version=config.NOTION_API_VERSION,
                    timeout=config.NOTION_REQUEST_TIMEOUT,
                ),
            ),
        )

    def run(self) -> None:
        """
        Run the Flask application.

        Starts the background scheduler, then serves the API.
        """
        logger.info(f"Starting mailbox sync service on {self.config.FLASK_HOST}:{self.config.FLASK_PORT}")
        self.scheduler_manager.start_scheduler()
        try:
            self.app.run(
                host=self.config.FLASK_HOST,
                port=self.config.FLASK_PORT,
                debug=self.config.FLASK_DEBUG,
                use_reloader=False,
            )
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.scheduler_manager.shutdown(wait=False)
        self.job_tracker.shutdown(wait=False)
        self.postgres_manager.close()
