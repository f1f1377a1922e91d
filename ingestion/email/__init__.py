"""Gmail ingestion: change fetching, classification and sync orchestration.

- EmailSyncOrchestrator: per-user incremental sync, status and push watch
- EmailProcessor: filter, normalize, embed and upsert one message
- EmailClassifier: canonical text and metadata from a raw message
- GmailHistoryConnector: history-based change fetcher
"""

from .classifier import ClassificationPolicy, EmailClassifier, InclusionPolicy
from .client_cache import GmailClientCache
from .connectors import ChangeFetcher, GmailConnectorFactory, GmailHistoryConnector
from .credentials import CredentialStore
from .orchestrator import EmailSyncOrchestrator
from .processor import EmailProcessor

__all__ = [
    "ChangeFetcher",
    "ClassificationPolicy",
    "CredentialStore",
    "EmailClassifier",
    "EmailProcessor",
    "EmailSyncOrchestrator",
    "GmailClientCache",
    "GmailConnectorFactory",
    "GmailHistoryConnector",
    "InclusionPolicy",
]
