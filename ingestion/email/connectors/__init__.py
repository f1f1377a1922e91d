"""Remote change fetchers.

- ChangeFetcher: abstract interface (bootstrap cursor, changes since cursor, item fetch)
- GmailHistoryConnector: Gmail history API implementation
- GmailConnectorFactory: builds authorized Gmail connectors from refresh tokens
"""

from .base import ChangeFetcher
from .gmail_connector import GmailConnectorFactory, GmailHistoryConnector

__all__ = [
    "ChangeFetcher",
    "GmailConnectorFactory",
    "GmailHistoryConnector",
]
