"""
Core module initialization.

Contains configuration and data models for the mailbox sync service.
"""

from .config import Config
from .models import Job, SyncRunStatus

__all__ = [
    'Config',
    'Job',
    'SyncRunStatus',
]
