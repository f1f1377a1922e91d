"""
Mailbox Sync Service Package

Incremental Gmail ingestion and background job tracking behind a Flask API.
"""

__version__ = "0.1.0"

from .scheduler_manager import SchedulerManager
