"""
Background job tracking.

Contains the job store, the job tracker state machine and the work
functions registered with it.
"""

from .store import JobStore
from .template_installer import TemplateCatalog, TemplateInstaller
from .tracker import JobConflictError, JobHandle, JobNotFoundError, JobTracker

__all__ = [
    'JobConflictError',
    'JobHandle',
    'JobNotFoundError',
    'JobStore',
    'JobTracker',
    'TemplateCatalog',
    'TemplateInstaller',
]
