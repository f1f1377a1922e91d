"""
Web module initialization.

Contains the JSON API for the mailbox sync service.
"""

from .routes import WebRoutes

__all__ = ['WebRoutes']
