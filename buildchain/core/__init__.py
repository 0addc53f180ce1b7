"""
Build Chain - Core Package
==========================

Configuration, persistence, models and the build pipeline.
"""

from buildchain.core.config import settings
from buildchain.core.database import Base, create_session_factory, get_db

__all__ = ["Base", "create_session_factory", "get_db", "settings"]
