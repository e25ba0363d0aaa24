"""
Kestrel Cache Engine

Local-first cache and background synchronization for mail, calendar
and contact data. Keeps the client usable offline and responsive online.

Author: Kestrel Project
License: GPL v3.0
Version: 0.1.0-dev
"""

__version__ = "0.1.0-dev"
__author__ = "Kestrel Project"
__email__ = "contact@kestrel.dev"
__license__ = "GPL v3.0"
__description__ = "Local-first mail and calendar cache with background sync"

# Package level imports for convenience
from .config.app_config import AppConfig
from .utils.logging_setup import setup_logging
from .core.cache_manager import CacheManager
from .core.cache_service import CacheService

__all__ = [
    "AppConfig",
    "setup_logging",
    "CacheManager",
    "CacheService",
]
