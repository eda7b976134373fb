"""Core utilities: settings, logging and cache backends."""

from apilayer.core.cache import (
    CacheBackend,
    FileCache,
    InMemoryCache,
    RedisCache,
)
from apilayer.core.config import Settings, settings
from apilayer.core.logging import get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "FileCache",
    "InMemoryCache",
    "RedisCache",
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
]
