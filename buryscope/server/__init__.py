"""
Backend Store

SQL-backed authoritative cache tier and its HTTP API.
"""

from .app import create_app
from .store import SqlCacheStore, StoreTier

__all__ = ["create_app", "SqlCacheStore", "StoreTier"]
