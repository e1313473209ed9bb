"""Async client for the NADI4U Smart Services REST backend."""

from .classify import CategoryGroup, classify
from .client import Nadi4uClient
from .config import ClientSettings
from .errors import (
    ApiError,
    AuthError,
    Nadi4uError,
    NetworkError,
    SchemaDriftError,
)
from .planner import MonthData, QueryWindow, month_window
from .storage import CredentialStore, FileStorage, MemoryStorage, StorageProvider

__all__ = [
    "ApiError",
    "AuthError",
    "CategoryGroup",
    "ClientSettings",
    "CredentialStore",
    "FileStorage",
    "MemoryStorage",
    "MonthData",
    "Nadi4uClient",
    "Nadi4uError",
    "NetworkError",
    "QueryWindow",
    "SchemaDriftError",
    "StorageProvider",
    "classify",
    "month_window",
]
