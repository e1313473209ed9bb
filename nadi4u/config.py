"""Configuration for the NADI4U Smart Services client."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# Public anon key issued by the backend for unauthenticated requests
DEFAULT_API_KEY = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9."
    "eyJyb2xlIjoiYW5vbiIsImlzcyI6InN1cGFiYXNlIiwiaWF0IjoxNzU2Mjg3MDk5LCJleHAiOjE5MTM5NjcwOTl9."
    "m-Fwhllu4DfPG7xP_u-k9ciL0C_ZluS59tOmu9zNzXE"
)
DEFAULT_BASE_URL = "https://cmms-api.nadi.my"

# Storage keys shared with collaborators
SETTINGS_KEY = "nadi4uSettings"
SCHEDULE_CACHE_KEY = "nadi4uSchedule"
ANNOUNCEMENTS_CACHE_KEY = "nadi4uAnnouncements"
EVENT_META_CACHE_KEY = "nadi4uEventMeta"
LOGOUT_PURGE_KEYS = (
    SETTINGS_KEY,
    SCHEDULE_CACHE_KEY,
    ANNOUNCEMENTS_CACHE_KEY,
    EVENT_META_CACHE_KEY,
)

# Backend tables and constants
EVENT_TABLE = "nd_event"
SCHEDULE_TABLE = "nd_event_schedule"
ANNOUNCEMENTS_TABLE = "announcements"
CANCELLED_STATUS_ID = 1
MAX_IDS_PER_QUERY = 50


class ClientSettings(BaseModel):  # type: ignore[misc]
    """Runtime settings for Nadi4uClient."""
    base_url: str = Field(default=DEFAULT_BASE_URL, min_length=1)
    default_api_key: str = Field(default=DEFAULT_API_KEY, min_length=1)
    storage_dir: Path = Field(default=Path(".nadi4u"))
    request_timeout: float = Field(default=30.0, gt=0)
    reauth_timeout: float = Field(default=45.0, gt=0)
    chunk_size: int = Field(default=MAX_IDS_PER_QUERY, ge=1, le=MAX_IDS_PER_QUERY)

    @property
    def rest_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/v1"

    @classmethod
    def from_env(cls, storage_dir: Optional[Path] = None) -> "ClientSettings":
        """Build settings from NADI4U_* environment variables.

        Unset variables keep their defaults. Malformed values raise
        pydantic.ValidationError.
        """
        values = {}
        env_map = {
            "base_url": "NADI4U_BASE_URL",
            "default_api_key": "NADI4U_API_KEY",
            "storage_dir": "NADI4U_STORAGE_DIR",
            "request_timeout": "NADI4U_REQUEST_TIMEOUT",
            "reauth_timeout": "NADI4U_REAUTH_TIMEOUT",
        }
        for field_name, env_name in env_map.items():
            value = os.getenv(env_name)
            if value:
                values[field_name] = value
        if storage_dir is not None:
            values["storage_dir"] = storage_dir
        return cls(**values)
