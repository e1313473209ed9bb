"""NADI4U Smart Services client.

Log in once; the session token and remembered credentials are kept in the
settings blob so a restarted process can continue without a new login, and
expired tokens are renewed automatically on the first 401 "jwt expired".
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from .config import (
    ANNOUNCEMENTS_CACHE_KEY,
    ANNOUNCEMENTS_TABLE,
    EVENT_META_CACHE_KEY,
    SCHEDULE_CACHE_KEY,
    ClientSettings,
)
from .executor import RequestExecutor
from .planner import BatchQueryPlanner, MonthData, MonthQueryPlanner, to_query_timestamp
from .session import SessionManager
from .storage import CredentialStore, StorageProvider, default_provider

log = structlog.get_logger(__name__)


class Nadi4uClient:
    """Async client for the NADI4U REST backend.

    Example:
        async with Nadi4uClient() as client:
            await client.login("me@example.com", "secret")
            month = await client.get_smart_services_month_data(2026, 0)
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        http: Optional[httpx.AsyncClient] = None,
        storage: Optional[StorageProvider] = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.settings.request_timeout)
        self.storage = storage or default_provider(self.settings.storage_dir)
        self.store = CredentialStore(self.storage)
        self.session = SessionManager(self.http, self.settings, self.store)
        self.executor = RequestExecutor(self.http, self.session)
        self.batches = BatchQueryPlanner(self.executor, self.settings)
        self.months = MonthQueryPlanner(self.executor, self.batches, self.settings)

    async def __aenter__(self) -> "Nadi4uClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http and not self.http.is_closed:
            await self.http.aclose()

    # Session

    async def login(self, email: str, password: str, remember: bool = True) -> Dict[str, Any]:
        return await self.session.login(email, password, remember=remember)

    def logout(self) -> None:
        self.session.logout()

    def is_logged_in(self) -> bool:
        return self.session.is_logged_in()

    def configure(self, api_key: Optional[str], token: Optional[str]) -> None:
        self.session.configure(api_key, token)

    def set_credentials(self, email: str, password: str, persist: bool = True) -> None:
        self.session.set_credentials(email, password, persist=persist)

    # Data

    async def get_schedule(self, event_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Schedule rows (one per event day) for the given event IDs."""
        self.session.ensure_auth()
        return await self.batches.fetch_by_ids(list(event_ids or []), self.batches.schedule_url)

    async def get_events(self, event_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Basic event metadata for the given event IDs."""
        self.session.ensure_auth()
        return await self.batches.fetch_by_ids(list(event_ids or []), self.batches.events_url)

    async def get_smart_services_month_data(self, year: int, month_index: int) -> MonthData:
        """NADI4U-category events overlapping a month plus their schedule rows.

        Args:
            year: Four-digit year
            month_index: Zero-based month (0 = January)
        """
        self.session.ensure_auth()
        return await self.months.fetch_month_data(year, month_index)

    async def get_announcements(self) -> List[Dict[str, Any]]:
        """Active announcements that have started and not yet ended, newest first."""
        self.session.ensure_auth()
        now = to_query_timestamp(datetime.now(timezone.utc))
        url = (
            f"{self.settings.rest_url}/{ANNOUNCEMENTS_TABLE}?select=*&status=eq.active"
            f"&start_date=lte.{now}&or=(end_date.gt.{now},end_date.is.null)"
            f"&order=created_at.desc"
        )
        rows = await self.executor.fetch_json(url)
        return rows if isinstance(rows, list) else []

    async def get_user(self) -> Dict[str, Any]:
        """Profile of the user owning the current token."""
        self.session.ensure_auth()
        return await self.executor.fetch_json(f"{self.settings.auth_url}/user")

    async def sync_month(self, year: int, month_index: int) -> Dict[str, int]:
        """Fetch a month plus announcements and refresh the local caches.

        Returns:
            Counts of schedule rows, events and announcements written
        """
        month = await self.get_smart_services_month_data(year, month_index)
        announcements = await self.get_announcements()

        self.storage.set_json(SCHEDULE_CACHE_KEY, month.schedule)
        self.storage.set_json(ANNOUNCEMENTS_CACHE_KEY, announcements)
        self.storage.set_json(EVENT_META_CACHE_KEY, month.events)

        counts = {
            "schedule_count": len(month.schedule),
            "event_count": len(month.events),
            "announcement_count": len(announcements),
        }
        log.info("Sync completed", year=year, month_index=month_index, **counts)
        return counts
