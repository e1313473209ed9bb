"""Query planning: bounded ID batches and month windows with projection fallback."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Sequence
from urllib.parse import quote

import structlog
from dateutil.relativedelta import relativedelta

from .classify import is_target
from .config import (
    CANCELLED_STATUS_ID,
    EVENT_TABLE,
    MAX_IDS_PER_QUERY,
    SCHEDULE_TABLE,
    ClientSettings,
)
from .errors import SchemaDriftError
from .executor import RequestExecutor

log = structlog.get_logger(__name__)

QueryBuilder = Callable[[List[str]], str]

SCHEDULE_COLUMNS = "event_id,day_number,schedule_date,start_time,end_time"
EVENT_META_COLUMNS = "id,program_name,location_event,start_datetime,end_datetime,status_id"

PRIMARY_MONTH_COLUMNS = ",".join([
    "id",
    "program_name",
    "description",
    "location_event",
    "start_datetime",
    "end_datetime",
    "site_id",
    "category_id",
    "subcategory_id",
    "program_id",
    "status_id",
    "program_mode",
    "nd_program_mode:program_mode(id,name)",
    "nd_event_category:category_id(id,name)",
    "nd_event_subcategory:subcategory_id(id,name)",
    "nd_event_program:program_id(id,name)",
])

# Older schemas lack subcategory/program columns and their joins
FALLBACK_MONTH_COLUMNS = ",".join([
    "id",
    "program_name",
    "description",
    "location_event",
    "start_datetime",
    "end_datetime",
    "site_id",
    "category_id",
    "status_id",
    "program_mode",
    "nd_program_mode:program_mode(id,name)",
    "nd_event_category:category_id(id,name)",
])


def chunk_ids(ids: Sequence[str], size: int = MAX_IDS_PER_QUERY) -> Iterator[List[str]]:
    """Yield contiguous slices of ``ids`` with at most ``size`` elements, in order."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for start in range(0, len(ids), size):
        yield list(ids[start:start + size])


def in_filter(ids: Sequence[str]) -> str:
    """PostgREST ``in.(...)`` list with each ID double-quoted and percent-encoded."""
    return "in.(" + ",".join(f'"{quote(str(item), safe="")}"' for item in ids) + ")"


def to_query_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with milliseconds and a Z suffix, percent-encoded for a query string."""
    utc = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return quote(utc.replace("+00:00", "Z"), safe="")


@dataclass(frozen=True)
class QueryWindow:
    start: datetime
    end: datetime


@dataclass
class MonthData:
    events: List[Dict[str, Any]] = field(default_factory=list)
    schedule: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"events": self.events, "schedule": self.schedule}


def month_window(year: int, month_index: int) -> QueryWindow:
    """Closed local-time window covering a whole month.

    Args:
        year: Four-digit year
        month_index: Zero-based month (0 = January)

    Returns:
        QueryWindow from the first instant of the month to 23:59:59.999 on its
        last day, as timezone-aware local datetimes
    """
    if not 0 <= month_index <= 11:
        raise ValueError(f"Month index must be between 0 and 11, got {month_index}")
    first = datetime(year, month_index + 1, 1)
    last = first + relativedelta(months=1) - timedelta(milliseconds=1)
    return QueryWindow(start=first.astimezone(), end=last.astimezone())


class BatchQueryPlanner:
    """Fetches rows for large ID lists one bounded chunk at a time."""

    def __init__(self, executor: RequestExecutor, settings: ClientSettings) -> None:
        self.executor = executor
        self.settings = settings

    def schedule_url(self, chunk: List[str]) -> str:
        return (
            f"{self.settings.rest_url}/{SCHEDULE_TABLE}?select={SCHEDULE_COLUMNS}"
            f"&event_id={in_filter(chunk)}&order=day_number.asc"
        )

    def events_url(self, chunk: List[str]) -> str:
        return f"{self.settings.rest_url}/{EVENT_TABLE}?select={EVENT_META_COLUMNS}&id={in_filter(chunk)}"

    async def fetch_by_ids(self, ids: Sequence[str], query_builder: QueryBuilder) -> List[Any]:
        """Run ``query_builder`` per chunk sequentially and concatenate the rows.

        An empty ``ids`` returns [] without any request; an empty IN list is
        not a valid query.
        """
        if not ids:
            return []

        results: List[Any] = []
        chunks = list(chunk_ids(ids, self.settings.chunk_size))
        for index, chunk in enumerate(chunks, start=1):
            rows = await self.executor.fetch_json(query_builder(chunk))
            if isinstance(rows, list):
                results.extend(rows)
            log.debug("Fetched chunk", chunk=index, chunks=len(chunks), ids=len(chunk))
        return results


class MonthQueryPlanner:
    """Fetches one month of target-group events and their schedules."""

    def __init__(self, executor: RequestExecutor, batches: BatchQueryPlanner, settings: ClientSettings) -> None:
        self.executor = executor
        self.batches = batches
        self.settings = settings

    def month_url(self, columns: str, window: QueryWindow) -> str:
        return (
            f"{self.settings.rest_url}/{EVENT_TABLE}?select={columns}"
            f"&status_id=neq.{CANCELLED_STATUS_ID}"
            f"&start_datetime=lte.{to_query_timestamp(window.end)}"
            f"&end_datetime=gte.{to_query_timestamp(window.start)}"
            f"&order=start_datetime.asc"
        )

    async def fetch_month_events(self, year: int, month_index: int) -> List[Dict[str, Any]]:
        """Events overlapping the month whose category is in the target group.

        Falls back once to a reduced projection when the backend reports a
        missing column or relation. Errors from the fallback propagate as-is.
        """
        window = month_window(year, month_index)
        try:
            rows = await self.executor.fetch_json(self.month_url(PRIMARY_MONTH_COLUMNS, window))
        except SchemaDriftError as e:
            log.warning(
                "Primary month query hit schema drift, retrying with reduced columns",
                year=year, month_index=month_index, status=e.status,
            )
            rows = await self.executor.fetch_json(self.month_url(FALLBACK_MONTH_COLUMNS, window))

        if not isinstance(rows, list):
            return []
        return [row for row in rows if is_target(row)]

    async def fetch_month_data(self, year: int, month_index: int) -> MonthData:
        events = await self.fetch_month_events(year, month_index)
        event_ids = [row["id"] for row in events if row.get("id")]
        schedule = await self.batches.fetch_by_ids(event_ids, self.batches.schedule_url)
        log.info("Month data fetched", year=year, month_index=month_index, events=len(events), schedule=len(schedule))
        return MonthData(events=events, schedule=schedule)
