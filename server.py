#!/usr/bin/env python3
"""NADI4U MCP Server - Provides access to NADI4U Smart Services events via MCP protocol."""

import os
import re
import sys
import json
import uuid
import time
import asyncio
import logging
import functools
from enum import Enum
from typing import Annotated, Optional, List, Dict, Any, Tuple
from datetime import date, datetime

import structlog
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field
from mcp.server.fastmcp import FastMCP

from nadi4u import AuthError, ClientSettings, Nadi4uClient, NetworkError
from nadi4u.classify import category_name_of


# Pydantic models for tool arguments
class EventIdsArgs(BaseModel):  # type: ignore[misc]
    """Arguments for tools keyed on event IDs."""
    event_ids: List[Annotated[str, Field(min_length=1)]] = Field(default_factory=list, max_length=2000)

class LoginArgs(BaseModel):  # type: ignore[misc]
    """Arguments for the login tool."""
    email: str = Field(pattern=r'^[^@\s]+@[^@\s]+$')
    password: str = Field(min_length=1)
    remember: bool = True


def parse_month(month_input: Optional[str]) -> Tuple[int, int]:
    """
    Resolve a month description to (year, zero-based month index).

    Supports:
    - "this month", "current month", "now", "today" (also the default when empty)
    - "last month", "previous month"
    - "next month"
    - "3 months ago", "2 months from now"
    - "2026-01", "2026/1"
    - Any date format supported by dateutil.parser ("January 2026", "2026-01-15")
    """
    today = date.today()
    text = (month_input or "this month").lower().strip()

    if text in ["this month", "current month", "now", "today"]:
        return today.year, today.month - 1
    if text in ["last month", "previous month"]:
        target = today - relativedelta(months=1)
        return target.year, target.month - 1
    if text == "next month":
        target = today + relativedelta(months=1)
        return target.year, target.month - 1

    relative_pattern = re.match(r'(\d+)\s+months?\s+(ago|from now)$', text)
    if relative_pattern:
        amount = int(relative_pattern.group(1))
        if relative_pattern.group(2) == "ago":
            amount = -amount
        target = today + relativedelta(months=amount)
        return target.year, target.month - 1

    year_month = re.match(r'^(\d{4})[-/](\d{1,2})$', text)
    if year_month:
        year, month = int(year_month.group(1)), int(year_month.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid month in '{month_input}'")
        return year, month - 1

    try:
        parsed = date_parser.parse(text, default=datetime(today.year, today.month, 1))
    except (ValueError, TypeError, OverflowError) as e:
        log.warning("Failed to parse month with dateutil", input=month_input, error=str(e))
        raise ValueError(
            f"Could not parse month '{month_input}'. "
            "Try formats like: 2026-01, January 2026. "
            "Or natural language: this month, last month, next month, 2 months ago"
        )
    return parsed.year, parsed.month - 1


def format_events_compact(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Reduce event rows to the fields needed to list programs.

    Returns id, program name, start/end, location and category name. Use
    verbose=True on the tools to get the full joined rows.
    """
    compact: List[Dict[str, Any]] = []
    for event in events:
        if not isinstance(event, dict):
            continue
        compact.append({
            "id": event.get("id"),
            "program_name": event.get("program_name"),
            "start_datetime": event.get("start_datetime"),
            "end_datetime": event.get("end_datetime"),
            "location_event": event.get("location_event"),
            "category": category_name_of(event),
        })
    return compact


# Configure logger to output to stderr only with error handling
class SafeStreamHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Stream handler that gracefully handles broken pipes."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except (BrokenPipeError, ConnectionResetError):
            # Silently ignore broken pipe errors during logging
            pass
        except Exception:
            self.handleError(record)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[SafeStreamHandler(sys.stderr)]
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

log = structlog.get_logger(__name__)
logger = logging.getLogger(__name__)

# Request logs from httpx include full URLs; keep them out of INFO output
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)

current_session_id = str(uuid.uuid4())
SENSITIVE_ARGS = {'password', 'token', 'api_key'}


def track_usage(func: Any) -> Any:
    """Decorator to log tool calls with timing and result size."""
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        tool_name = func.__name__

        safe_kwargs = {k: v for k, v in kwargs.items() if k not in SENSITIVE_ARGS}
        logger.info(f"[TOOL_CALL] {tool_name} | session: {current_session_id} | args: {safe_kwargs}")

        try:
            result = await func(*args, **kwargs)
            execution_time = time.time() - start_time

            result_chars = len(str(result)) if result else 0
            result_kb = result_chars / 1024

            extra_stats = ""
            try:
                if isinstance(result, str) and result.strip().startswith('{'):
                    parsed = json.loads(result)
                    for key in ['events', 'schedule', 'announcements']:
                        if key in parsed and isinstance(parsed[key], list):
                            extra_stats += f" | {key}: {len(parsed[key])} items"
            except (json.JSONDecodeError, TypeError):
                pass

            logger.info(f"[ANALYTICS] tool_called: {tool_name} | time: {execution_time:.3f}s | status: success")
            logger.info(f"[RESULT_SIZE] {tool_name} | chars: {result_chars:,} | size: {result_kb:.2f} KB{extra_stats}")
            return result

        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(f"[ANALYTICS] tool_error: {tool_name} | time: {execution_time:.3f}s | error: {str(e)}")
            raise

    return wrapper

# Initialize the FastMCP server
mcp = FastMCP("nadi4u")


class AuthState(Enum):
    """Track authentication state to prevent duplicate initialization attempts."""
    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"

# Global variables for authentication
client: Optional[Nadi4uClient] = None
auth_state: AuthState = AuthState.NOT_INITIALIZED
auth_lock: Optional[asyncio.Lock] = None  # Created in async context
auth_error: Optional[str] = None  # Store last auth error for debugging


def get_client() -> Nadi4uClient:
    """Return the shared client, creating it from NADI4U_* settings on first use."""
    global client
    if client is None:
        settings = ClientSettings.from_env()
        logger.info(f"[AUTH] Creating NADI4U client for {settings.base_url} (storage: {settings.storage_dir})")
        client = Nadi4uClient(settings)
    return client


async def initialize_client() -> None:
    """Restore the stored session, or log in with NADI4U_EMAIL / NADI4U_PASSWORD.

    A restored token is not validated here; an expired one is renewed by the
    client on the first API call.
    """
    global auth_state, auth_error

    nadi = get_client()
    try:
        nadi.session.ensure_auth()
        logger.info("[AUTH] ✓ Session restored from storage - validity tested on first API call")
        auth_state = AuthState.AUTHENTICATED
        auth_error = None
        return
    except AuthError:
        logger.info("[AUTH] No stored session found")

    email = os.getenv("NADI4U_EMAIL")
    password = os.getenv("NADI4U_PASSWORD")
    if not email or not password:
        error_msg = "Not logged in and NADI4U_EMAIL / NADI4U_PASSWORD environment variables are not set"
        logger.error(error_msg)
        auth_state = AuthState.FAILED
        auth_error = error_msg
        raise AuthError(error_msg)

    # Only network failures are retried; rejected credentials fail immediately
    max_retries = 2
    retry_delay = 3

    for attempt in range(max_retries):
        try:
            logger.info(f"[AUTH] Attempt {attempt + 1}/{max_retries}: Calling NADI4U login API")
            await nadi.login(email, password, remember=True)
            auth_state = AuthState.AUTHENTICATED
            auth_error = None
            logger.info(f"[AUTH] ✓ Authentication complete - state: {auth_state.value}")
            return
        except NetworkError as e:
            if attempt < max_retries - 1:
                logger.warning(f"[AUTH] Attempt {attempt + 1} failed: {e}, retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                auth_state = AuthState.FAILED
                auth_error = str(e)
                logger.error(f"[AUTH] ✗ Authentication failed after {max_retries} attempts: {e}")
                raise
        except AuthError as e:
            auth_state = AuthState.FAILED
            auth_error = str(e)
            logger.error(f"[AUTH] ✗ Login rejected: {e}")
            raise


async def ensure_authenticated() -> None:
    """Ensure the client has a session, initializing on-demand if needed.

    A failed environment login stays FAILED until the login tool is called,
    so bad saved credentials are not retried on every tool call.
    """
    global auth_state, auth_lock, auth_error

    if auth_lock is None:
        auth_lock = asyncio.Lock()

    # Fast path - already authenticated
    if auth_state == AuthState.AUTHENTICATED and client is not None and client.is_logged_in():
        return

    async with auth_lock:
        if auth_state == AuthState.AUTHENTICATED and client is not None and client.is_logged_in():
            logger.info("[AUTH] Lock acquired: another task completed authentication")
            return

        if auth_state == AuthState.FAILED:
            error_msg = f"Authentication previously failed: {auth_error or 'unknown error'}. Call the login tool to retry."
            logger.error(f"[AUTH] Cannot authenticate: {error_msg}")
            raise AuthError(error_msg)

        logger.info("[AUTH] Starting lazy authentication")
        auth_state = AuthState.INITIALIZING
        try:
            await initialize_client()
        except Exception as e:
            auth_state = AuthState.FAILED
            auth_error = str(e)
            raise


# FastMCP Tool definitions using decorators

@mcp.tool()
@track_usage
async def login(
    email: Optional[str] = None,
    password: Optional[str] = None,
    remember: bool = True
) -> str:
    """Log in to NADI4U and store the session for later calls.

    Args:
        email: Account email (default: NADI4U_EMAIL environment variable)
        password: Account password (default: NADI4U_PASSWORD environment variable)
        remember: Save credentials so expired sessions are renewed automatically (default: True)

    Returns:
        JSON with the login status
    """
    global auth_state, auth_error

    args = LoginArgs(
        email=email or os.getenv("NADI4U_EMAIL", ""),
        password=password or os.getenv("NADI4U_PASSWORD", ""),
        remember=remember,
    )
    try:
        data = await get_client().login(args.email, args.password, remember=args.remember)
    except Exception as e:
        auth_state = AuthState.FAILED
        auth_error = str(e)
        log.error("Login failed", email=args.email, error=str(e))
        raise

    auth_state = AuthState.AUTHENTICATED
    auth_error = None
    return json.dumps({
        "logged_in": True,
        "email": args.email,
        "remembered": args.remember,
        "expires_in": data.get("expires_in"),
    }, indent=2)


@mcp.tool()
@track_usage
async def logout() -> str:
    """Log out and delete the stored session, credentials and cached sync data."""
    global auth_state, auth_error

    get_client().logout()
    auth_state = AuthState.NOT_INITIALIZED
    auth_error = None
    return json.dumps({"logged_in": False}, indent=2)


@mcp.tool()
@track_usage
async def get_login_status() -> str:
    """Report whether a session is available, without contacting the backend."""
    nadi = get_client()
    try:
        nadi.session.ensure_auth()
    except AuthError:
        pass
    return json.dumps({
        "logged_in": nadi.is_logged_in(),
        "auth_state": auth_state.value,
        "session_phase": nadi.session.phase.value,
        "last_error": auth_error,
    }, indent=2)


@mcp.tool()
@track_usage
async def get_schedule(event_ids: List[str]) -> str:
    """Fetch day-by-day schedule rows for events.

    Args:
        event_ids: Event UUIDs. Large lists are fetched in batches of 50.

    Returns:
        JSON string containing schedule rows ordered by day number within each batch
    """
    args = EventIdsArgs(event_ids=event_ids)
    await ensure_authenticated()

    try:
        rows = await get_client().get_schedule(args.event_ids)
        log.info("Schedule retrieved", ids=len(args.event_ids), rows=len(rows))
        return json.dumps({"schedule": rows}, indent=2)
    except Exception as e:
        log.error("Failed to fetch schedule", error=str(e), ids=len(args.event_ids))
        raise


@mcp.tool()
@track_usage
async def get_events(event_ids: List[str]) -> str:
    """Fetch event metadata (name, location, start/end, status) for event IDs.

    Args:
        event_ids: Event UUIDs. Large lists are fetched in batches of 50.
    """
    args = EventIdsArgs(event_ids=event_ids)
    await ensure_authenticated()

    try:
        rows = await get_client().get_events(args.event_ids)
        log.info("Events retrieved", ids=len(args.event_ids), rows=len(rows))
        return json.dumps({"events": rows}, indent=2)
    except Exception as e:
        log.error("Failed to fetch events", error=str(e), ids=len(args.event_ids))
        raise


@mcp.tool()
@track_usage
async def get_month_data(month: str = "this month", verbose: bool = False) -> str:
    """Fetch NADI4U Smart Services events for a month with their schedules.

    Args:
        month: Month to fetch. Supports natural language like 'this month', 'last month',
               'next month', '2 months ago', or formats like '2026-01' and 'January 2026'
        verbose: Output format control (default: False)
            - False: Compact events (id, program_name, start/end, location, category)
            - True: Full event rows including joined program, mode and subcategory lookups

    Returns:
        JSON string with "events" and "schedule" lists
    """
    year, month_index = parse_month(month)
    await ensure_authenticated()

    try:
        data = await get_client().get_smart_services_month_data(year, month_index)
        events = data.events if verbose else format_events_compact(data.events)
        return json.dumps({
            "month": f"{year:04d}-{month_index + 1:02d}",
            "events": events,
            "schedule": data.schedule,
        }, indent=2)
    except Exception as e:
        log.error("Failed to fetch month data", error=str(e), year=year, month_index=month_index)
        raise


@mcp.tool()
@track_usage
async def get_announcements() -> str:
    """List active announcements, newest first."""
    await ensure_authenticated()

    try:
        announcements = await get_client().get_announcements()
        return json.dumps({"announcements": announcements}, indent=2)
    except Exception as e:
        log.error("Failed to fetch announcements", error=str(e))
        raise


@mcp.tool()
@track_usage
async def get_user() -> str:
    """Return the profile of the logged-in user."""
    await ensure_authenticated()

    try:
        user = await get_client().get_user()
        return json.dumps(user, indent=2)
    except Exception as e:
        log.error("Failed to fetch user", error=str(e))
        raise


@mcp.tool()
@track_usage
async def sync_month(month: str = "this month") -> str:
    """Fetch a month's events, schedules and announcements and refresh the local caches.

    Args:
        month: Month to sync (same formats as get_month_data)

    Returns:
        JSON with the number of schedule rows, events and announcements cached
    """
    year, month_index = parse_month(month)
    await ensure_authenticated()

    try:
        counts = await get_client().sync_month(year, month_index)
        return json.dumps({"month": f"{year:04d}-{month_index + 1:02d}", **counts}, indent=2)
    except Exception as e:
        log.error("Sync failed", error=str(e), year=year, month_index=month_index)
        raise


async def main() -> None:
    """Main entry point for the server.

    The server starts immediately without authentication. Authentication
    happens lazily on the first tool call via ensure_authenticated().
    """
    logger.info("=" * 70)
    logger.info("[AUTH] MCP Server starting - LAZY AUTHENTICATION MODE")
    logger.info("[AUTH] Authentication will be performed on-demand (first tool call)")
    logger.info(f"[AUTH] Current auth state: {auth_state.value}")
    logger.info("=" * 70)

    try:
        logger.info("Starting MCP server with stdio transport")
        await mcp.run_stdio_async()
    except BrokenPipeError:
        logger.info("Client disconnected (broken pipe) - shutting down gracefully")
    except ConnectionResetError:
        logger.info("Connection reset by client - shutting down gracefully")
    except KeyboardInterrupt:
        logger.info("Received interrupt signal - shutting down")
    except Exception as e:
        logger.error(f"Unexpected error in MCP server: {e}")
        raise
    finally:
        if client is not None:
            await client.aclose()


def run() -> None:
    """Console entry point: run the stdio server until the client disconnects."""
    try:
        asyncio.run(main())
    except ExceptionGroup as eg:
        # anyio TaskGroups wrap disconnect errors; only re-raise real failures
        remaining_exceptions = []
        for exc in eg.exceptions:
            is_shutdown_error = (
                isinstance(exc, (BrokenPipeError, ConnectionResetError, OSError, EOFError)) or
                any(err_str in str(exc).lower() for err_str in ["broken pipe", "connection reset", "[errno 32]", "eof"])
            )
            if not is_shutdown_error:
                remaining_exceptions.append(exc)

        if remaining_exceptions:
            logger.error(f"Fatal error: {eg}")
            raise
        logger.info("Shutdown complete (broken pipe expected during client disconnect)")
    except BrokenPipeError:
        logger.info("Broken pipe during shutdown - exiting quietly")
    except ConnectionResetError:
        logger.info("Connection reset during shutdown - exiting quietly")
    except KeyboardInterrupt:
        logger.info("Interrupted by user - exiting")


if __name__ == "__main__":
    run()
