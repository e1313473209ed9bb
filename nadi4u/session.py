"""Session state, login and single-flight re-authentication."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

from .config import LOGOUT_PURGE_KEYS, ClientSettings
from .errors import AuthError, NetworkError
from .storage import CredentialStore

log = structlog.get_logger(__name__)
logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    """Where the session is in its lifecycle."""
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REAUTHENTICATING = "reauthenticating"


@dataclass
class SessionContext:
    """The live session tuple, shared by reference with the executor and planners."""
    api_key: Optional[str] = None
    token: Optional[str] = None
    email: str = ""
    password: str = ""

    def clear(self) -> None:
        self.api_key = None
        self.token = None
        self.email = ""
        self.password = ""


class SessionManager:
    """Owns the SessionContext: hydration, login, reauth and logout.

    Re-authentication is single-flight. The first caller starts a task and
    stores it in ``_reauth_task``; concurrent callers await that same task.
    A done-callback clears the handle once the task settles so a later
    expiry can start a fresh attempt.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: ClientSettings,
        store: CredentialStore,
        context: Optional[SessionContext] = None,
    ) -> None:
        self.http = http
        self.settings = settings
        self.store = store
        self.context = context if context is not None else SessionContext()
        self._reauth_task: Optional["asyncio.Task[None]"] = None

    @property
    def phase(self) -> SessionPhase:
        if self._reauth_task is not None:
            return SessionPhase.REAUTHENTICATING
        if self.is_logged_in():
            return SessionPhase.AUTHENTICATED
        return SessionPhase.ANONYMOUS

    def is_logged_in(self) -> bool:
        return bool(self.context.api_key and self.context.token)

    def hydrate(self) -> None:
        """Fill missing session fields from the stored settings blob."""
        saved = self.store.get()
        ctx = self.context
        if not ctx.api_key and saved.get("apiKey"):
            ctx.api_key = str(saved["apiKey"])
        if not ctx.token and saved.get("token"):
            ctx.token = str(saved["token"])
        if not ctx.email and saved.get("email"):
            ctx.email = str(saved["email"]).strip()
        if not ctx.password and saved.get("password"):
            ctx.password = str(saved["password"])

    def ensure_auth(self) -> None:
        """Make sure a token is available locally. Never touches the network.

        Raises:
            AuthError: If no token is in memory or in storage.
        """
        if not self.context.api_key or not self.context.token:
            self.hydrate()
        if not self.context.api_key:
            self.context.api_key = self.settings.default_api_key
        if not self.context.token:
            raise AuthError("Not logged in. Call login(email, password) or configure(api_key, token) first.")

    def configure(self, api_key: Optional[str], token: Optional[str]) -> None:
        """Install a session manually, e.g. from a token pasted by the user."""
        self.context.api_key = api_key or self.settings.default_api_key
        self.context.token = token or None

    def set_credentials(self, email: str, password: str, persist: bool = True) -> None:
        self.context.email = str(email or "").strip()
        self.context.password = str(password or "")
        if persist:
            self.store.save({"email": self.context.email, "password": self.context.password})

    async def login(self, email: str, password: str, remember: bool = True) -> Dict[str, Any]:
        """Exchange email/password for an access token.

        Args:
            email: Account email
            password: Account password
            remember: Persist apiKey, token and credentials to storage

        Returns:
            The backend's token payload (access_token, refresh_token, user, ...)

        Raises:
            AuthError: If the backend rejects the credentials
            NetworkError: If the auth endpoint cannot be reached
        """
        url = f"{self.settings.auth_url}/token?grant_type=password"
        headers = {
            "accept": "application/json",
            "apikey": self.settings.default_api_key,
            "Content-Type": "application/json",
        }
        logger.info(f"[AUTH] Logging in as {str(email or '').strip()}")
        try:
            response = await self.http.post(
                url,
                json={"email": email, "password": password},
                headers=headers,
                timeout=self.settings.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Login request timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Login request failed: {e}") from e

        if not response.is_success:
            message = _login_error_message(response)
            logger.warning(f"[AUTH] ✗ Login rejected ({response.status_code}): {message}")
            raise AuthError(message)

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError("Login response was not valid JSON") from e
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Login response did not include an access token")

        self.configure(self.settings.default_api_key, token)
        self.set_credentials(email, password, persist=False)
        if remember:
            self.store.save({
                "apiKey": self.context.api_key,
                "token": token,
                "email": self.context.email,
                "password": self.context.password,
            })
        logger.info("[AUTH] ✓ Login successful")
        return data

    async def reauthenticate(self) -> None:
        """Log in again with the remembered credentials, single-flight.

        Raises:
            AuthError: If no credentials are saved, the backend rejects them,
                or the attempt exceeds the re-authentication timeout
        """
        task = self._reauth_task
        if task is None:
            logger.info("[AUTH] Session expired, starting re-authentication")
            task = asyncio.ensure_future(self._reauthenticate_once())
            self._reauth_task = task
            task.add_done_callback(self._release_reauth_task)
        else:
            logger.info("[AUTH] Re-authentication already in flight, waiting for it")
        # shield: a cancelled waiter must not cancel the login other callers share
        await asyncio.shield(task)

    def _release_reauth_task(self, task: "asyncio.Task[None]") -> None:
        if self._reauth_task is task:
            self._reauth_task = None
        if not task.cancelled() and task.exception() is not None:
            log.warning("Re-authentication failed", error=str(task.exception()))

    async def _reauthenticate_once(self) -> None:
        self.hydrate()
        if not self.context.email or not self.context.password:
            raise AuthError("Saved login credentials not found. Please login again.")
        try:
            await asyncio.wait_for(
                self.login(self.context.email, self.context.password, remember=True),
                timeout=self.settings.reauth_timeout,
            )
        except asyncio.TimeoutError as e:
            raise AuthError(f"Re-authentication timed out after {self.settings.reauth_timeout}s") from e

    def logout(self) -> None:
        """Forget the session and purge settings and cached data from every backend."""
        self.context.clear()
        for key in LOGOUT_PURGE_KEYS:
            self.store.provider.remove_item(key)
        logger.info("[AUTH] Logged out, session and cached data cleared")


def _login_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or "Login failed"
    if isinstance(payload, dict):
        return payload.get("error_description") or payload.get("msg") or "Login failed"
    return "Login failed"
