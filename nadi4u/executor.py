"""Authenticated GET requests with expired-session recovery."""

from typing import Any, Dict

import httpx
import structlog

from .errors import (
    ApiError,
    AuthError,
    NetworkError,
    SchemaDriftError,
    SessionExpiredError,
    is_jwt_expired,
    is_schema_drift,
)
from .session import SessionManager

log = structlog.get_logger(__name__)


class RequestExecutor:
    """Issues GETs with headers from the shared session.

    A 401 "jwt expired" response triggers one re-authentication followed by
    one retry of the same URL. A second expiry on the retry is fatal.
    """

    def __init__(self, http: httpx.AsyncClient, session: SessionManager) -> None:
        self.http = http
        self.session = session

    def build_headers(self) -> Dict[str, str]:
        ctx = self.session.context
        return {
            "accept": "*/*",
            "apikey": ctx.api_key or "",
            "authorization": f"Bearer {ctx.token}",
            "accept-profile": "public",
            "Content-Type": "application/json",
        }

    async def fetch_json(self, url: str, retry_on_expired_jwt: bool = True) -> Any:
        """GET ``url`` and return the parsed JSON body.

        Args:
            url: Fully-qualified request URL
            retry_on_expired_jwt: Re-authenticate and retry once on session expiry

        Raises:
            AuthError: Session expired and automatic re-login failed
            SchemaDriftError: The backend reports a missing column or relation
            ApiError: Any other non-2xx response, or a 2xx body that is not JSON
            NetworkError: Transport failure or timeout
        """
        sent_token = self.session.context.token
        try:
            return await self._get_json(url)
        except SessionExpiredError as expired:
            if not retry_on_expired_jwt:
                log.error("Session expired again after re-authentication", url=url)
                raise ApiError(expired.status, expired.body) from expired

            current_token = self.session.context.token
            if current_token and current_token != sent_token:
                # token was renewed while this request was in flight
                log.info("Session already renewed, retrying with the new token", url=url)
                return await self.fetch_json(url, retry_on_expired_jwt=False)

            log.warning("Session expired, re-authenticating before retry", url=url)
            try:
                await self.session.reauthenticate()
            except (AuthError, NetworkError) as reauth_error:
                raise AuthError(
                    f"Session expired and auto re-login failed: {reauth_error}"
                ) from reauth_error

            log.info("Retrying request after re-authentication", url=url)
            return await self.fetch_json(url, retry_on_expired_jwt=False)

    async def _get_json(self, url: str) -> Any:
        try:
            response = await self.http.get(
                url,
                headers=self.build_headers(),
                timeout=self.session.settings.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {url}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Request failed: {e}") from e

        body = response.text
        status = response.status_code
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                log.error("Response body is not JSON", status=status, url=url)
                raise ApiError(status, body, f"Invalid JSON response: {status} - {body[:200]}") from e

        if is_jwt_expired(status, body):
            raise SessionExpiredError(status, body)
        if is_schema_drift(status, body):
            log.warning("Backend reported schema drift", status=status, url=url)
            raise SchemaDriftError(status, body)
        log.error("API request failed", status=status, url=url)
        raise ApiError(status, body)
