"""Tests for expired-session detection and the retry-once-after-reauth policy."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from nadi4u import ApiError, AuthError, Nadi4uError, NetworkError, SchemaDriftError
from nadi4u.errors import SessionExpiredError
from nadi4u.config import DEFAULT_API_KEY

from conftest import BASE_URL, FRESH_TOKEN, STALE_TOKEN, FakeBackend

SCHEDULE_PATH = "/rest/v1/nd_event_schedule"
SCHEDULE_URL = f"{BASE_URL}{SCHEDULE_PATH}?select=event_id&event_id=in.(%22e1%22)"


def rows_route(rows):
    return lambda request: httpx.Response(200, json=rows)


class TestRequestHeaders:
    """Every REST call carries the session headers."""

    @pytest.mark.asyncio
    async def test_headers(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = rows_route([{"event_id": "e1"}])
        client.configure(None, FRESH_TOKEN)

        result = await client.executor.fetch_json(SCHEDULE_URL)

        assert result == [{"event_id": "e1"}]
        headers = backend.requests[0].headers
        assert headers["apikey"] == DEFAULT_API_KEY
        assert headers["authorization"] == f"Bearer {FRESH_TOKEN}"
        assert headers["accept-profile"] == "public"
        assert headers["content-type"] == "application/json"
        assert headers["accept"] == "*/*"
        assert backend.requests[0].method == "GET"


class TestExpiredSessionRetry:
    """A 401 "JWT expired" triggers one reauth and one retry."""

    @pytest.mark.asyncio
    async def test_expired_token_is_renewed_and_request_retried(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = rows_route([{"event_id": "e1"}])
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        result = await client.executor.fetch_json(SCHEDULE_URL)

        assert result == [{"event_id": "e1"}]
        assert len(backend.login_calls) == 1
        assert len(backend.calls(SCHEDULE_PATH)) == 2
        assert client.session.context.token == FRESH_TOKEN
        assert client.store.get()["token"] == FRESH_TOKEN

    @pytest.mark.asyncio
    async def test_second_expiry_is_fatal(self, client, backend: FakeBackend) -> None:
        backend.always_expired = True
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        with pytest.raises(ApiError) as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)

        assert exc_info.value.status == 401
        assert len(backend.login_calls) == 1
        assert len(backend.calls(SCHEDULE_PATH)) == 2

    @pytest.mark.asyncio
    async def test_retry_disabled(self, client, backend: FakeBackend) -> None:
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        with pytest.raises(ApiError):
            await client.executor.fetch_json(SCHEDULE_URL, retry_on_expired_jwt=False)
        assert backend.login_calls == []

    @pytest.mark.asyncio
    async def test_reauth_failure_names_both_errors(self, client, backend: FakeBackend) -> None:
        client.configure(None, STALE_TOKEN)

        with pytest.raises(AuthError, match="Session expired and auto re-login failed: Saved login credentials not found") as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)

        assert isinstance(exc_info.value.__cause__, AuthError)
        assert len(backend.calls(SCHEDULE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_reauth_rejected_by_backend(self, client, backend: FakeBackend) -> None:
        backend.login_status = 400
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "old-password")

        with pytest.raises(AuthError, match="Invalid login credentials"):
            await client.executor.fetch_json(SCHEDULE_URL)

    @pytest.mark.asyncio
    async def test_concurrent_expiry_single_login(self, client, backend: FakeBackend) -> None:
        """K concurrent expiries produce one login and K individual retries."""
        backend.routes[SCHEDULE_PATH] = rows_route([{"event_id": "e1"}])
        backend.login_delay = 0.05
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        results = await asyncio.gather(*(client.executor.fetch_json(SCHEDULE_URL) for _ in range(5)))

        assert results == [[{"event_id": "e1"}]] * 5
        assert len(backend.login_calls) == 1
        assert len(backend.calls(SCHEDULE_PATH)) == 10


class TestNonRetriedErrors:
    """Everything except session expiry is surfaced without retry."""

    @pytest.mark.asyncio
    async def test_plain_401_is_not_retried(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = lambda request: httpx.Response(401, json={"message": "Invalid API key"})
        client.configure(None, FRESH_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        with pytest.raises(ApiError) as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)

        assert exc_info.value.status == 401
        assert "Invalid API key" in exc_info.value.body
        assert backend.login_calls == []

    @pytest.mark.asyncio
    async def test_server_error(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = lambda request: httpx.Response(500, text="upstream down")
        client.configure(None, FRESH_TOKEN)

        with pytest.raises(ApiError, match="API Error: 500 - upstream down"):
            await client.executor.fetch_json(SCHEDULE_URL)
        assert len(backend.calls(SCHEDULE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_schema_drift_is_typed(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = lambda request: httpx.Response(
            400, json={"code": "42703", "message": "column nd_event_schedule.day_number does not exist"}
        )
        client.configure(None, FRESH_TOKEN)

        with pytest.raises(SchemaDriftError) as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_transport_failure(self, client, backend: FakeBackend) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend.routes[SCHEDULE_PATH] = refuse
        client.configure(None, FRESH_TOKEN)

        with pytest.raises(NetworkError):
            await client.executor.fetch_json(SCHEDULE_URL)

    @pytest.mark.asyncio
    async def test_timeout(self, client, backend: FakeBackend) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        backend.routes[SCHEDULE_PATH] = slow
        client.configure(None, FRESH_TOKEN)

        with pytest.raises(NetworkError, match="timed out"):
            await client.executor.fetch_json(SCHEDULE_URL)


class TestNonJsonResponses:
    """A 2xx body that is not JSON surfaces as a typed error."""

    @pytest.mark.asyncio
    async def test_html_success_body(self, client, backend: FakeBackend) -> None:
        backend.routes[SCHEDULE_PATH] = lambda request: httpx.Response(200, text="<html>proxy</html>")
        client.configure(None, FRESH_TOKEN)

        with pytest.raises(ApiError) as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)

        assert isinstance(exc_info.value, Nadi4uError)
        assert exc_info.value.status == 200
        assert "<html>proxy</html>" in exc_info.value.body
        assert len(backend.calls(SCHEDULE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_login_html_body(self, client, backend: FakeBackend) -> None:
        backend.login_text = "<html>proxy</html>"

        with pytest.raises(AuthError, match="Login response was not valid JSON"):
            await client.login("me@nadi.my", "secret")
        assert not client.is_logged_in()
        assert client.store.get() == {}

    @pytest.mark.asyncio
    async def test_reauth_html_body_names_both_errors(self, client, backend: FakeBackend) -> None:
        backend.login_text = "<html>proxy</html>"
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")

        with pytest.raises(
            AuthError, match="Session expired and auto re-login failed: Login response was not valid JSON"
        ) as exc_info:
            await client.executor.fetch_json(SCHEDULE_URL)

        assert isinstance(exc_info.value.__cause__, AuthError)
        assert len(backend.login_calls) == 1
        assert len(backend.calls(SCHEDULE_PATH)) == 1


class TestReauthFailureCauses:
    """Reauth failures are reported together with the expiry."""

    @pytest.mark.asyncio
    async def test_network_failure_during_reauth(self, client, backend: FakeBackend) -> None:
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")
        refused = NetworkError("Login request failed: connection refused")

        with patch.object(client.session, 'reauthenticate', AsyncMock(side_effect=refused)):
            with pytest.raises(AuthError, match="auto re-login failed: Login request failed") as exc_info:
                await client.executor.fetch_json(SCHEDULE_URL)

        assert exc_info.value.__cause__ is refused
        assert len(backend.calls(SCHEDULE_PATH)) == 1


class TestLateExpiredResponse:
    """A 401 for a token that has since been renewed does not log in again."""

    @pytest.mark.asyncio
    async def test_renewed_token_is_reused(self, client) -> None:
        client.configure(None, STALE_TOKEN)
        client.set_credentials("me@nadi.my", "secret")
        sent_tokens = []

        async def late_expiry(url: str):
            sent_tokens.append(client.session.context.token)
            if len(sent_tokens) == 1:
                # another request finished the reauth while this one was in flight
                client.session.context.token = FRESH_TOKEN
                raise SessionExpiredError(401, '{"code":"PGRST303","message":"JWT expired"}')
            return [{"event_id": "e1"}]

        reauthenticate = AsyncMock()
        with patch.object(client.executor, '_get_json', side_effect=late_expiry), \
             patch.object(client.session, 'reauthenticate', reauthenticate):
            result = await client.executor.fetch_json(SCHEDULE_URL)

        assert result == [{"event_id": "e1"}]
        assert sent_tokens == [STALE_TOKEN, FRESH_TOKEN]
        reauthenticate.assert_not_called()

    @pytest.mark.asyncio
    async def test_renewed_token_expiring_again_is_fatal(self, client) -> None:
        client.configure(None, STALE_TOKEN)

        async def always_expired(url: str):
            client.session.context.token = FRESH_TOKEN
            raise SessionExpiredError(401, "JWT expired")

        reauthenticate = AsyncMock()
        with patch.object(client.executor, '_get_json', side_effect=always_expired), \
             patch.object(client.session, 'reauthenticate', reauthenticate):
            with pytest.raises(ApiError) as exc_info:
                await client.executor.fetch_json(SCHEDULE_URL)

        assert exc_info.value.status == 401
        reauthenticate.assert_not_called()
