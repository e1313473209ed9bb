"""Shared fixtures: an in-process fake of the NADI4U REST and auth endpoints."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from nadi4u import ClientSettings, MemoryStorage, Nadi4uClient, StorageProvider

BASE_URL = "https://api.nadi.test"
FRESH_TOKEN = "fresh-token"
STALE_TOKEN = "stale-token"

Route = Callable[[httpx.Request], httpx.Response]


def expired_response() -> httpx.Response:
    return httpx.Response(401, json={"code": "PGRST303", "details": None, "hint": None, "message": "JWT expired"})


class FakeBackend:
    """Routes requests by path and records every request it sees.

    REST calls are only answered when they carry the currently valid bearer
    token; any other token gets a 401 "JWT expired".
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Route] = {}
        self.valid_token = FRESH_TOKEN
        self.always_expired = False
        self.login_delay = 0.0
        self.login_status = 200
        self.login_error: Dict[str, Any] = {"error": "invalid_grant", "error_description": "Invalid login credentials"}
        self.login_text: Optional[str] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/auth/v1/token":
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            if self.login_text is not None:
                return httpx.Response(self.login_status, text=self.login_text)
            if self.login_status != 200:
                return httpx.Response(self.login_status, json=self.login_error)
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "access_token": self.valid_token,
                "token_type": "bearer",
                "expires_in": 3600,
                "user": {"email": body["email"]},
            })

        if self.always_expired or request.headers.get("authorization") != f"Bearer {self.valid_token}":
            return expired_response()

        route = self.routes.get(path)
        if route is None:
            return httpx.Response(404, json={"message": f"no route for {path}"})
        return route(request)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def login_calls(self) -> List[httpx.Request]:
        return self.calls("/auth/v1/token")


def make_client(backend: FakeBackend, storage: Optional[StorageProvider] = None, **settings: Any) -> Nadi4uClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return Nadi4uClient(
        ClientSettings(base_url=BASE_URL, **settings),
        http=http,
        storage=storage or StorageProvider([MemoryStorage(), MemoryStorage()]),
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def client(backend: FakeBackend):
    nadi = make_client(backend)
    yield nadi
    await nadi.http.aclose()
