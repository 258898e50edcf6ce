"""Tests for ApiClient's bearer injection and refresh-and-replay behaviour."""

import asyncio

import httpx
import pytest

from agrigrow.client.api import ApiClient, ApiError
from agrigrow.client.storage import MemoryTokenStore

_INVALID = {"message": "Invalid or expired token", "code": "INVALID_TOKEN"}


class FakeServer:
    """Accepts only ``Bearer fresh``; /auth/refresh hands out ``fresh``."""

    def __init__(self):
        self.calls = []
        self.refresh_calls = 0
        self.refresh_ok = True
        self.reject_everything = False

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("Authorization")
        self.calls.append((request.url.path, auth))
        if request.url.path == "/auth/refresh":
            self.refresh_calls += 1
            await asyncio.sleep(0.01)
            if not self.refresh_ok:
                return httpx.Response(401, json=_INVALID)
            return httpx.Response(200, json={"token": "fresh"})
        if auth == "Bearer fresh" and not self.reject_everything:
            return httpx.Response(200, json={"path": request.url.path})
        return httpx.Response(401, json=_INVALID)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def tokens():
    store = MemoryTokenStore()
    store.save("stale", "refresh-1")
    return store


@pytest.fixture
def failures():
    return []


@pytest.fixture
def api(server, tokens, failures):
    return ApiClient(
        "http://agrigrow.test",
        tokens,
        transport=httpx.MockTransport(server),
        on_auth_failure=lambda: failures.append(True),
    )


async def test_single_401_refreshes_once_and_replays(api, server, tokens):
    result = await api.get("/items")

    assert result == {"path": "/items"}
    assert server.refresh_calls == 1
    assert [path for path, _ in server.calls] == ["/items", "/auth/refresh", "/items"]
    assert server.calls[-1][1] == "Bearer fresh"
    assert tokens.get_access_token() == "fresh"
    assert tokens.get_refresh_token() == "refresh-1"
    await api.aclose()


async def test_refresh_request_bypasses_interceptor(api, server):
    await api.get("/items")

    refresh_call = next(call for call in server.calls if call[0] == "/auth/refresh")
    assert refresh_call[1] is None
    await api.aclose()


async def test_second_401_is_final(api, server, tokens, failures):
    server.reject_everything = True

    with pytest.raises(ApiError) as excinfo:
        await api.get("/items")

    assert excinfo.value.code == "INVALID_TOKEN"
    assert excinfo.value.status_code == 401
    assert server.refresh_calls == 1
    assert [path for path, _ in server.calls].count("/items") == 2
    assert failures == []
    await api.aclose()


async def test_concurrent_401s_share_one_refresh(api, server):
    results = await asyncio.gather(*(api.get(f"/items/{i}") for i in range(5)))

    assert [r["path"] for r in results] == [f"/items/{i}" for i in range(5)]
    assert server.refresh_calls == 1
    await api.aclose()


async def test_failed_refresh_clears_tokens_and_signals(api, server, tokens, failures):
    server.refresh_ok = False

    with pytest.raises(ApiError) as excinfo:
        await api.get("/items")

    assert excinfo.value.to_dict() == _INVALID
    assert tokens.get_access_token() is None
    assert tokens.get_refresh_token() is None
    assert failures == [True]
    await api.aclose()


async def test_unauthenticated_request_never_refreshes(api, server):
    with pytest.raises(ApiError):
        await api.post("/auth/login", json={"email": "a@x.com", "password": "x"}, auth=False)

    assert server.refresh_calls == 0
    assert server.calls[0][1] is None
    await api.aclose()


async def test_transport_failure_normalized(tokens):
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    api = ApiClient("http://agrigrow.test", tokens, transport=httpx.MockTransport(_refuse))

    with pytest.raises(ApiError) as excinfo:
        await api.get("/items")
    assert excinfo.value.code == "ERR_NO_RESPONSE"
    await api.aclose()


async def test_non_json_error_uses_status_code(tokens):
    api = ApiClient(
        "http://agrigrow.test",
        tokens,
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
    )

    with pytest.raises(ApiError) as excinfo:
        await api.get("/items")
    assert excinfo.value.code == "ERR_502"
    await api.aclose()


async def test_request_setup_failure_normalized(api):
    with pytest.raises(ApiError) as excinfo:
        await api.post("/items", json={"bad": object()})
    assert excinfo.value.code == "ERR_REQUEST_SETUP"
    await api.aclose()


async def test_other_request_errors_normalized(tokens):
    def _loop(request):
        raise httpx.TooManyRedirects("Exceeded maximum allowed redirects", request=request)

    api = ApiClient("http://agrigrow.test", tokens, transport=httpx.MockTransport(_loop))

    with pytest.raises(ApiError) as excinfo:
        await api.get("/items")
    assert excinfo.value.code == "ERR_BAD_RESPONSE"
    await api.aclose()
