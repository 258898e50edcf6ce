"""HTTP client for the session service.

Every request carries the stored access token. A 401 on a request that has
not been retried triggers one shared refresh and a single replay; a failed
refresh clears the stored tokens and hands control to the sign-in handler.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from agrigrow.client.storage import TokenStore
from agrigrow.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REFRESH_PATH = "/auth/refresh"


class ApiError(Exception):
    """Normalized failure surfaced to callers as ``{message, code, details}``."""

    def __init__(
        self,
        message: str,
        code: str,
        details: Any = None,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = {"message": self.message, "code": self.code}
        if self.details is not None:
            data["details"] = self.details
        return data


def _request_failure(exc: httpx.RequestError) -> ApiError:
    if isinstance(exc, httpx.TransportError):
        return ApiError("No response from server", "ERR_NO_RESPONSE", {"reason": str(exc)})
    # Redirect loops, undecodable bodies: a response arrived but is unusable
    return ApiError("Unusable response from server", "ERR_BAD_RESPONSE", {"reason": str(exc)})


@dataclass
class PendingRequest:
    method: str
    path: str
    json: Any = None
    params: Optional[dict] = None
    auth: bool = True
    retried: bool = False
    sent_token: Optional[str] = None


class ApiClient:
    def __init__(
        self,
        base_url: str,
        tokens: TokenStore,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_auth_failure: Optional[Callable[[], None]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tokens = tokens
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._on_auth_failure = on_auth_failure

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    def set_auth_failure_handler(self, handler: Optional[Callable[[], None]]) -> None:
        self._on_auth_failure = handler

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        auth: bool = True,
    ) -> Any:
        """Send a request and return its decoded JSON body.

        ``auth=False`` sends no bearer token and never triggers a refresh.
        """
        pending = PendingRequest(method.upper(), path, json=json, params=params, auth=auth)
        response = await self._send(pending)
        if response.status_code == 401 and pending.sent_token and not pending.retried:
            pending.retried = True
            await self._fresh_access_token(pending.sent_token)
            response = await self._send(pending)
        if response.is_error:
            raise self._error_from_response(response)
        return self._decode(response)

    async def _send(self, pending: PendingRequest) -> httpx.Response:
        headers = {}
        pending.sent_token = self.tokens.get_access_token() if pending.auth else None
        if pending.sent_token:
            headers["Authorization"] = f"Bearer {pending.sent_token}"
        try:
            request = self.client.build_request(
                pending.method,
                pending.path,
                json=pending.json,
                params=pending.params,
                headers=headers,
            )
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise ApiError(str(exc) or "Request setup failed", "ERR_REQUEST_SETUP") from exc
        try:
            return await self.client.send(request)
        except httpx.RequestError as exc:
            logger.warning(
                "api_no_response", method=pending.method, path=pending.path, error=str(exc)
            )
            raise _request_failure(exc) from exc

    async def _fresh_access_token(self, sent_token: str) -> str:
        current = self.tokens.get_access_token()
        if current and current != sent_token:
            # Another request already refreshed since this one was sent
            return current
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str:
        refresh_token = self.tokens.get_refresh_token()
        failure: ApiError
        if not refresh_token:
            failure = ApiError("Session expired", "TOKEN_REQUIRED", status_code=401)
        else:
            try:
                # Sent directly so the refresh call is never itself intercepted
                response = await self.client.post(
                    REFRESH_PATH, json={"refreshToken": refresh_token}
                )
            except httpx.RequestError as exc:
                failure = _request_failure(exc)
            else:
                token = None
                if response.status_code == 200:
                    body = self._decode(response)
                    token = body.get("token") if isinstance(body, dict) else None
                if token:
                    self.tokens.set_access_token(token)
                    logger.info("access_token_refreshed")
                    return token
                failure = self._error_from_response(response)
        logger.info("session_refresh_failed", code=failure.code)
        self.tokens.clear()
        if self._on_auth_failure is not None:
            self._on_auth_failure()
        raise failure

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ApiError:
        try:
            body = response.json()
        except ValueError:
            body = None
        status = response.status_code
        if isinstance(body, dict):
            return ApiError(
                body.get("message") or response.reason_phrase or "Request failed",
                body.get("code") or f"ERR_{status}",
                body.get("details"),
                status_code=status,
            )
        return ApiError(
            response.reason_phrase or "Request failed", f"ERR_{status}", status_code=status
        )
