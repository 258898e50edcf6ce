from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agrigrow.client.api import ApiClient, ApiError
from agrigrow.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[["SessionManager"], None]


class SessionView(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    SIGNED_IN = "signed_in"


class SessionManager:
    """Single owner of the client's current-user state.

    ``current_user`` and ``loading`` change only through the methods below;
    subscribers are notified after every change. While ``loading`` is true
    callers should render a neutral loading state, never the sign-in view.
    """

    def __init__(self, api: ApiClient) -> None:
        self.api = api
        self.current_user: Optional[Dict[str, Any]] = None
        self.loading = True
        self._initialized = False
        self._listeners: List[Listener] = []
        api.set_auth_failure_handler(self._handle_auth_failure)

    @property
    def view(self) -> SessionView:
        if self.loading:
            return SessionView.LOADING
        if self.current_user is None:
            return SessionView.SIGNED_OUT
        return SessionView.SIGNED_IN

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as exc:
                logger.warning("session_listener_failed", error=str(exc))

    def _set_user(self, user: Optional[Dict[str, Any]]) -> None:
        self.current_user = user
        self._notify()

    async def initialize(self) -> Optional[Dict[str, Any]]:
        """Rehydrate the session from a stored access token, at most once."""
        if self._initialized:
            return self.current_user
        self._initialized = True
        try:
            if self.api.tokens.get_access_token():
                try:
                    self.current_user = await self.api.get("/auth/me")
                except ApiError as exc:
                    logger.info("session_restore_failed", code=exc.code)
                    self.api.tokens.clear()
                    self.current_user = None
        finally:
            self.loading = False
            self._notify()
        return self.current_user

    async def sign_up(self, email: str, password: str, name: str) -> Dict[str, Any]:
        data = await self.api.post(
            "/auth/signup",
            json={"email": email, "password": password, "name": name},
            auth=False,
        )
        return self._accept_auth_response(data)

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        data = await self.api.post(
            "/auth/login", json={"email": email, "password": password}, auth=False
        )
        return self._accept_auth_response(data)

    def _accept_auth_response(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.api.tokens.save(data["token"], data["refreshToken"])
        self._set_user(data["user"])
        return data["user"]

    async def logout(self) -> None:
        """Tell the server, then always drop local tokens and the user."""
        try:
            if self.api.tokens.get_access_token():
                await self.api.post("/auth/logout")
        except Exception as exc:
            logger.warning("logout_request_failed", error=str(exc))
        finally:
            self.api.tokens.clear()
            self._set_user(None)

    async def update_profile(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.api.patch("/auth/profile", json=changes)
        self._set_user(user)
        return user

    def _handle_auth_failure(self) -> None:
        logger.info("session_expired")
        self.loading = False
        self._set_user(None)
