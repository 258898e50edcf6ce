from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Query

from agrigrow.api.schemas import (
    AuthResponse,
    MessageResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    RoleUpdateRequest,
    SignupRequest,
    LoginRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
)
from agrigrow.logging import get_logger
from agrigrow.service.auth import AuthContext, AuthResult
from agrigrow.service.errors import ForbiddenError
from agrigrow.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_account(result.account),
        token=result.access_token,
        refresh_token=result.refresh_token,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token into the calling identity."""
    return get_runtime().auth.authenticate(authorization)


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    allowed = frozenset(roles)

    async def _require(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if principal.role not in allowed:
            logger.warning(
                "role_forbidden",
                account_id=principal.account_id,
                role=principal.role,
                allowed=sorted(allowed),
            )
            raise ForbiddenError()
        return principal

    return _require


@router.post("/signup", response_model=AuthResponse, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Create a farmer account and return its profile with both tokens.

    Raises:
        400: VALIDATION_ERROR listing every violated rule, or EMAIL_EXISTS
        429: If the signup rate limit for this email is exceeded
    """
    result = await get_runtime().auth.signup(body.email, body.password, body.name)
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a profile and both tokens.

    Unknown emails and wrong passwords produce the same 401 body.
    """
    result = await get_runtime().auth.login(body.email, body.password)
    return _auth_response(result)


@router.post("/refresh", response_model=TokenResponse, tags=["auth"])
async def refresh(body: Optional[RefreshRequest] = None):
    """Mint a new access token from a refresh token."""
    token = await get_runtime().auth.refresh(body.refresh_token if body else None)
    return TokenResponse(token=token)


@router.get("/me", response_model=UserResponse, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    account = await get_runtime().auth.get_profile(principal.account_id)
    return UserResponse.from_account(account)


@router.patch("/profile", response_model=UserResponse, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    """Apply a partial update of name, phone, location and profileImage.

    Email and role are not editable here; such fields are ignored.
    """
    account = await get_runtime().auth.update_profile(
        principal.account_id, body.to_changes()
    )
    return UserResponse.from_account(account)


@router.post("/logout", response_model=MessageResponse, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    get_runtime().auth.logout(principal)
    return MessageResponse(message="logged out")


@router.get("/users", response_model=UserListResponse, tags=["admin"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_roles("admin")),
):
    accounts = await get_runtime().auth.list_accounts(limit)
    return UserListResponse(items=[UserResponse.from_account(a) for a in accounts])


@router.patch("/users/{account_id}/role", response_model=UserResponse, tags=["admin"])
async def set_user_role(
    account_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(require_roles("admin")),
):
    """Change an account's role. Tokens already issued keep their old role claim."""
    account = await get_runtime().auth.set_role(account_id, body.role)
    logger.info(
        "admin_role_change", admin_id=principal.account_id, account_id=account_id
    )
    return UserResponse.from_account(account)
