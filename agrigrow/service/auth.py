from __future__ import annotations

import asyncio
import re
import secrets
import unicodedata
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar
from urllib.parse import urlparse

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from agrigrow.config import Settings
from agrigrow.logging import get_logger
from agrigrow.service.errors import (
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTokenFormatError,
    NoTokenError,
    NotFoundError,
    ServiceUnavailableError,
    TokenRequiredError,
    ValidationError,
)
from agrigrow.service.rate_limit import RateLimiter
from agrigrow.service.tokens import ACCESS, REFRESH, TokenError, TokenIssuer
from agrigrow.storage.errors import ConstraintViolation, StorageUnavailable
from agrigrow.storage.models import ACCOUNT_ROLES, DEFAULT_ROLE, LOCATION_FIELDS, Account

logger = get_logger(__name__)

T = TypeVar("T")

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 120

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class AccountStore(Protocol):
    def verify_connection(self) -> None: ...

    def create_account(
        self,
        email: str,
        name: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = DEFAULT_ROLE,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def update_account(self, account_id: str, changes: Dict[str, Any]) -> Optional[Account]: ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def list_accounts(self, limit: int = 100) -> List[Account]: ...


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str]
    role: str


@dataclass
class AuthResult:
    account: Account
    access_token: str
    refresh_token: str


def normalize_email_input(value: str) -> str:
    return unicodedata.normalize("NFKC", (value or "").strip().lower())


def email_is_valid(value: str) -> bool:
    normalized = normalize_email_input(value)
    if not 3 <= len(normalized) <= 254:
        return False
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


def _url_is_valid(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def validate_signup(email: str, password: str, name: str) -> List[dict]:
    """Collect every violated signup rule as ``{field, message}`` entries."""
    errors: List[dict] = []
    if not email_is_valid(email):
        errors.append({"field": "email", "message": "Please enter a valid email"})
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(
            {"field": "password", "message": "Password must be at least 8 characters long"}
        )
    elif len(password) > MAX_PASSWORD_LENGTH:
        errors.append(
            {"field": "password", "message": "Password must be at most 128 characters long"}
        )
    if not any(ch.isdigit() for ch in password):
        errors.append({"field": "password", "message": "Password must contain at least one number"})
    if not any(ch.isalpha() for ch in password):
        errors.append({"field": "password", "message": "Password must contain at least one letter"})
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        errors.append({"field": "name", "message": "Name is required"})
    elif len(cleaned_name) > MAX_NAME_LENGTH:
        errors.append({"field": "name", "message": "Name must be at most 120 characters"})
    return errors


def _clean_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def validate_profile_changes(changes: Dict[str, Any]) -> Tuple[Dict[str, Any], List[dict]]:
    """Trim and check a partial profile update.

    Returns the cleaned changes (only mutable fields) and the list of
    violations. ``None`` or blank optional fields clear the stored value.
    """
    cleaned: Dict[str, Any] = {}
    errors: List[dict] = []
    if "name" in changes:
        name = _clean_optional(changes["name"])
        if not name:
            errors.append({"field": "name", "message": "Name cannot be empty"})
        elif len(name) > MAX_NAME_LENGTH:
            errors.append({"field": "name", "message": "Name must be at most 120 characters"})
        else:
            cleaned["name"] = name
    if "phone" in changes:
        cleaned["phone"] = _clean_optional(changes["phone"])
    if "location" in changes:
        location = changes["location"]
        if location is None:
            cleaned["location"] = {field: None for field in LOCATION_FIELDS}
        elif isinstance(location, dict):
            cleaned["location"] = {
                key: _clean_optional(value)
                for key, value in location.items()
                if key in LOCATION_FIELDS
            }
        else:
            errors.append({"field": "location", "message": "Location must be an object"})
    if "profile_image" in changes:
        image = _clean_optional(changes["profile_image"])
        if image is not None and not _url_is_valid(image):
            errors.append(
                {"field": "profileImage", "message": "Profile image must be a valid URL"}
            )
        else:
            cleaned["profile_image"] = image
    return cleaned, errors


class AuthService:
    """Account signup, login, token refresh and profile handling."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenIssuer,
        settings: Settings,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store: AccountStore = store
        self.tokens = tokens
        self.settings = settings
        self.rate_limiter = rate_limiter or RateLimiter()
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    async def _run_bounded(self, func: Callable[..., T], *args: Any) -> T:
        """Run blocking store or hashing work off the loop with a deadline."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.settings.storage_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "storage_call_timeout",
                operation=getattr(func, "__name__", "call"),
                timeout=self.settings.storage_timeout_seconds,
            )
            raise ServiceUnavailableError() from exc
        except StorageUnavailable as exc:
            self.logger.error("storage_unavailable", error=str(exc))
            raise ServiceUnavailableError() from exc

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _verify_password(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> bool:
        # Equalizes timing between unknown emails and wrong passwords
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._verify_password(self._dummy_hash, PASSWORD_ALGO, password)
        return False

    def _issue_pair(self, account: Account) -> AuthResult:
        return AuthResult(
            account=account,
            access_token=self.tokens.issue_access_token(account),
            refresh_token=self.tokens.issue_refresh_token(account),
        )

    async def signup(self, email: str, password: str, name: str) -> AuthResult:
        errors = validate_signup(email, password, name)
        if errors:
            raise ValidationError(detail={"errors": errors})
        normalized = normalize_email_input(email)
        await self.rate_limiter.enforce(
            f"signup:{normalized}", self.settings.signup_rate_limit_per_minute
        )
        existing = await self._run_bounded(self.store.get_account_by_email, normalized)
        if existing:
            self.logger.info("signup_duplicate_email")
            raise DuplicateAccountError()
        pwd_hash, algo = await self._run_bounded(self._hash_password, password)
        try:
            account = await self._run_bounded(
                self.store.create_account, normalized, name.strip(), pwd_hash, algo
            )
        except ConstraintViolation as exc:
            # Lost the race against a concurrent signup for the same email
            self.logger.info("signup_duplicate_email_race")
            raise DuplicateAccountError() from exc
        except ServiceUnavailableError:
            account = await self._find_committed_signup(normalized, pwd_hash)
            if account is None:
                raise
        self.logger.info("account_created", account_id=account.id, role=account.role)
        return self._issue_pair(account)

    async def _find_committed_signup(self, email: str, pwd_hash: str) -> Optional[Account]:
        """Look for an insert that finished after its call timed out.

        The worker thread outlives ``wait_for``; argon2 hashes are salted, so a
        stored hash equal to ``pwd_hash`` can only come from this signup.
        """
        account = await self._run_bounded(self.store.get_account_by_email, email)
        if not account:
            return None
        record = await self._run_bounded(self.store.get_password_record, account.id)
        if not record or record[0] != pwd_hash:
            return None
        self.logger.warning("signup_committed_after_timeout", account_id=account.id)
        return account

    async def login(self, email: str, password: str) -> AuthResult:
        errors: List[dict] = []
        if not email_is_valid(email):
            errors.append({"field": "email", "message": "Please enter a valid email"})
        if not password:
            errors.append({"field": "password", "message": "Password is required"})
        if errors:
            raise ValidationError(detail={"errors": errors})
        normalized = normalize_email_input(email)
        await self.rate_limiter.enforce(
            f"login:{normalized}", self.settings.login_rate_limit_per_minute
        )
        account = await self._run_bounded(self.store.get_account_by_email, normalized)
        record = (
            await self._run_bounded(self.store.get_password_record, account.id)
            if account
            else None
        )
        if not account or not record:
            await self._run_bounded(self._burn_verification, password)
            self.logger.info("login_failed")
            raise InvalidCredentialsError()
        stored_hash, algo = record
        if not await self._run_bounded(self._verify_password, stored_hash, algo, password):
            self.logger.info("login_failed", account_id=account.id)
            raise InvalidCredentialsError()
        self.logger.info("login_succeeded", account_id=account.id)
        return self._issue_pair(account)

    async def refresh(self, refresh_token: Optional[str]) -> str:
        """Mint a new access token; the refresh token itself is not rotated."""
        if not refresh_token or not refresh_token.strip():
            raise TokenRequiredError()
        try:
            claims = self.tokens.verify(refresh_token.strip(), REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise InvalidTokenError(detail=self._reason_detail(exc)) from exc
        account = await self._run_bounded(self.store.get_account, claims.subject)
        if not account:
            self.logger.info("refresh_account_missing", account_id=claims.subject)
            raise InvalidTokenError()
        return self.tokens.issue_access_token(account)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if authorization is None or not authorization.strip():
            raise NoTokenError()
        parts = authorization.strip().split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            raise InvalidTokenFormatError()
        try:
            claims = self.tokens.verify(parts[1], ACCESS)
        except TokenError as exc:
            raise InvalidTokenError(detail=self._reason_detail(exc)) from exc
        return AuthContext(
            account_id=claims.subject,
            email=claims.email,
            role=claims.role or DEFAULT_ROLE,
        )

    def _reason_detail(self, exc: TokenError) -> Optional[dict]:
        if self.settings.is_development:
            return {"reason": exc.reason}
        return None

    async def get_profile(self, account_id: str) -> Account:
        account = await self._run_bounded(self.store.get_account, account_id)
        if not account:
            raise NotFoundError()
        return account

    async def update_profile(self, account_id: str, changes: Dict[str, Any]) -> Account:
        cleaned, errors = validate_profile_changes(changes)
        if errors:
            raise ValidationError(detail={"errors": errors})
        account = await self._run_bounded(self.store.update_account, account_id, cleaned)
        if not account:
            raise NotFoundError()
        self.logger.info("profile_updated", account_id=account_id, fields=sorted(cleaned))
        return account

    def logout(self, principal: AuthContext) -> None:
        # Tokens are stateless; nothing to revoke server-side
        self.logger.info("logout", account_id=principal.account_id)

    async def list_accounts(self, limit: int = 100) -> List[Account]:
        return await self._run_bounded(self.store.list_accounts, max(1, min(limit, 500)))

    async def set_role(self, account_id: str, role: str) -> Account:
        if role not in ACCOUNT_ROLES:
            raise ValidationError(
                detail={
                    "errors": [
                        {"field": "role", "message": f"Role must be one of {', '.join(ACCOUNT_ROLES)}"}
                    ]
                }
            )
        account = await self._run_bounded(self.store.update_account_role, account_id, role)
        if not account:
            raise NotFoundError()
        self.logger.info("account_role_changed", account_id=account_id, role=role)
        return account
