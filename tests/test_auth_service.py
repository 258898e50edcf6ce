"""Unit tests for AuthService.

Covers signup validation and duplicate handling, login enumeration
resistance, refresh, the bearer gate and profile updates.
"""

import asyncio
import time

import pytest

from agrigrow.service.auth import AuthContext, AuthService, validate_signup
from agrigrow.service.errors import (
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTokenFormatError,
    NoTokenError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    TokenRequiredError,
    ValidationError,
)
from agrigrow.service.tokens import ACCESS, TokenIssuer
from agrigrow.storage.errors import StorageUnavailable
from agrigrow.storage.memory import MemoryStore
from agrigrow.storage.models import Account


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def tokens(settings):
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def auth_service(memory_store, tokens, settings, fast_hasher):
    return AuthService(memory_store, tokens, settings, password_hasher=fast_hasher)


class PrecheckBlindStore(MemoryStore):
    """Never sees existing emails, as if every signup raced past the pre-query."""

    def get_account_by_email(self, email):
        return None


class SlowStore(MemoryStore):
    def get_account_by_email(self, email):
        time.sleep(0.5)
        return super().get_account_by_email(email)


class SlowCommitStore(MemoryStore):
    """Inserts immediately but returns only after the caller's deadline."""

    def create_account(self, *args, **kwargs):
        account = super().create_account(*args, **kwargs)
        time.sleep(0.5)
        return account


class SlowCreateStore(MemoryStore):
    """Times out before anything is inserted."""

    def create_account(self, *args, **kwargs):
        time.sleep(0.5)
        return super().create_account(*args, **kwargs)


class DownStore(MemoryStore):
    def get_account(self, account_id):
        raise StorageUnavailable("connection refused")


class TestSignup:
    async def test_signup_returns_tokens_for_new_account(self, auth_service, tokens, memory_store):
        result = await auth_service.signup("Farmer@Example.com ", "pass1234", "Ada")

        assert result.account.email == "farmer@example.com"
        assert result.account.role == "farmer"
        claims = tokens.verify(result.access_token, ACCESS)
        assert claims.subject == result.account.id
        stored_hash, algo = memory_store.get_password_record(result.account.id)
        assert stored_hash != "pass1234"
        assert algo == "argon2id"

    async def test_signup_reports_every_violation(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.signup("not-an-email", "short", "   ")

        fields = [e["field"] for e in excinfo.value.detail["errors"]]
        assert fields.count("email") == 1
        assert fields.count("password") == 2  # too short, no digit
        assert fields.count("name") == 1
        assert memory_store.list_accounts() == []

    def test_validate_signup_password_composition(self):
        messages = [e["message"] for e in validate_signup("a@x.com", "12345678", "A")]
        assert messages == ["Password must contain at least one letter"]
        messages = [e["message"] for e in validate_signup("a@x.com", "abcdefgh", "A")]
        assert messages == ["Password must contain at least one number"]
        assert validate_signup("a@x.com", "pass1234", "A") == []

    async def test_duplicate_email_rejected(self, auth_service):
        await auth_service.signup("a@x.com", "pass1234", "A")

        with pytest.raises(DuplicateAccountError) as excinfo:
            await auth_service.signup("A@X.com", "pass5678", "B")
        assert excinfo.value.error_code == "EMAIL_EXISTS"
        assert excinfo.value.status_code == 400

    async def test_store_uniqueness_violation_maps_to_duplicate(self, tokens, settings, fast_hasher):
        service = AuthService(PrecheckBlindStore(), tokens, settings, password_hasher=fast_hasher)
        await service.signup("a@x.com", "pass1234", "A")

        with pytest.raises(DuplicateAccountError):
            await service.signup("a@x.com", "pass1234", "A")

    async def test_concurrent_duplicate_signups_have_one_winner(self, auth_service, memory_store):
        results = await asyncio.gather(
            *(auth_service.signup("race@x.com", "pass1234", "Racer") for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, DuplicateAccountError) for r in losers)
        assert len(memory_store.list_accounts()) == 1


class TestLogin:
    async def test_login_succeeds_with_correct_password(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        result = await auth_service.login("A@x.com", "pass1234")

        assert result.account.id == created.account.id
        assert result.refresh_token

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth_service):
        await auth_service.signup("a@x.com", "pass1234", "A")

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("a@x.com", "wrong1234")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth_service.login("nobody@x.com", "pass1234")

        assert wrong_password.value.message == unknown_email.value.message == "Invalid email or password"
        assert wrong_password.value.detail == unknown_email.value.detail == {}

    async def test_login_requires_email_and_password(self, auth_service):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.login("bad", "")
        assert {e["field"] for e in excinfo.value.detail["errors"]} == {"email", "password"}

    async def test_login_rate_limited_per_email(self, memory_store, tokens, settings, fast_hasher):
        limited = settings.model_copy(update={"login_rate_limit_per_minute": 2})
        service = AuthService(memory_store, tokens, limited, password_hasher=fast_hasher)
        await service.signup("a@x.com", "pass1234", "A")

        await service.login("a@x.com", "pass1234")
        await service.login("a@x.com", "pass1234")
        with pytest.raises(RateLimitedError):
            await service.login("a@x.com", "pass1234")


class TestRefresh:
    async def test_refresh_mints_new_access_token(self, auth_service, tokens):
        created = await auth_service.signup("a@x.com", "pass1234", "A")

        new_token = await auth_service.refresh(created.refresh_token)

        assert tokens.verify(new_token, ACCESS).subject == created.account.id
        # The earlier access token remains valid on its own
        assert tokens.verify(created.access_token, ACCESS).subject == created.account.id

    @pytest.mark.parametrize("value", [None, "", "   "])
    async def test_missing_refresh_token(self, auth_service, value):
        with pytest.raises(TokenRequiredError):
            await auth_service.refresh(value)

    async def test_access_token_cannot_refresh(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(created.access_token)

    async def test_refresh_for_missing_account(self, auth_service, tokens):
        ghost = Account(id="ghost", email="ghost@x.com", name="Ghost")
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(tokens.issue_refresh_token(ghost))


class TestAuthenticate:
    async def test_bearer_token_resolves_principal(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")

        ctx = auth_service.authenticate(f"Bearer {created.access_token}")

        assert ctx == AuthContext(account_id=created.account.id, email="a@x.com", role="farmer")

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_header(self, auth_service, header):
        with pytest.raises(NoTokenError):
            auth_service.authenticate(header)

    @pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer a b", "abc"])
    def test_bad_header_format(self, auth_service, header):
        with pytest.raises(InvalidTokenFormatError):
            auth_service.authenticate(header)

    def test_invalid_token_hides_reason_outside_development(self, auth_service):
        with pytest.raises(InvalidTokenError) as excinfo:
            auth_service.authenticate("Bearer garbage")
        assert excinfo.value.detail == {}

    def test_invalid_token_reason_in_development(self, memory_store, tokens, settings):
        dev = settings.model_copy(update={"environment": "development"})
        service = AuthService(memory_store, tokens, dev)
        with pytest.raises(InvalidTokenError) as excinfo:
            service.authenticate("Bearer garbage")
        assert excinfo.value.detail == {"reason": "malformed"}

    async def test_refresh_token_rejected_by_gate(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        with pytest.raises(InvalidTokenError):
            auth_service.authenticate(f"Bearer {created.refresh_token}")


class TestProfile:
    async def test_update_trims_and_ignores_identity_fields(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")

        updated = await auth_service.update_profile(
            created.account.id,
            {"name": "  Ada Farmer ", "phone": " 555-0100 ", "email": "evil@x.com", "role": "admin"},
        )

        assert updated.name == "Ada Farmer"
        assert updated.phone == "555-0100"
        assert updated.email == "a@x.com"
        assert updated.role == "farmer"

    async def test_location_sub_fields_merge(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        account_id = created.account.id

        await auth_service.update_profile(account_id, {"location": {"city": "Nakuru", "country": "Kenya"}})
        updated = await auth_service.update_profile(account_id, {"location": {"address": "Plot 7"}})

        assert updated.location.address == "Plot 7"
        assert updated.location.city == "Nakuru"
        assert updated.location.country == "Kenya"

    async def test_invalid_fields_rejected_together(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")

        with pytest.raises(ValidationError) as excinfo:
            await auth_service.update_profile(
                created.account.id, {"name": "  ", "profile_image": "ftp://files/img.png"}
            )
        fields = {e["field"] for e in excinfo.value.detail["errors"]}
        assert fields == {"name", "profileImage"}

    async def test_profile_image_accepts_https_url(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        updated = await auth_service.update_profile(
            created.account.id, {"profile_image": "https://cdn.example.com/me.png"}
        )
        assert updated.profile_image == "https://cdn.example.com/me.png"

    async def test_missing_account(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_profile("missing")
        with pytest.raises(NotFoundError):
            await auth_service.update_profile("missing", {"name": "X"})

    async def test_set_role_validates_role(self, auth_service):
        created = await auth_service.signup("a@x.com", "pass1234", "A")
        with pytest.raises(ValidationError):
            await auth_service.set_role(created.account.id, "overlord")
        updated = await auth_service.set_role(created.account.id, "buyer")
        assert updated.role == "buyer"


class TestStorageFailures:
    async def test_slow_store_surfaces_service_unavailable(self, tokens, settings, fast_hasher):
        quick = settings.model_copy(update={"storage_timeout_seconds": 0.05})
        service = AuthService(SlowStore(), tokens, quick, password_hasher=fast_hasher)

        with pytest.raises(ServiceUnavailableError):
            await service.login("a@x.com", "pass1234")

    async def test_signup_committed_after_timeout_succeeds(self, tokens, settings, fast_hasher):
        quick = settings.model_copy(update={"storage_timeout_seconds": 0.1})
        store = SlowCommitStore()
        service = AuthService(store, tokens, quick, password_hasher=fast_hasher)

        result = await service.signup("a@x.com", "pass1234", "Ada")

        assert result.account.email == "a@x.com"
        assert tokens.verify(result.access_token, ACCESS).subject == result.account.id
        assert len(store.accounts) == 1

    async def test_signup_not_committed_reports_unavailable(self, tokens, settings, fast_hasher):
        quick = settings.model_copy(update={"storage_timeout_seconds": 0.1})
        service = AuthService(SlowCreateStore(), tokens, quick, password_hasher=fast_hasher)

        with pytest.raises(ServiceUnavailableError):
            await service.signup("a@x.com", "pass1234", "Ada")

    async def test_unreachable_store_surfaces_service_unavailable(self, tokens, settings):
        service = AuthService(DownStore(), tokens, settings)
        with pytest.raises(ServiceUnavailableError) as excinfo:
            await service.get_profile("any")
        assert excinfo.value.status_code == 503
