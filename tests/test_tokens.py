"""Tests for access/refresh token issuing and verification."""

import base64
import json

import pytest

from agrigrow.service.tokens import (
    ACCESS,
    REFRESH,
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenIssuer,
)
from agrigrow.storage.models import Account


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        access_secret="access-secret-for-token-tests-0123456789",
        refresh_secret="refresh-secret-for-token-tests-0123456789",
        access_ttl_seconds=3600,
        refresh_ttl_seconds=7 * 24 * 3600,
        clock=clock,
    )


@pytest.fixture
def account():
    return Account(id="acct-1", email="grower@example.com", name="Grower", role="buyer")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    def test_access_token_carries_identity_email_role(self, issuer, account, clock):
        claims = issuer.verify(issuer.issue_access_token(account), ACCESS)

        assert claims.subject == "acct-1"
        assert claims.email == "grower@example.com"
        assert claims.role == "buyer"
        assert claims.token_type == ACCESS
        assert claims.expires_at == int(clock.now) + 3600

    def test_refresh_token_carries_identity_only(self, issuer, account):
        token = issuer.issue_refresh_token(account)
        payload = _payload(token)

        assert payload["sub"] == "acct-1"
        assert "email" not in payload
        assert "role" not in payload
        assert issuer.verify(token, REFRESH).subject == "acct-1"

    def test_each_token_has_unique_id(self, issuer, account):
        first = issuer.verify(issuer.issue_access_token(account), ACCESS)
        second = issuer.verify(issuer.issue_access_token(account), ACCESS)
        assert first.token_id != second.token_id

    def test_equal_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(access_secret="same-secret", refresh_secret="same-secret")


class TestVerify:
    def test_expired_token_reports_expiry_not_signature(self, issuer, account, clock):
        token = issuer.issue_access_token(account)
        clock.now += 3601

        with pytest.raises(ExpiredTokenError):
            issuer.verify(token, ACCESS)

    def test_expired_refresh_token(self, issuer, account, clock):
        token = issuer.issue_refresh_token(account)
        clock.now += 7 * 24 * 3600 + 1

        with pytest.raises(ExpiredTokenError):
            issuer.verify(token, REFRESH)

    def test_refresh_token_rejected_as_access(self, issuer, account):
        token = issuer.issue_refresh_token(account)
        with pytest.raises(InvalidSignatureError):
            issuer.verify(token, ACCESS)

    def test_access_token_rejected_as_refresh(self, issuer, account):
        token = issuer.issue_access_token(account)
        with pytest.raises(InvalidSignatureError):
            issuer.verify(token, REFRESH)

    def test_tampered_payload_rejected(self, issuer, account):
        header, _, signature = issuer.issue_access_token(account).split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"sub": "acct-1", "role": "admin", "token_type": "access", "exp": 9999999999}).encode()
        ).decode().rstrip("=")

        with pytest.raises(InvalidSignatureError):
            issuer.verify(f"{header}.{forged}.{signature}", ACCESS)

    def test_token_from_other_issuer_secret_rejected(self, issuer, account, clock):
        other = TokenIssuer(
            access_secret="a-different-access-secret-0123456789",
            refresh_secret="a-different-refresh-secret-0123456789",
            clock=clock,
        )
        with pytest.raises(InvalidSignatureError):
            issuer.verify(other.issue_access_token(account), ACCESS)

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "not-a-token",
            "a.b",
            "a.b.c.d",
            "!!!.???.###",
            "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.e30.\u00e9\u00e9",
        ],
    )
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(MalformedTokenError):
            issuer.verify(token, ACCESS)

    def test_non_hs256_algorithm_rejected(self, issuer, account):
        _, payload, signature = issuer.issue_access_token(account).split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{payload}.{signature}", ACCESS)

    def test_missing_expiry_is_malformed(self, issuer, account):
        token = issuer._issue(ACCESS, account.id, 60, exp=None)

        with pytest.raises(MalformedTokenError):
            issuer.verify(token, ACCESS)
