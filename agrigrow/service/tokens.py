"""Signed access and refresh tokens.

Tokens are compact HS256 JWTs. Access and refresh tokens are signed with
different secrets, so a token of one kind never verifies as the other.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agrigrow.config import Settings
from agrigrow.logging import get_logger
from agrigrow.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)


class TokenError(Exception):
    """Base class for token verification failures."""

    reason = "invalid"


class MalformedTokenError(TokenError):
    reason = "malformed"


class InvalidSignatureError(TokenError):
    reason = "invalid_signature"


class ExpiredTokenError(TokenError):
    reason = "expired"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: str
    expires_at: int
    issued_at: int
    token_id: str
    email: Optional[str] = None
    role: Optional[str] = None


class TokenIssuer:
    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str = "agrigrow",
        access_ttl_seconds: int = 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
        )

    def issue_access_token(self, account: Account) -> str:
        return self._issue(
            ACCESS,
            account.id,
            self.access_ttl_seconds,
            email=account.email,
            role=account.role,
        )

    def issue_refresh_token(self, account: Account) -> str:
        return self._issue(REFRESH, account.id, self.refresh_ttl_seconds)

    def verify(self, token: str, expected_kind: str) -> TokenClaims:
        """Return the claims of ``token`` or raise a ``TokenError``.

        The signature is checked before expiry: an authentic token past its
        ``exp`` raises ``ExpiredTokenError``, never ``InvalidSignatureError``.
        """
        if expected_kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {expected_kind}")
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError("token must have three segments")
        if not token.isascii():
            raise MalformedTokenError("token contains non-ascii characters")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedTokenError("undecodable token header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm", kind=expected_kind)
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = self._sign(expected_kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedTokenError("undecodable token payload") from exc
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise MalformedTokenError("token payload missing subject")
        if payload.get("token_type") != expected_kind or payload.get("iss") != self.issuer:
            raise InvalidSignatureError("token not valid for this use")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedTokenError("token expiry missing")
        if exp <= self._clock():
            raise ExpiredTokenError("token expired")

        return TokenClaims(
            subject=str(payload["sub"]),
            token_type=expected_kind,
            expires_at=int(exp),
            issued_at=int(payload.get("iat") or 0),
            token_id=str(payload.get("jti") or ""),
            email=payload.get("email"),
            role=payload.get("role"),
        )

    def _issue(self, kind: str, subject: str, ttl_seconds: int, **extra: Any) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "token_type": kind,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
            **extra,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (ValueError, TypeError) as exc:
        raise ValueError("invalid base64 segment") from exc
