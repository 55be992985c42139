from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from applicant_auth.logging import get_logger
from applicant_auth.service.errors import TokenExpired, TokenInvalid, TokenRevoked
from applicant_auth.service.revocation import RevocationRegistry

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenClaims:
    subject: str
    role: str
    token_type: str
    issued_at: int
    expires_at: int
    jti: str
    email: Optional[str] = None


@dataclass
class IssuedToken:
    token: str
    expires_at: int
    ttl_seconds: int


class TokenService:
    """Issues and verifies HS256 access/refresh tokens.

    Tokens are stateless; the only way to invalidate one before ``exp`` is an
    entry in the revocation registry, which :meth:`verify` consults and
    :meth:`verify_signature_and_expiry` deliberately does not.
    """

    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        revocation: Optional[RevocationRegistry] = None,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.revocation = revocation
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings, revocation: Optional[RevocationRegistry] = None, **kwargs
    ) -> "TokenService":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            revocation=revocation,
            leeway_seconds=settings.jwt_leeway_seconds,
            **kwargs,
        )

    # -- encoding -----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Return the payload of a correctly signed token, or raise TokenInvalid."""
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Compare bytes; compare_digest raises TypeError on non-ASCII str
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "replace")
        ):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid()
        return payload

    # -- issuing ------------------------------------------------------------

    def _issue(
        self,
        token_type: str,
        subject: str,
        role: str,
        ttl_seconds: int,
        email: Optional[str],
    ) -> IssuedToken:
        now = int(self._clock())
        expires_at = now + ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "role": role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": expires_at,
        }
        if email:
            payload["email"] = email
        return IssuedToken(
            token=self._encode_jwt(payload), expires_at=expires_at, ttl_seconds=ttl_seconds
        )

    def issue_access_token(
        self, subject: str, role: str, *, email: Optional[str] = None
    ) -> IssuedToken:
        return self._issue(ACCESS, subject, role, self.access_ttl_seconds, email)

    def issue_refresh_token(
        self, subject: str, role: str, *, email: Optional[str] = None
    ) -> IssuedToken:
        return self._issue(REFRESH, subject, role, self.refresh_ttl_seconds, email)

    # -- verification -------------------------------------------------------

    def verify_signature_and_expiry(
        self, token: str, *, expected_type: Optional[str] = ACCESS
    ) -> TokenClaims:
        """Check signature, issuer/audience, type and expiry. No revocation lookup."""
        payload = self._decode_jwt(token)
        if expected_type and payload.get("token_type") != expected_type:
            raise TokenInvalid(f"expected {expected_type} token")
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        subject = payload.get("sub")
        if not subject:
            raise TokenInvalid()
        if exp <= self._clock() - self.leeway_seconds:
            raise TokenExpired()
        return TokenClaims(
            subject=str(subject),
            role=str(payload.get("role") or ""),
            token_type=str(payload.get("token_type")),
            issued_at=iat,
            expires_at=exp,
            jti=str(payload.get("jti") or ""),
            email=payload.get("email"),
        )

    async def verify(
        self, token: str, *, expected_type: Optional[str] = ACCESS
    ) -> TokenClaims:
        """Full verification: signature, then expiry, then revocation."""
        claims = self.verify_signature_and_expiry(token, expected_type=expected_type)
        if self.revocation is not None and await self.revocation.is_revoked(token):
            logger.info("token_revoked_rejected", token_type=claims.token_type)
            raise TokenRevoked()
        return claims

    def remaining_lifetime(self, claims: TokenClaims) -> int:
        return max(0, int(claims.expires_at - self._clock()))

    async def refresh(
        self,
        refresh_token: str,
        *,
        authorize: Optional[Callable[[TokenClaims], TokenClaims]] = None,
    ) -> tuple[IssuedToken, str]:
        """Mint a new access token; the presented refresh token is returned unchanged.

        ``authorize`` may re-check the subject (and refresh role/email) or raise
        to refuse the refresh.
        """
        claims = await self.verify(refresh_token, expected_type=REFRESH)
        if authorize is not None:
            claims = authorize(claims)
        access = self.issue_access_token(claims.subject, claims.role, email=claims.email)
        return access, refresh_token
