"""Tests for token issuance, verification and revocation.

Tests for:
- Access/refresh token claims and lifetimes
- Verification order: signature, then expiry, then revocation
- The revocation-free check used for inter-service verification
- Refresh without rotation
"""

import pytest

from applicant_auth.service.errors import TokenExpired, TokenInvalid, TokenRevoked
from applicant_auth.service.revocation import RevocationRegistry, token_fingerprint
from applicant_auth.service.tokens import ACCESS, REFRESH, TokenService


class TestIssuance:
    """Tests for issuing tokens."""

    def test_access_token_claims(self, tokens, clock):
        """Access tokens carry subject, role, email and the configured lifetime."""
        issued = tokens.issue_access_token("acct-1", "applicant", email="a@example.com")
        claims = tokens.verify_signature_and_expiry(issued.token)

        assert claims.subject == "acct-1"
        assert claims.role == "applicant"
        assert claims.email == "a@example.com"
        assert claims.token_type == ACCESS
        assert issued.ttl_seconds == 5 * 60 * 60
        assert claims.expires_at == int(clock.time()) + issued.ttl_seconds

    def test_refresh_token_lifetime(self, tokens):
        """Refresh tokens live for seven days."""
        issued = tokens.issue_refresh_token("acct-1", "applicant")
        assert issued.ttl_seconds == 7 * 24 * 60 * 60

    def test_tokens_are_unique(self, tokens):
        """Two tokens issued in the same second still differ."""
        first = tokens.issue_access_token("acct-1", "applicant")
        second = tokens.issue_access_token("acct-1", "applicant")
        assert first.token != second.token


class TestVerification:
    """Tests for verify and verify_signature_and_expiry."""

    def test_tampered_signature_rejected(self, tokens):
        issued = tokens.issue_access_token("acct-1", "applicant")
        header, payload, signature = issued.token.split(".")
        tampered = f"{header}.{payload}.{signature[::-1]}x"
        with pytest.raises(TokenInvalid):
            tokens.verify_signature_and_expiry(tampered)

    def test_non_ascii_signature_rejected(self, tokens):
        """A signature segment with non-ASCII characters is invalid, not a crash."""
        issued = tokens.issue_access_token("acct-1", "applicant")
        header, payload, _ = issued.token.split(".")
        with pytest.raises(TokenInvalid):
            tokens.verify_signature_and_expiry(f"{header}.{payload}.éé")

    def test_foreign_secret_rejected(self, tokens, settings, clock):
        """Tokens signed with another secret are invalid."""
        other = TokenService(
            secret="another-secret-that-is-long-enough-123456",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            clock=clock.time,
        )
        issued = other.issue_access_token("acct-1", "applicant")
        with pytest.raises(TokenInvalid):
            tokens.verify_signature_and_expiry(issued.token)

    def test_garbage_rejected(self, tokens):
        for garbage in ("", "abc", "a.b.c", "a.b"):
            with pytest.raises(TokenInvalid):
                tokens.verify_signature_and_expiry(garbage)

    def test_wrong_type_rejected(self, tokens):
        """A refresh token cannot be used where an access token is expected."""
        issued = tokens.issue_refresh_token("acct-1", "applicant")
        with pytest.raises(TokenInvalid):
            tokens.verify_signature_and_expiry(issued.token, expected_type=ACCESS)

    def test_expired_token(self, tokens, clock):
        issued = tokens.issue_access_token("acct-1", "applicant")
        clock.advance(issued.ttl_seconds)
        with pytest.raises(TokenExpired):
            tokens.verify_signature_and_expiry(issued.token)

    async def test_revoked_token_rejected(self, tokens, revocation):
        issued = tokens.issue_access_token("acct-1", "applicant")
        claims = await tokens.verify(issued.token)

        assert await revocation.revoke(issued.token, tokens.remaining_lifetime(claims))
        with pytest.raises(TokenRevoked):
            await tokens.verify(issued.token)

    async def test_expiry_checked_before_revocation(self, tokens, revocation, clock):
        """An expired token that was also revoked reports expiry."""
        issued = tokens.issue_access_token("acct-1", "applicant")
        await revocation.revoke(issued.token, issued.ttl_seconds + 100)
        clock.advance(issued.ttl_seconds + 1)
        with pytest.raises(TokenExpired):
            await tokens.verify(issued.token)

    async def test_signature_only_check_ignores_revocation(self, tokens, revocation):
        """Inter-service verification keeps accepting a revoked token until exp."""
        issued = tokens.issue_access_token("acct-1", "applicant")
        await revocation.revoke(issued.token, issued.ttl_seconds)

        claims = tokens.verify_signature_and_expiry(issued.token)
        assert claims.subject == "acct-1"


class TestRefresh:
    """Tests for refresh-token exchange."""

    async def test_refresh_returns_same_refresh_token(self, tokens):
        refresh = tokens.issue_refresh_token("acct-1", "applicant", email="a@example.com")
        access, same = await tokens.refresh(refresh.token)

        assert same == refresh.token
        claims = tokens.verify_signature_and_expiry(access.token)
        assert claims.subject == "acct-1"
        assert claims.email == "a@example.com"

    async def test_refresh_rejects_access_token(self, tokens):
        access = tokens.issue_access_token("acct-1", "applicant")
        with pytest.raises(TokenInvalid):
            await tokens.refresh(access.token)

    async def test_refresh_rejects_revoked_refresh_token(self, tokens, revocation):
        refresh = tokens.issue_refresh_token("acct-1", "applicant")
        await revocation.revoke(refresh.token, refresh.ttl_seconds)
        with pytest.raises(TokenRevoked):
            await tokens.refresh(refresh.token)

    async def test_refresh_authorize_hook_can_refuse(self, tokens):
        refresh = tokens.issue_refresh_token("acct-1", "applicant")

        def refuse(claims):
            raise TokenInvalid("account is no longer available")

        with pytest.raises(TokenInvalid):
            await tokens.refresh(refresh.token, authorize=refuse)


class TestRevocationRegistry:
    """Tests for the revocation registry."""

    async def test_entry_lives_for_remaining_lifetime(self, cache, clock):
        registry = RevocationRegistry(cache)
        await registry.revoke("token-value", 30)

        key = f"auth:revoked:{token_fingerprint('token-value')}"
        assert await cache.ttl(key) == 30
        clock.advance(30)
        assert await registry.is_revoked("token-value") is False

    async def test_non_positive_lifetime_skipped(self, cache):
        registry = RevocationRegistry(cache)
        assert await registry.revoke("token-value", 0) is False
        assert await registry.is_revoked("token-value") is False

    async def test_cache_outage_fails_open(self, broken_cache):
        registry = RevocationRegistry(broken_cache)
        assert await registry.revoke("token-value", 30) is False
        assert await registry.is_revoked("token-value") is False

    def test_fingerprint_is_sha256_hex(self):
        assert len(token_fingerprint("abc")) == 64
        assert token_fingerprint("abc") != "abc"


def test_refresh_constant_distinct():
    assert ACCESS != REFRESH
