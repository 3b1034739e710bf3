"""Tests for access/refresh token issuing and decoding."""

import base64
import json

import pytest

from taskgate.service.errors import ServerError
from taskgate.service.tokens import (
    ACCESS,
    REFRESH,
    InvalidTokenError,
    TokenExpiredError,
    TokenIssuer,
)
from taskgate.storage.models import User


@pytest.fixture
def user():
    return User(id="user-1", email="jane@example.com", first_name="Jane", last_name="Doe")


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _parts(token: str) -> list:
    return token.split(".")


class TestIssue:
    """Token pair issuing."""

    def test_pair_carries_identity_claims(self, issuer, user, clock, settings):
        pair = issuer.issue(user)
        claims = issuer.decode_access(pair.access_token)

        assert claims["sub"] == "user-1"
        assert claims["email"] == "jane@example.com"
        assert claims["role"] == "user"
        assert claims["token_type"] == ACCESS
        assert claims["iat"] == int(clock().timestamp())
        assert claims["exp"] == claims["iat"] + settings.access_token_ttl_seconds
        assert pair.expires_in == settings.access_token_ttl_seconds
        assert pair.token_type == "Bearer"

    def test_refresh_ttl_override(self, issuer, user):
        pair = issuer.issue(user, refresh_ttl_seconds=3600)
        claims = issuer.decode_refresh(pair.refresh_token)

        assert claims["token_type"] == REFRESH
        assert claims["exp"] - claims["iat"] == 3600
        assert pair.refresh_expires_in == 3600

    def test_tokens_in_same_second_are_distinct(self, issuer, user):
        first = issuer.issue(user)
        second = issuer.issue(user)

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_missing_secret_is_server_error(self, settings, user, clock):
        broken = TokenIssuer(settings.model_copy(update={"jwt_secret": ""}), clock=clock)
        with pytest.raises(ServerError):
            broken.issue(user)


class TestDecode:
    """Signature, type, and expiry checks."""

    def test_access_and_refresh_secrets_are_not_interchangeable(self, issuer, user):
        pair = issuer.issue(user)

        with pytest.raises(InvalidTokenError):
            issuer.decode_refresh(pair.access_token)
        with pytest.raises(InvalidTokenError):
            issuer.decode_access(pair.refresh_token)

    def test_tampered_payload_rejected(self, issuer, user):
        header, payload, sig = _parts(issuer.issue(user).access_token)
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "admin"
        forged = ".".join([header, _b64(claims), sig])

        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.decode_access(forged)
        assert exc_info.value.error_code == "INVALID_TOKEN"

    def test_algorithm_none_rejected(self, issuer, user):
        _, payload, sig = _parts(issuer.issue(user).access_token)
        forged = ".".join([_b64({"alg": "none", "typ": "JWT"}), payload, sig])

        with pytest.raises(InvalidTokenError):
            issuer.decode_access(forged)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed_tokens_rejected(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.decode_access(token)

    def test_expired_token_reports_expiry(self, issuer, user, clock, settings):
        pair = issuer.issue(user)
        clock.advance(seconds=settings.access_token_ttl_seconds)

        with pytest.raises(TokenExpiredError) as exc_info:
            issuer.decode_access(pair.access_token)
        assert exc_info.value.error_code == "TOKEN_EXPIRED"
        assert exc_info.value.status_code == 401

    def test_token_valid_until_expiry(self, issuer, user, clock, settings):
        pair = issuer.issue(user)
        clock.advance(seconds=settings.access_token_ttl_seconds - 1)

        assert issuer.decode_access(pair.access_token)["sub"] == user.id

    def test_wrong_audience_rejected(self, settings, user, clock):
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "someone-else"}), clock=clock)
        token = other.issue(user).access_token

        with pytest.raises(InvalidTokenError):
            TokenIssuer(settings, clock=clock).decode_access(token)
