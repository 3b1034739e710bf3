from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.errors import InvalidTokenError, ServerError, TokenExpiredError
from taskgate.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


class TokenIssuer:
    """HS256 access and refresh tokens signed with separate secrets."""

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow

    def _now_ts(self) -> int:
        return int(self._clock().timestamp())

    def _secret_for(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_secret if token_type == ACCESS else self.settings.jwt_refresh_secret
        )
        if not secret:
            logger.error("jwt_secret_missing", token_type=token_type)
            raise ServerError("Token signing is not configured")
        return secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret_for(token_type), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode(self, token: str, token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token")

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("Invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError("Invalid token")
        if not payload.get("sub"):
            raise InvalidTokenError("Invalid token")
        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token")
        if exp_ts <= self._now_ts() - self.settings.jwt_leeway_seconds:
            raise TokenExpiredError("Token expired")
        return payload

    def _claims(self, user: User, token_type: str, iat: int, ttl_seconds: int) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "token_type": token_type,
            # jti keeps tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": iat,
            "exp": iat + ttl_seconds,
        }

    def issue(self, user: User, *, refresh_ttl_seconds: Optional[int] = None) -> TokenPair:
        iat = self._now_ts()
        access_ttl = self.settings.access_token_ttl_seconds
        refresh_ttl = refresh_ttl_seconds or self.settings.refresh_token_ttl_seconds
        return TokenPair(
            access_token=self._encode(self._claims(user, ACCESS, iat, access_ttl), ACCESS),
            refresh_token=self._encode(self._claims(user, REFRESH, iat, refresh_ttl), REFRESH),
            expires_in=access_ttl,
            refresh_expires_in=refresh_ttl,
        )

    def decode_access(self, token: str) -> dict[str, Any]:
        return self._decode(token, ACCESS)

    def decode_refresh(self, token: str) -> dict[str, Any]:
        return self._decode(token, REFRESH)
