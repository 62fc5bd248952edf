from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    WrongTokenTypeError,
)

logger = get_logger(__name__)

REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_ttl: int
    refresh_ttl: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.access_ttl,
            "refresh_expires_in": self.refresh_ttl,
        }


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Only refresh tokens carry ``type=refresh``; access tokens have no type
    claim, so a refresh token can never pass ``verify_access``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock or time.time
        self._leeway = leeway_seconds

    def _time(self) -> float:
        return self._clock()

    @property
    def access_ttl(self) -> int:
        return self.settings.access_token_ttl_seconds

    @property
    def refresh_ttl(self) -> int:
        return self.settings.refresh_token_ttl_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _split(self, token: str) -> Tuple[str, str, str]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            raise InvalidTokenError("malformed")
        return parts[0], parts[1], parts[2]

    def _claims(
        self,
        user_id: str,
        username: str,
        email: Optional[str],
        session_id: Optional[str],
        ttl: int,
        now: int,
    ) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "username": username,
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
        }
        if email:
            claims["email"] = email
        if session_id:
            claims["sid"] = session_id
        return claims

    def issue(
        self,
        user_id: str,
        username: str,
        email: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        now = int(self._time())
        access_payload = self._claims(user_id, username, email, session_id, self.access_ttl, now)
        refresh_payload = self._claims(user_id, username, email, session_id, self.refresh_ttl, now)
        refresh_payload["type"] = REFRESH_TOKEN_TYPE
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Check signature, algorithm, issuer, audience and expiry.

        Raises:
            InvalidTokenError: the token is malformed, tampered with or foreign
            TokenExpiredError: the signature is good but ``exp`` has passed
        """
        header_b64, payload_b64, sig_b64 = self._split(token)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed")
        if not isinstance(header, dict):
            raise InvalidTokenError("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("missing_expiry")
        if exp_ts <= self._time() - self._leeway:
            raise TokenExpiredError()
        return payload

    def verify_access(self, token: str) -> dict[str, Any]:
        payload = self.verify(token)
        if payload.get("type") == REFRESH_TOKEN_TYPE:
            raise WrongTokenTypeError("access", payload.get("type"))
        return payload

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Read claims without checking signature or expiry. Diagnostics only."""
        try:
            _, payload_b64, _ = self._split(token)
            payload = json.loads(self._decode_segment(payload_b64))
        except (InvalidTokenError, ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def refresh(self, refresh_token: str) -> Tuple[str, int]:
        """Mint a new access token from a refresh token. The refresh token is not rotated."""
        payload = self.verify(refresh_token)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise WrongTokenTypeError(REFRESH_TOKEN_TYPE, payload.get("type"))
        now = int(self._time())
        access_payload = self._claims(
            payload["sub"],
            payload.get("username", ""),
            payload.get("email"),
            payload.get("sid"),
            self.access_ttl,
            now,
        )
        return self._encode_jwt(access_payload), self.access_ttl

    def get_expiration(self, token: str) -> Optional[datetime]:
        payload = self.decode_unsafe(token)
        if not payload or "exp" not in payload:
            return None
        try:
            return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    def is_expired(self, token: str) -> bool:
        expires_at = self.get_expiration(token)
        if expires_at is None:
            return True
        return expires_at.timestamp() <= self._time()
