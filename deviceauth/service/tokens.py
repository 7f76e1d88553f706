from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from deviceauth.config import Settings
from deviceauth.logging import get_logger
from deviceauth.service.errors import InvalidTokenError

logger = get_logger(__name__)

# 40 random bytes, hex encoded to 80 characters
REFRESH_TOKEN_BYTES = 40


class TokenIssuer:
    """Mints and validates access and refresh tokens.

    Access tokens are HS256 JWTs that carry the user id and expire after a
    fixed TTL. Refresh tokens are opaque random strings; resolving one to a
    user requires a session store lookup, which this class never does.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_token_ttl: timedelta,
        refresh_token_ttl: timedelta,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.leeway = leeway
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_token_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_token_ttl=timedelta(days=settings.refresh_token_ttl_days),
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
        )

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def generate_access_token(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("user_id is required")
        issued_at = int(self.clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "iat": issued_at,
            "exp": issued_at + int(self.access_token_ttl.total_seconds()),
            # Unique per token so two mints in the same second never collide
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def generate_refresh_token(self) -> str:
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    def refresh_token_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or self.now()) + self.refresh_token_ttl

    def verify_access_token(self, token: str) -> str:
        """Return the user id embedded in a valid, unexpired access token.

        Raises:
            InvalidTokenError: malformed token, bad signature, wrong issuer,
                audience or token type, missing subject, or expired.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError("invalid access token")
        if payload.get("token_type") != "access":
            raise InvalidTokenError("invalid access token")
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError("invalid access token")
        return user_id

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

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock() - self.leeway.total_seconds():
            return None
        return payload
