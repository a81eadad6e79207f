from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from credvault.config import Settings
from credvault.logging import get_logger
from credvault.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    issued_at: datetime
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and validates HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets so a leaked
    refresh secret cannot mint access tokens and vice versa. Nothing is
    persisted here; the caller stores the refresh token string.
    """

    def __init__(
        self, settings: Settings, *, now: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }

    def issue(self, user: User) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(days=self.settings.refresh_token_ttl_days)
        return TokenPair(
            access_token=self._encode(self._claims(user, ACCESS, now, access_exp), ACCESS),
            refresh_token=self._encode(self._claims(user, REFRESH, now, refresh_exp), REFRESH),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            issued_at=now,
        )

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(token, ACCESS)

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(token, REFRESH)

    def _claims(
        self, user: User, token_type: str, now: datetime, expires_at: datetime
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "role": user.role,
            "token_type": token_type,
            # unique per token so two pairs minted in the same second differ
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not sig_b64.isascii() or not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode()
        ):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self._now() - self._leeway).timestamp():
            return None
        return payload
