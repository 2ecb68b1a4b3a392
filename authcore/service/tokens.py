from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from authcore.config import MIN_JWT_SECRET_BYTES
from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError
from authcore.storage.models import User

logger = get_logger(__name__)

# Users without any role assignment are issued this one
FALLBACK_ROLE = "user"


class ClaimsBuilder:
    """Assembles the identity part of an access-token payload."""

    def __init__(self, fallback_role: str = FALLBACK_ROLE) -> None:
        self.fallback_role = fallback_role

    def build(
        self, user: User, roles: Sequence[str], permissions: Sequence[str]
    ) -> Dict[str, Any]:
        effective_roles = list(dict.fromkeys(roles)) or [self.fallback_role]
        return {
            "sub": user.id,
            "name": user.username,
            "email": user.email,
            "security_stamp": user.security_stamp,
            "role": effective_roles,
            "permission": list(dict.fromkeys(permissions)),
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jwt_id: str
    expires_at: datetime


class TokenIssuer:
    """HS256 signer and verifier for access tokens.

    Every ``issue`` call stamps a fresh ``jti``; it is the join key between an
    access token and the refresh token that can mint its successor.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        *,
        leeway_seconds: int = 120,
    ) -> None:
        if not secret or len(secret.encode()) < MIN_JWT_SECRET_BYTES:
            raise ConfigurationError(
                f"JWT signing key must be at least {MIN_JWT_SECRET_BYTES} bytes"
            )
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=leeway_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self, user_id: str, claims: Dict[str, Any], validity_minutes: int
    ) -> IssuedToken:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=validity_minutes)
        jwt_id = str(uuid.uuid4())
        payload = dict(claims)
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": user_id,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": jwt_id,
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(
            token=token,
            jwt_id=jwt_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified payload, or ``None`` for any invalid token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
