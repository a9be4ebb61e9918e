from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, FrozenSet, Optional, Tuple

from linkhub.logging import get_logger
from linkhub.service.entitlements import Entitlement
from linkhub.storage.models import (
    CompanyMembership,
    CompanyRole,
    Permission,
    Role,
    Tier,
    User,
    utcnow,
)

logger = get_logger(__name__)

_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token.

    Everything needed to authorize a request is carried here so that request
    handling does not go back to the user store.
    """

    user_id: str
    username: str
    role: Role
    permissions: FrozenSet[Permission]
    companies: Tuple[CompanyMembership, ...]
    tier: Tier
    issued_at: datetime
    expires_at: datetime
    jti: str

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Signs and verifies short-lived HS256 access tokens.

    The tier claim is the *effective* tier at issue time; it is a hint for
    clients and coarse gating, and stale for at most one access-token lifetime.
    Feature checks that must be exact resolve the subscription live instead.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 15,
        leeway_seconds: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)
        self.leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock or utcnow

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a token cannot pick its own verification scheme
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Bytes, because compare_digest refuses non-ASCII str input
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
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
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self._clock() - self.leeway).timestamp():
            return None
        return payload

    def issue_access_token(self, user: User, entitlement: Entitlement) -> IssuedToken:
        now = self._clock()
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "username": user.username,
            "role": user.role.value,
            "permissions": sorted(p.value for p in user.permissions),
            "companies": [{"id": m.company_id, "role": m.role.value} for m in user.companies],
            "tier": entitlement.effective_tier.value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        return IssuedToken(token=self._encode_jwt(payload), expires_at=expires_at)

    def decode_access_token(self, token: str) -> Optional[AccessTokenClaims]:
        """Verified claims, or None for any malformed, forged or expired token."""
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return None
        try:
            return AccessTokenClaims(
                user_id=str(payload["sub"]),
                username=str(payload.get("username", "")),
                role=Role(payload["role"]),
                permissions=frozenset(Permission(p) for p in payload.get("permissions", [])),
                companies=tuple(
                    CompanyMembership(company_id=str(c["id"]), role=CompanyRole(c["role"]))
                    for c in payload.get("companies", [])
                ),
                tier=Tier(payload.get("tier", Tier.FREE.value)),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("jwt_claims_invalid", error=str(exc))
            return None
