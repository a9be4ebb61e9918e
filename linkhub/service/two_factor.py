"""Two-factor authentication: TOTP authenticator apps, emailed codes and backup codes.

Login challenges are short-lived ``TwoFactorSession`` records keyed by an
unguessable id. A session carries its own attempt budget; every wrong code
decrements it atomically and the session is deleted when it reaches zero, so a
challenge can never be brute-forced past ``max_attempts``. A successful check
pops the session, which makes each challenge single-use.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import math
import os
import secrets
import struct
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from linkhub.logging import get_logger
from linkhub.service.email import EmailService
from linkhub.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from linkhub.storage.models import (
    ChallengePurpose,
    TwoFactorCredential,
    TwoFactorMethod,
    TwoFactorSession,
    User,
    utcnow,
)
from linkhub.storage.repository import AuthRepository

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
_SECRET_BYTES = 20
_EMAIL_CODE_DIGITS = 6


# ============================================================================
# TOTP (RFC 6238, HMAC-SHA1 for authenticator app compatibility)
# ============================================================================

def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(_SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    # isdigit alone admits non-ASCII digits such as Arabic-Indic numerals
    if not code or not (code.isascii() and code.isdigit()):
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = f"{quote(issuer, safe='')}:{quote(account_name, safe='@')}"
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


class SecretCipher:
    """Fernet encryption for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("two-factor encryption key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            logger.error("totp_secret_decrypt_failed")
            raise ServerError("two-factor secret could not be read") from exc


# ============================================================================
# RESULTS
# ============================================================================

class ChallengeFailed(AuthenticationError):
    """A login code was rejected for a known session.

    ``user_id`` is kept off ``detail`` so it is available to the audit trail
    without being rendered to the unauthenticated caller.
    """

    def __init__(self, message: str, *, user_id: str, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)
        self.user_id = user_id


@dataclass(frozen=True)
class TwoFactorSetup:
    method: TwoFactorMethod
    backup_codes: Tuple[str, ...] = ()
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    session_id: Optional[str] = None
    email_sent: Optional[bool] = None


@dataclass(frozen=True)
class TwoFactorChallenge:
    session_id: str
    method: TwoFactorMethod
    expires_at: datetime
    email_sent: bool = False


@dataclass(frozen=True)
class TwoFactorVerification:
    user_id: str
    method: str
    backup_codes_remaining: Optional[int] = None


@dataclass(frozen=True)
class TwoFactorStatus:
    totp_enabled: bool = False
    email_enabled: bool = False
    totp_pending: bool = False
    backup_codes_remaining: int = 0
    methods: List[str] = field(default_factory=list)


class TwoFactorEngine:
    """Enrollment, login challenges and verification for second factors."""

    def __init__(
        self,
        repository: AuthRepository,
        cipher: SecretCipher,
        email: EmailService,
        *,
        hash_key: str,
        issuer: str = "LinkHub",
        max_attempts: int = 3,
        code_ttl_minutes: int = 10,
        resend_seconds: int = 60,
        backup_code_count: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.cipher = cipher
        self.email = email
        self._hash_key = hash_key.encode()
        self.issuer = issuer
        self.max_attempts = max_attempts
        self.code_ttl = timedelta(minutes=code_ttl_minutes)
        self.resend_interval = timedelta(seconds=resend_seconds)
        self.backup_code_count = backup_code_count
        self._clock = clock or utcnow

    # helpers -----------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _keyed_hash(self, purpose: str, scope: str, value: str) -> str:
        message = f"{purpose}:{scope}:{value}".encode()
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    def _email_code_hash(self, session_id: str, code: str) -> str:
        return self._keyed_hash("2fa-email", session_id, code)

    @staticmethod
    def _normalize_backup_code(code: str) -> str:
        return code.strip().lower().replace("-", "").replace(" ", "")

    def _backup_code_hash(self, user_id: str, code: str) -> str:
        return self._keyed_hash("2fa-backup", user_id, self._normalize_backup_code(code))

    def _new_backup_codes(self, user_id: str) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        codes = []
        for _ in range(self.backup_code_count):
            raw = secrets.token_hex(4)
            codes.append(f"{raw[:4]}-{raw[4:]}")
        hashes = tuple(self._backup_code_hash(user_id, code) for code in codes)
        return tuple(codes), hashes

    @staticmethod
    def _new_email_code() -> str:
        return str(secrets.randbelow(10**_EMAIL_CODE_DIGITS)).zfill(_EMAIL_CODE_DIGITS)

    def _new_session(
        self, user_id: str, method: TwoFactorMethod, purpose: ChallengePurpose
    ) -> Tuple[TwoFactorSession, Optional[str]]:
        now = self._now()
        session_id = secrets.token_urlsafe(32)
        code = None
        code_hash = None
        if method in (TwoFactorMethod.EMAIL, TwoFactorMethod.BOTH):
            code = self._new_email_code()
            code_hash = self._email_code_hash(session_id, code)
        session = TwoFactorSession(
            id=session_id,
            user_id=user_id,
            method=method,
            purpose=purpose,
            attempts_remaining=self.max_attempts,
            created_at=now,
            expires_at=now + self.code_ttl,
            code_hash=code_hash,
        )
        self.repository.create_two_factor_session(session)
        return session, code

    def _send_code(self, address: str, code: str, *, user_id: str) -> bool:
        sent = self.email.send_two_factor_email(address, code)
        if not sent:
            logger.warning("two_factor_email_failed", user_id=user_id)
        return sent

    def _live_session(
        self, session_id: str, purpose: ChallengePurpose
    ) -> Optional[TwoFactorSession]:
        session = self.repository.get_two_factor_session(session_id) if session_id else None
        if session is None or session.purpose != purpose:
            return None
        if session.expires_at <= self._now() or session.attempts_remaining <= 0:
            self.repository.delete_two_factor_session(session.id)
            return None
        return session

    def _record_failure(self, session_id: str) -> int:
        """Spend one attempt; returns what is left, deleting the session at zero."""

        def _decrement(session: TwoFactorSession) -> TwoFactorSession:
            return replace(session, attempts_remaining=session.attempts_remaining - 1)

        updated = self.repository.mutate_two_factor_session(session_id, _decrement)
        if updated is None:
            return 0
        if updated.attempts_remaining <= 0:
            self.repository.delete_two_factor_session(session_id)
            return 0
        return updated.attempts_remaining

    def _check_totp(self, cred: Optional[TwoFactorCredential], code: str) -> bool:
        if cred is None or not cred.totp_enabled or not cred.encrypted_secret:
            return False
        secret = self.cipher.decrypt(cred.encrypted_secret)
        return verify_totp(secret, code, self._now().timestamp())

    def _consume_backup_code(self, user_id: str, code: str) -> Optional[int]:
        """Remove a matching backup code; returns how many remain, or None."""
        code_hash = self._backup_code_hash(user_id, code)

        def _take(cred: TwoFactorCredential) -> Optional[TwoFactorCredential]:
            if code_hash not in cred.backup_code_hashes:
                return None
            return replace(
                cred,
                backup_code_hashes=tuple(h for h in cred.backup_code_hashes if h != code_hash),
                updated_at=self._now(),
            )

        updated = self.repository.mutate_two_factor_credential(user_id, _take)
        return len(updated.backup_code_hashes) if updated else None

    # queries -----------------------------------------------------------------

    def enabled_method(self, user_id: str) -> Optional[TwoFactorMethod]:
        cred = self.repository.get_two_factor_credential(user_id)
        if cred is None or not cred.any_enabled:
            return None
        if cred.totp_enabled and cred.email_enabled:
            return TwoFactorMethod.BOTH
        return TwoFactorMethod.TOTP if cred.totp_enabled else TwoFactorMethod.EMAIL

    def status(self, user_id: str) -> TwoFactorStatus:
        cred = self.repository.get_two_factor_credential(user_id)
        if cred is None:
            return TwoFactorStatus()
        methods = []
        if cred.totp_enabled:
            methods.append(TwoFactorMethod.TOTP.value)
        if cred.email_enabled:
            methods.append(TwoFactorMethod.EMAIL.value)
        return TwoFactorStatus(
            totp_enabled=cred.totp_enabled,
            email_enabled=cred.email_enabled,
            totp_pending=cred.totp_pending,
            backup_codes_remaining=len(cred.backup_code_hashes) if cred.any_enabled else 0,
            methods=methods,
        )

    # enrollment --------------------------------------------------------------

    def _issue_backup_codes_if_first(
        self, cred: TwoFactorCredential
    ) -> Tuple[TwoFactorCredential, Tuple[str, ...]]:
        # Adding a second method keeps the codes the user already saved
        if cred.any_enabled and cred.backup_code_hashes:
            return cred, ()
        codes, hashes = self._new_backup_codes(cred.user_id)
        return replace(cred, backup_code_hashes=hashes), codes

    def setup_totp(self, user: User) -> TwoFactorSetup:
        cred = self.repository.get_two_factor_credential(user.id) or TwoFactorCredential(
            user_id=user.id
        )
        if cred.totp_enabled:
            raise ConflictError("authenticator app already enabled")
        secret = generate_totp_secret()
        cred, codes = self._issue_backup_codes_if_first(cred)
        cred = replace(cred, encrypted_secret=self.cipher.encrypt(secret), updated_at=self._now())
        self.repository.save_two_factor_credential(cred)
        logger.info("two_factor_totp_setup_started", user_id=user.id)
        return TwoFactorSetup(
            method=TwoFactorMethod.TOTP,
            secret=secret,
            provisioning_uri=provisioning_uri(secret, user.email, self.issuer),
            backup_codes=codes,
        )

    def setup_email(self, user: User) -> TwoFactorSetup:
        cred = self.repository.get_two_factor_credential(user.id) or TwoFactorCredential(
            user_id=user.id
        )
        if cred.email_enabled:
            raise ConflictError("email codes already enabled")
        cred, codes = self._issue_backup_codes_if_first(cred)
        self.repository.save_two_factor_credential(replace(cred, updated_at=self._now()))
        session, code = self._new_session(
            user.id, TwoFactorMethod.EMAIL, ChallengePurpose.ENABLE_EMAIL
        )
        sent = self._send_code(user.email, code, user_id=user.id)
        logger.info("two_factor_email_setup_started", user_id=user.id, email_sent=sent)
        return TwoFactorSetup(
            method=TwoFactorMethod.EMAIL,
            session_id=session.id,
            email_sent=sent,
            backup_codes=codes,
        )

    def enable_totp(self, user_id: str, code: str) -> TwoFactorCredential:
        cred = self.repository.get_two_factor_credential(user_id)
        if cred is None or not cred.encrypted_secret:
            raise ValidationError("no authenticator setup in progress")
        if cred.totp_enabled:
            raise ConflictError("authenticator app already enabled")
        secret = self.cipher.decrypt(cred.encrypted_secret)
        if not verify_totp(secret, code.strip(), self._now().timestamp()):
            raise ValidationError("invalid verification code")

        def _enable(current: TwoFactorCredential) -> TwoFactorCredential:
            return replace(current, totp_enabled=True, updated_at=self._now())

        updated = self.repository.mutate_two_factor_credential(user_id, _enable)
        if updated is None:
            raise ValidationError("no authenticator setup in progress")
        return updated

    def enable_email(self, user_id: str, session_id: str, code: str) -> TwoFactorCredential:
        session = self._live_session(session_id, ChallengePurpose.ENABLE_EMAIL)
        if session is None or session.user_id != user_id:
            raise ValidationError("invalid or expired verification session")
        candidate = self._email_code_hash(session.id, code.strip())
        if not session.code_hash or not hmac.compare_digest(candidate, session.code_hash):
            remaining = self._record_failure(session.id)
            raise ValidationError(
                "invalid verification code", detail={"attempts_remaining": remaining}
            )
        if self.repository.pop_two_factor_session(session.id) is None:
            raise ValidationError("invalid or expired verification session")

        def _enable(current: TwoFactorCredential) -> TwoFactorCredential:
            return replace(current, email_enabled=True, updated_at=self._now())

        updated = self.repository.mutate_two_factor_credential(user_id, _enable)
        if updated is None:
            raise ValidationError("invalid or expired verification session")
        return updated

    def disable(self, user_id: str) -> bool:
        return self.repository.delete_two_factor_credential(user_id)

    def regenerate_backup_codes(self, user_id: str) -> Tuple[str, ...]:
        codes, hashes = self._new_backup_codes(user_id)

        def _swap(cred: TwoFactorCredential) -> Optional[TwoFactorCredential]:
            if not cred.any_enabled:
                return None
            return replace(cred, backup_code_hashes=hashes, updated_at=self._now())

        if self.repository.mutate_two_factor_credential(user_id, _swap) is None:
            raise ValidationError("two-factor authentication is not enabled")
        return codes

    # login -------------------------------------------------------------------

    def start_login_challenge(self, user: User) -> Optional[TwoFactorChallenge]:
        """Create a login challenge, or None when the user has no second factor."""
        method = self.enabled_method(user.id)
        if method is None:
            return None
        session, code = self._new_session(user.id, method, ChallengePurpose.LOGIN)
        sent = False
        if code is not None:
            sent = self._send_code(user.email, code, user_id=user.id)
        return TwoFactorChallenge(
            session_id=session.id,
            method=method,
            expires_at=session.expires_at,
            email_sent=sent,
        )

    def verify_login(self, session_id: str, code: str) -> TwoFactorVerification:
        session = self._live_session(session_id, ChallengePurpose.LOGIN)
        if session is None:
            raise AuthenticationError("invalid or expired two-factor session")
        code = (code or "").strip()
        cred = self.repository.get_two_factor_credential(session.user_id)

        matched: Optional[str] = None
        remaining_backup: Optional[int] = None
        if (
            session.uses_email
            and session.code_hash
            and hmac.compare_digest(self._email_code_hash(session.id, code), session.code_hash)
        ):
            matched = "email"
        elif session.method != TwoFactorMethod.EMAIL and self._check_totp(cred, code):
            matched = "totp"
        elif cred is not None and cred.any_enabled and code:
            remaining_backup = self._consume_backup_code(session.user_id, code)
            if remaining_backup is not None:
                matched = "backup_code"

        if matched is None:
            remaining = self._record_failure(session.id)
            if remaining <= 0:
                raise ChallengeFailed(
                    "too many failed attempts",
                    user_id=session.user_id,
                    detail={"attempts_remaining": 0},
                )
            raise ChallengeFailed(
                "invalid two-factor code",
                user_id=session.user_id,
                detail={"attempts_remaining": remaining},
            )

        # Whoever pops the session first wins; a concurrent duplicate is rejected
        if self.repository.pop_two_factor_session(session.id) is None:
            raise ChallengeFailed(
                "invalid or expired two-factor session", user_id=session.user_id
            )
        return TwoFactorVerification(
            user_id=session.user_id,
            method=matched,
            backup_codes_remaining=remaining_backup,
        )

    def resend(self, session_id: str, address: str) -> TwoFactorChallenge:
        session = self._live_session(session_id, ChallengePurpose.LOGIN)
        if session is None:
            session = self._live_session(session_id, ChallengePurpose.ENABLE_EMAIL)
        if session is None:
            raise AuthenticationError("invalid or expired two-factor session")
        if not session.uses_email:
            raise ValidationError("this challenge does not use email codes")

        now = self._now()
        code = self._new_email_code()
        retry_after: List[int] = []

        def _rotate(current: TwoFactorSession) -> Optional[TwoFactorSession]:
            last = current.last_resend_at or current.created_at
            wait = (last + self.resend_interval - now).total_seconds()
            if wait > 0:
                retry_after.append(max(1, math.ceil(wait)))
                return None
            return replace(
                current,
                code_hash=self._email_code_hash(current.id, code),
                last_resend_at=now,
            )

        updated = self.repository.mutate_two_factor_session(session.id, _rotate)
        if updated is None:
            if retry_after:
                raise RateLimitedError(
                    "please wait before requesting another code", retry_after=retry_after[0]
                )
            raise AuthenticationError("invalid or expired two-factor session")
        sent = self._send_code(address, code, user_id=session.user_id)
        return TwoFactorChallenge(
            session_id=updated.id,
            method=updated.method,
            expires_at=updated.expires_at,
            email_sent=sent,
        )
