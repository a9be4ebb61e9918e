from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, FrozenSet, Optional, Tuple

from linkhub.config import Settings
from linkhub.logging import get_logger
from linkhub.service import entitlements
from linkhub.service.audit import AuditLogger, AuditReason, SecurityEvent
from linkhub.service.email import EmailService
from linkhub.service.entitlements import Entitlement, Feature, SubscriptionService
from linkhub.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from linkhub.service.passwords import CredentialVerifier, check_password_strength
from linkhub.service.rate_limit import RateLimiter
from linkhub.service.refresh_tokens import RefreshTokenStore
from linkhub.service.tokens import AccessTokenClaims, TokenIssuer
from linkhub.service.two_factor import (
    ChallengeFailed,
    SecretCipher,
    TwoFactorChallenge,
    TwoFactorEngine,
    TwoFactorSetup,
    TwoFactorStatus,
)
from linkhub.storage.errors import ConcurrencyConflict, ConstraintViolation
from linkhub.storage.models import (
    ROLE_DEFAULT_PERMISSIONS,
    CompanyMembership,
    Permission,
    Role,
    Tier,
    TwoFactorMethod,
    User,
    utcnow,
)
from linkhub.storage.redis_cache import RedisCache, SyncRedisCache
from linkhub.storage.repository import AuthRepository, normalize_email, normalize_username

logger = get_logger(__name__)

LOGIN_FAILED_SCOPE = "login-failed"
REFRESH_FAILED_SCOPE = "refresh-failed"

_CONFLICT_MESSAGES = {
    "email": "Email already registered",
    "username": "Username already taken",
}


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: Role
    permissions: FrozenSet[Permission]
    companies: Tuple[CompanyMembership, ...]
    tier: Tier

    @classmethod
    def from_claims(cls, claims: AccessTokenClaims) -> "AuthContext":
        return cls(
            user_id=claims.user_id,
            username=claims.username,
            role=claims.role,
            permissions=claims.permissions,
            companies=claims.companies,
            tier=claims.tier,
        )


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: Optional[AuthTokens] = None
    challenge: Optional[TwoFactorChallenge] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


class AuthService:
    """Signup, login, two-factor, token rotation and account changes.

    Collaborators are built from ``Settings`` so tests can swap in a clock,
    an email double or an audit sink without touching the wiring.
    """

    def __init__(
        self,
        repository: AuthRepository,
        cache: Optional[RedisCache | SyncRedisCache],
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        audit: Optional[AuditLogger] = None,
        verifier: Optional[CredentialVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.settings = settings
        self._clock = clock or utcnow
        self.audit = audit or AuditLogger(clock=self._clock)
        self.email = email or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            code_ttl_minutes=settings.two_factor_session_ttl_minutes,
        )
        self.verifier = verifier or CredentialVerifier()
        self.tokens = TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_minutes=settings.access_token_ttl_minutes,
            clock=self._clock,
        )
        self.refresh_tokens = RefreshTokenStore(
            repository, ttl_days=settings.refresh_token_ttl_days, clock=self._clock
        )
        self.rate_limiter = RateLimiter(repository, cache, audit=self.audit, clock=self._clock)
        self.two_factor = TwoFactorEngine(
            repository,
            SecretCipher(settings.two_factor_encryption_key or settings.jwt_secret),
            self.email,
            hash_key=settings.jwt_secret,
            issuer=settings.two_factor_issuer,
            max_attempts=settings.two_factor_max_attempts,
            code_ttl_minutes=settings.two_factor_session_ttl_minutes,
            resend_seconds=settings.two_factor_resend_seconds,
            backup_code_count=settings.backup_code_count,
            clock=self._clock,
        )
        self.subscriptions = SubscriptionService(
            repository,
            self.audit,
            grace_period=timedelta(hours=settings.billing_grace_period_hours),
            clock=self._clock,
        )
        self._last_cleanup = self._clock()

    # helpers -----------------------------------------------------------------

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Purge expired tokens, challenge sessions and rate-limit windows.

        Runs at most once per ``interval_minutes``; returns the number of rows
        removed, or 0 if the sweep was skipped.
        """
        now = self._clock()
        if (now - self._last_cleanup).total_seconds() < interval_minutes * 60:
            return 0
        self._last_cleanup = now
        removed = self.repository.purge_expired(now)
        if removed:
            logger.debug("auth_state_cleanup", removed=removed)
        return removed

    def _audit_failure(
        self,
        event: SecurityEvent,
        reason: AuditReason,
        *,
        user_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        **fields,
    ) -> None:
        self.audit.record(
            event,
            outcome="failure",
            user_id=user_id,
            reason=reason,
            client_ip=client_ip,
            **fields,
        )

    def _require_user(
        self,
        user_id: str,
        event: Optional[SecurityEvent] = None,
        client_ip: Optional[str] = None,
    ) -> User:
        user = self.repository.get_user(user_id)
        if user is None or not user.is_active:
            if event is not None:
                self._audit_failure(
                    event, AuditReason.ACCOUNT_DISABLED, user_id=user_id, client_ip=client_ip
                )
            raise AuthenticationError("account not found or disabled")
        return user

    def _issue_tokens(self, user: User) -> AuthTokens:
        entitlement = self.subscriptions.resolve_for_user(user.id)
        access = self.tokens.issue_access_token(user, entitlement)
        refresh_token, refresh_expires_at = self.refresh_tokens.issue(user.id)
        return AuthTokens(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    def _conflict(self, field: str) -> ConflictError:
        return ConflictError(_CONFLICT_MESSAGES[field], detail={"field": field})

    def _change_conflict(
        self, event: SecurityEvent, field: str, user_id: str, client_ip: Optional[str]
    ) -> ConflictError:
        self._audit_failure(
            event, AuditReason.CONFLICT, user_id=user_id, client_ip=client_ip, field=field
        )
        return self._conflict(field)

    def _check_password(self, user: User, password: str) -> bool:
        return self.verifier.verify(
            password, user.password_hash, user.password_salt, user.password_algo
        )

    def _confirm_password(
        self, user: User, password: str, event: SecurityEvent, client_ip: Optional[str]
    ) -> None:
        if not self._check_password(user, password or ""):
            self.audit.record(
                event,
                outcome="failure",
                user_id=user.id,
                reason=AuditReason.INVALID_PASSWORD,
                client_ip=client_ip,
            )
            raise AuthenticationError("invalid credentials")

    def _set_password(self, user: User, password: str) -> None:
        record = self.verifier.hash_password(password)
        user.password_hash = record.password_hash
        user.password_algo = record.password_algo
        user.password_salt = record.password_salt

    async def _guard(self, scope: str, client_ip: str, limit: int, window_seconds: int) -> None:
        decision = await self.rate_limiter.peek(
            scope, client_ip, limit=limit, window_seconds=window_seconds
        )
        if not decision.allowed:
            raise RateLimitedError(
                "too many failed attempts, try again later", retry_after=decision.retry_after
            )

    # signup / login ----------------------------------------------------------

    async def signup(
        self,
        email: str,
        username: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> LoginResult:
        if not self.settings.allow_signup:
            self._audit_failure(
                SecurityEvent.SIGNUP, AuditReason.SIGNUP_DISABLED, client_ip=client_ip
            )
            raise ForbiddenError("signup is disabled")
        try:
            check_password_strength(password)
        except ValueError as exc:
            self._audit_failure(
                SecurityEvent.SIGNUP, AuditReason.WEAK_PASSWORD, client_ip=client_ip
            )
            raise ValidationError(str(exc), detail={"field": "password"}) from exc

        # Friendly pre-checks; the index-row inserts below are what actually decide
        if self.repository.get_user_by_email(email) is not None:
            self._audit_failure(
                SecurityEvent.SIGNUP, AuditReason.CONFLICT, client_ip=client_ip, field="email"
            )
            raise self._conflict("email")
        if self.repository.get_user_by_username(username) is not None:
            self._audit_failure(
                SecurityEvent.SIGNUP, AuditReason.CONFLICT, client_ip=client_ip, field="username"
            )
            raise self._conflict("username")

        record = self.verifier.hash_password(password)
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip(),
            username=username.strip(),
            password_hash=record.password_hash,
            password_algo=record.password_algo,
            role=Role.USER,
            permissions=ROLE_DEFAULT_PERMISSIONS[Role.USER],
            created_at=self._clock(),
        )
        try:
            self.repository.create_user(user)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            self._audit_failure(
                SecurityEvent.SIGNUP, AuditReason.CONFLICT, client_ip=client_ip, field=field
            )
            raise self._conflict(field) from exc
        self.subscriptions.create_default(user.id)
        self.audit.record(
            SecurityEvent.SIGNUP, outcome="success", user_id=user.id, client_ip=client_ip
        )
        return LoginResult(user=user, tokens=self._issue_tokens(user))

    async def _login_failed(
        self, user_id: Optional[str], reason: AuditReason, client_ip: str
    ) -> AuthenticationError:
        self.audit.record(
            SecurityEvent.LOGIN,
            outcome="failure",
            user_id=user_id,
            reason=reason,
            client_ip=client_ip,
        )
        await self.rate_limiter.check(
            LOGIN_FAILED_SCOPE,
            client_ip,
            limit=self.settings.login_failure_limit,
            window_seconds=self.settings.login_failure_window_seconds,
            client_ip=client_ip,
        )
        return AuthenticationError("invalid credentials")

    async def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> LoginResult:
        self.maybe_cleanup()
        ip = client_ip or "unknown"
        try:
            await self._guard(
                LOGIN_FAILED_SCOPE,
                ip,
                self.settings.login_failure_limit,
                self.settings.login_failure_window_seconds,
            )
        except RateLimitedError:
            self.audit.record(
                SecurityEvent.LOGIN,
                outcome="failure",
                reason=AuditReason.RATE_LIMITED,
                client_ip=ip,
            )
            raise

        user = self.repository.get_user_by_email(email)
        if user is None:
            self.verifier.burn(password)
            raise await self._login_failed(None, AuditReason.USER_NOT_FOUND, ip)
        if not self._check_password(user, password):
            raise await self._login_failed(user.id, AuditReason.INVALID_PASSWORD, ip)
        if not user.is_active:
            raise await self._login_failed(user.id, AuditReason.ACCOUNT_DISABLED, ip)

        if self.verifier.needs_rehash(user.password_hash, user.password_algo):
            previous_algo = user.password_algo
            self._set_password(user, password)
            self.repository.save_user(user)
            logger.info("password_rehashed", user_id=user.id, from_algo=previous_algo)

        challenge = self.two_factor.start_login_challenge(user)
        if challenge is not None:
            self.audit.record(
                SecurityEvent.TWO_FACTOR_CHALLENGE,
                outcome="success",
                user_id=user.id,
                client_ip=ip,
                method=challenge.method.value,
                email_sent=challenge.email_sent,
            )
            return LoginResult(user=user, challenge=challenge)

        tokens = self._issue_tokens(user)
        self.audit.record(SecurityEvent.LOGIN, outcome="success", user_id=user.id, client_ip=ip)
        return LoginResult(user=user, tokens=tokens)

    # two-factor --------------------------------------------------------------

    async def verify_two_factor(
        self, session_id: str, code: str, *, client_ip: Optional[str] = None
    ) -> LoginResult:
        self.maybe_cleanup()
        try:
            verification = self.two_factor.verify_login(session_id, code)
        except AuthenticationError as exc:
            remaining = exc.detail.get("attempts_remaining")
            if remaining is None:
                reason = AuditReason.SESSION_EXPIRED
            elif remaining == 0:
                reason = AuditReason.ATTEMPTS_EXHAUSTED
            else:
                reason = AuditReason.INVALID_CODE
            self._audit_failure(
                SecurityEvent.TWO_FACTOR_VERIFY,
                reason,
                user_id=exc.user_id if isinstance(exc, ChallengeFailed) else None,
                client_ip=client_ip,
            )
            raise

        user = self.repository.get_user(verification.user_id)
        if user is None or not user.is_active:
            self.audit.record(
                SecurityEvent.TWO_FACTOR_VERIFY,
                outcome="failure",
                user_id=verification.user_id,
                reason=AuditReason.ACCOUNT_DISABLED,
                client_ip=client_ip,
            )
            raise AuthenticationError("invalid credentials")
        if verification.method == "backup_code":
            self.audit.record(
                SecurityEvent.BACKUP_CODE_USED,
                outcome="success",
                user_id=user.id,
                client_ip=client_ip,
                remaining=verification.backup_codes_remaining,
            )
        self.audit.record(
            SecurityEvent.TWO_FACTOR_VERIFY,
            outcome="success",
            user_id=user.id,
            client_ip=client_ip,
            method=verification.method,
        )
        tokens = self._issue_tokens(user)
        self.audit.record(
            SecurityEvent.LOGIN, outcome="success", user_id=user.id, client_ip=client_ip
        )
        return LoginResult(user=user, tokens=tokens)

    async def resend_two_factor(
        self, session_id: str, *, client_ip: Optional[str] = None
    ) -> TwoFactorChallenge:
        session = self.repository.get_two_factor_session(session_id) if session_id else None
        user = self.repository.get_user(session.user_id) if session else None
        if user is None:
            self._audit_failure(
                SecurityEvent.TWO_FACTOR_CHALLENGE,
                AuditReason.SESSION_EXPIRED,
                client_ip=client_ip,
                resend=True,
            )
            raise AuthenticationError("invalid or expired two-factor session")
        try:
            challenge = self.two_factor.resend(session_id, user.email)
        except (AuthenticationError, RateLimitedError, ValidationError) as exc:
            if isinstance(exc, RateLimitedError):
                reason = AuditReason.RATE_LIMITED
            elif isinstance(exc, ValidationError):
                reason = AuditReason.INVALID_REQUEST
            else:
                reason = AuditReason.SESSION_EXPIRED
            self._audit_failure(
                SecurityEvent.TWO_FACTOR_CHALLENGE,
                reason,
                user_id=user.id,
                client_ip=client_ip,
                resend=True,
            )
            raise
        self.audit.record(
            SecurityEvent.TWO_FACTOR_CHALLENGE,
            outcome="success",
            user_id=user.id,
            client_ip=client_ip,
            resend=True,
            email_sent=challenge.email_sent,
        )
        return challenge

    async def setup_two_factor(
        self, user_id: str, method: TwoFactorMethod, *, client_ip: Optional[str] = None
    ) -> TwoFactorSetup:
        user = self._require_user(user_id, SecurityEvent.TWO_FACTOR_SETUP, client_ip)
        try:
            if method == TwoFactorMethod.TOTP:
                setup = self.two_factor.setup_totp(user)
            elif method == TwoFactorMethod.EMAIL:
                setup = self.two_factor.setup_email(user)
            else:
                raise ValidationError(
                    "method must be 'totp' or 'email'", detail={"field": "method"}
                )
        except (ConflictError, ValidationError) as exc:
            self._audit_failure(
                SecurityEvent.TWO_FACTOR_SETUP,
                AuditReason.ALREADY_ENABLED
                if isinstance(exc, ConflictError)
                else AuditReason.INVALID_REQUEST,
                user_id=user_id,
                client_ip=client_ip,
                method=method.value,
            )
            raise
        self.audit.record(
            SecurityEvent.TWO_FACTOR_SETUP,
            outcome="success",
            user_id=user_id,
            client_ip=client_ip,
            method=method.value,
            backup_codes_issued=len(setup.backup_codes),
        )
        return setup

    async def enable_two_factor(
        self,
        user_id: str,
        method: TwoFactorMethod,
        code: str,
        *,
        session_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> TwoFactorStatus:
        self._require_user(user_id, SecurityEvent.TWO_FACTOR_ENABLED, client_ip)
        try:
            if method == TwoFactorMethod.TOTP:
                self.two_factor.enable_totp(user_id, code)
            elif method == TwoFactorMethod.EMAIL:
                if not session_id:
                    raise ValidationError(
                        "session_id is required to enable email codes",
                        detail={"field": "session_id"},
                    )
                self.two_factor.enable_email(user_id, session_id, code)
            else:
                raise ValidationError(
                    "method must be 'totp' or 'email'", detail={"field": "method"}
                )
        except (ValidationError, ConflictError, ConcurrencyConflict) as exc:
            if isinstance(exc, ConflictError):
                reason = AuditReason.ALREADY_ENABLED
            elif isinstance(exc, ConcurrencyConflict):
                reason = AuditReason.CONFLICT
            elif exc.detail.get("field"):
                reason = AuditReason.INVALID_REQUEST
            else:
                reason = AuditReason.INVALID_CODE
            self._audit_failure(
                SecurityEvent.TWO_FACTOR_ENABLED,
                reason,
                user_id=user_id,
                client_ip=client_ip,
                method=method.value,
            )
            raise
        self.audit.record(
            SecurityEvent.TWO_FACTOR_ENABLED,
            outcome="success",
            user_id=user_id,
            client_ip=client_ip,
            method=method.value,
        )
        return self.two_factor.status(user_id)

    async def disable_two_factor(
        self, user_id: str, password: str, *, client_ip: Optional[str] = None
    ) -> int:
        """Turn off every second factor; returns how many sessions were signed out."""
        user = self._require_user(user_id, SecurityEvent.TWO_FACTOR_DISABLED, client_ip)
        self._confirm_password(user, password, SecurityEvent.TWO_FACTOR_DISABLED, client_ip)
        self.two_factor.disable(user_id)
        revoked = self.refresh_tokens.revoke_all(user_id)
        self.audit.record(
            SecurityEvent.TWO_FACTOR_DISABLED,
            outcome="success",
            user_id=user_id,
            client_ip=client_ip,
            sessions_revoked=revoked,
        )
        self.email.send_templated_email(user.email, "two_factor_disabled")
        return revoked

    async def regenerate_backup_codes(
        self, user_id: str, password: str, *, client_ip: Optional[str] = None
    ) -> Tuple[str, ...]:
        event = SecurityEvent.BACKUP_CODES_REGENERATED
        user = self._require_user(user_id, event, client_ip)
        self._confirm_password(user, password, event, client_ip)
        try:
            codes = self.two_factor.regenerate_backup_codes(user_id)
        except ValidationError:
            self._audit_failure(
                event, AuditReason.NOT_ENABLED, user_id=user_id, client_ip=client_ip
            )
            raise
        self.audit.record(
            event, outcome="success", user_id=user_id, client_ip=client_ip, count=len(codes)
        )
        return codes

    async def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        return self.two_factor.status(user_id)

    # tokens ------------------------------------------------------------------

    async def refresh(
        self, refresh_token: Optional[str], *, client_ip: Optional[str] = None
    ) -> LoginResult:
        self.maybe_cleanup()
        ip = client_ip or "unknown"
        try:
            await self._guard(
                REFRESH_FAILED_SCOPE,
                ip,
                self.settings.refresh_failure_limit,
                self.settings.refresh_failure_window_seconds,
            )
        except RateLimitedError:
            self._audit_failure(
                SecurityEvent.TOKEN_REFRESH, AuditReason.RATE_LIMITED, client_ip=ip
            )
            raise
        try:
            user_id = self.refresh_tokens.consume(refresh_token or "")
            user = self._require_user(user_id)
        except AuthenticationError:
            self.audit.record(
                SecurityEvent.TOKEN_REFRESH,
                outcome="failure",
                reason=AuditReason.INVALID_REFRESH_TOKEN,
                client_ip=ip,
            )
            await self.rate_limiter.check(
                REFRESH_FAILED_SCOPE,
                ip,
                limit=self.settings.refresh_failure_limit,
                window_seconds=self.settings.refresh_failure_window_seconds,
                client_ip=ip,
            )
            raise AuthenticationError("invalid or expired refresh token")
        tokens = self._issue_tokens(user)
        self.audit.record(
            SecurityEvent.TOKEN_REFRESH, outcome="success", user_id=user.id, client_ip=ip
        )
        return LoginResult(user=user, tokens=tokens)

    async def logout(
        self,
        refresh_token: Optional[str],
        *,
        user_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> None:
        revoked = self.refresh_tokens.revoke(refresh_token or "")
        self.audit.record(
            SecurityEvent.LOGOUT,
            outcome="success",
            user_id=user_id,
            client_ip=client_ip,
            revoked=revoked,
        )

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer token to a request context without a store lookup."""
        token = (authorization or "").strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        claims = self.tokens.decode_access_token(token) if token else None
        if claims is None:
            raise AuthenticationError("invalid or expired access token")
        return AuthContext.from_claims(claims)

    # account changes ---------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> AuthTokens:
        """Replace the password, sign out every session and return a fresh pair."""
        user = self._require_user(user_id, SecurityEvent.PASSWORD_CHANGED, client_ip)
        self._confirm_password(
            user, current_password, SecurityEvent.PASSWORD_CHANGED, client_ip
        )
        try:
            check_password_strength(new_password)
        except ValueError as exc:
            self._audit_failure(
                SecurityEvent.PASSWORD_CHANGED,
                AuditReason.WEAK_PASSWORD,
                user_id=user.id,
                client_ip=client_ip,
            )
            raise ValidationError(str(exc), detail={"field": "new_password"}) from exc
        self._set_password(user, new_password)
        self.repository.save_user(user)
        revoked = self.refresh_tokens.revoke_all(user.id)
        self.audit.record(
            SecurityEvent.PASSWORD_CHANGED,
            outcome="success",
            user_id=user.id,
            client_ip=client_ip,
            sessions_revoked=revoked,
        )
        self.email.send_templated_email(user.email, "password_changed")
        return self._issue_tokens(user)

    async def change_email(
        self,
        user_id: str,
        new_email: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> User:
        event = SecurityEvent.EMAIL_CHANGED
        user = self._require_user(user_id, event, client_ip)
        self._confirm_password(user, password, event, client_ip)
        existing = self.repository.get_user_by_email(new_email)
        if existing is not None and existing.id != user.id:
            raise self._change_conflict(event, "email", user.id, client_ip)
        old_email = user.email
        try:
            self.repository.change_email(user, new_email)
        except ConstraintViolation as exc:
            raise self._change_conflict(event, "email", user.id, client_ip) from exc
        self.audit.record(
            SecurityEvent.EMAIL_CHANGED, outcome="success", user_id=user.id, client_ip=client_ip
        )
        if normalize_email(old_email) != normalize_email(new_email):
            self.email.send_templated_email(
                old_email, "email_changed", {"new_email": user.email}
            )
        return user

    async def change_username(
        self, user_id: str, new_username: str, *, client_ip: Optional[str] = None
    ) -> User:
        event = SecurityEvent.USERNAME_CHANGED
        user = self._require_user(user_id, event, client_ip)
        existing = self.repository.get_user_by_username(new_username)
        if existing is not None and existing.id != user.id:
            raise self._change_conflict(event, "username", user.id, client_ip)
        old_username = user.username
        try:
            self.repository.change_username(user, new_username)
        except ConstraintViolation as exc:
            raise self._change_conflict(event, "username", user.id, client_ip) from exc
        self.audit.record(
            SecurityEvent.USERNAME_CHANGED,
            outcome="success",
            user_id=user.id,
            client_ip=client_ip,
            changed=normalize_username(old_username) != normalize_username(new_username),
        )
        return user

    # entitlements ------------------------------------------------------------

    def get_entitlement(self, user_id: str) -> Entitlement:
        """Effective tier resolved from the stored subscription right now."""
        return self.subscriptions.resolve_for_user(user_id)

    def require_feature(self, user_id: str, feature: Feature) -> Entitlement:
        entitlement = self.get_entitlement(user_id)
        entitlements.require_feature(entitlement, feature, self.subscriptions.table)
        return entitlement
