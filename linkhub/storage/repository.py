"""Typed adapter between the auth services and a partition/row entity store.

This is the only place where roles, permissions, tiers and timestamps are
turned into plain JSON values and back; everything above it works with the
dataclasses in ``linkhub.storage.models``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from linkhub.logging import get_logger
from linkhub.storage.common import EntityStore, decode_ts, encode_ts
from linkhub.storage.errors import ConcurrencyConflict, ConstraintViolation
from linkhub.storage.models import (
    ChallengePurpose,
    CompanyMembership,
    CompanyRole,
    Permission,
    RefreshToken,
    Role,
    Subscription,
    TwoFactorCredential,
    TwoFactorMethod,
    TwoFactorSession,
    User,
)

logger = get_logger(__name__)

USERS = "Users"
USER_EMAILS = "UserEmails"
USERNAMES = "Usernames"
SUBSCRIPTIONS = "Subscriptions"
REFRESH_TOKENS = "RefreshTokens"
TWO_FACTOR = "TwoFactor"
TWO_FACTOR_SESSIONS = "TwoFactorSessions"
RATE_LIMITS = "RateLimits"

_MAX_CAS_ATTEMPTS = 5

T = TypeVar("T")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip().lower()


# ============================================================================
# SERIALIZATION
# ============================================================================

def user_to_data(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "password_hash": user.password_hash,
        "password_algo": user.password_algo,
        "password_salt": user.password_salt,
        "role": user.role.value,
        "permissions": sorted(p.value for p in user.permissions),
        "companies": [
            {"company_id": m.company_id, "role": m.role.value} for m in user.companies
        ],
        "created_at": encode_ts(user.created_at),
        "is_active": user.is_active,
    }


def user_from_data(data: Dict[str, Any]) -> User:
    return User(
        id=data["id"],
        email=data["email"],
        username=data["username"],
        password_hash=data["password_hash"],
        password_algo=data.get("password_algo") or "argon2id",
        password_salt=data.get("password_salt"),
        role=Role(data.get("role", Role.USER.value)),
        permissions=frozenset(Permission(p) for p in data.get("permissions") or []),
        companies=tuple(
            CompanyMembership(company_id=m["company_id"], role=CompanyRole(m["role"]))
            for m in data.get("companies") or []
        ),
        created_at=decode_ts(data.get("created_at")),
        is_active=bool(data.get("is_active", True)),
    )


def subscription_to_data(subscription: Subscription) -> Dict[str, Any]:
    return {
        "tier": subscription.tier.value,
        "status": subscription.status.value,
        "started_at": encode_ts(subscription.started_at),
        "next_billing_date": encode_ts(subscription.next_billing_date),
        "cancelled_at": encode_ts(subscription.cancelled_at),
        "access_until": encode_ts(subscription.access_until),
        "expires_at": encode_ts(subscription.expires_at),
        "trial_ends_at": encode_ts(subscription.trial_ends_at),
        "billing_cycle": subscription.billing_cycle.value,
        "provider_customer_id": subscription.provider_customer_id,
    }


def _refresh_to_data(record: RefreshToken) -> Dict[str, Any]:
    return {
        "user_id": record.user_id,
        "created_at": encode_ts(record.created_at),
        "expires_at": encode_ts(record.expires_at),
    }


def _refresh_from_data(token_hash: str, data: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token_hash=token_hash,
        user_id=data["user_id"],
        created_at=decode_ts(data["created_at"]),
        expires_at=decode_ts(data["expires_at"]),
    )


def _credential_to_data(cred: TwoFactorCredential) -> Dict[str, Any]:
    return {
        "encrypted_secret": cred.encrypted_secret,
        "totp_enabled": cred.totp_enabled,
        "email_enabled": cred.email_enabled,
        "backup_code_hashes": list(cred.backup_code_hashes),
        "updated_at": encode_ts(cred.updated_at),
    }


def _credential_from_data(user_id: str, data: Dict[str, Any]) -> TwoFactorCredential:
    return TwoFactorCredential(
        user_id=user_id,
        encrypted_secret=data.get("encrypted_secret"),
        totp_enabled=bool(data.get("totp_enabled")),
        email_enabled=bool(data.get("email_enabled")),
        backup_code_hashes=tuple(data.get("backup_code_hashes") or ()),
        updated_at=decode_ts(data.get("updated_at")),
    )


def _session_to_data(session: TwoFactorSession) -> Dict[str, Any]:
    return {
        "user_id": session.user_id,
        "method": session.method.value,
        "purpose": session.purpose.value,
        "attempts_remaining": session.attempts_remaining,
        "created_at": encode_ts(session.created_at),
        "expires_at": encode_ts(session.expires_at),
        "code_hash": session.code_hash,
        "last_resend_at": encode_ts(session.last_resend_at),
    }


def _session_from_data(session_id: str, data: Dict[str, Any]) -> TwoFactorSession:
    return TwoFactorSession(
        id=session_id,
        user_id=data["user_id"],
        method=TwoFactorMethod(data["method"]),
        purpose=ChallengePurpose(data["purpose"]),
        attempts_remaining=int(data["attempts_remaining"]),
        created_at=decode_ts(data["created_at"]),
        expires_at=decode_ts(data["expires_at"]),
        code_hash=data.get("code_hash"),
        last_resend_at=decode_ts(data.get("last_resend_at")),
    )


class AuthRepository:
    """Users, subscriptions, refresh tokens, two-factor state and counters."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def _mutate(
        self,
        partition: str,
        row: str,
        decode: Callable[[str, Dict[str, Any]], T],
        encode: Callable[[T], Dict[str, Any]],
        change: Callable[[T], Optional[T]],
        expires_at: Callable[[T], Optional[datetime]] = lambda _: None,
    ) -> Optional[T]:
        """Compare-and-swap loop over one entity.

        ``change`` returns the updated object, or None to leave the entity
        untouched. Returns the stored result, or None when the entity is gone
        or ``change`` declined.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            entity = self.store.get(partition, row)
            if entity is None:
                return None
            updated = change(decode(row, entity.data))
            if updated is None:
                return None
            try:
                self.store.replace(
                    partition,
                    row,
                    encode(updated),
                    expected_version=entity.version,
                    expires_at=expires_at(updated),
                )
            except ConcurrencyConflict:
                continue
            return updated
        logger.warning("entity_cas_exhausted", partition=partition)
        raise ConcurrencyConflict(
            "concurrent update, retry the request", {"partition": partition}
        )

    # users -------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Claim the email and username index rows, then write the user.

        Index rows are inserted, never upserted, so two concurrent signups for
        the same address cannot both succeed.
        """
        email_key = normalize_email(user.email)
        username_key = normalize_username(user.username)
        try:
            self.store.insert(USER_EMAILS, email_key, {"user_id": user.id})
        except ConstraintViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        try:
            self.store.insert(USERNAMES, username_key, {"user_id": user.id})
        except ConstraintViolation:
            self.store.delete(USER_EMAILS, email_key)
            raise ConstraintViolation("username already exists", {"field": "username"})
        self.store.insert(USERS, user.id, user_to_data(user))
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        entity = self.store.get(USERS, user_id)
        return user_from_data(entity.data) if entity else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        index = self.store.get(USER_EMAILS, normalize_email(email))
        return self.get_user(index.data["user_id"]) if index else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        index = self.store.get(USERNAMES, normalize_username(username))
        return self.get_user(index.data["user_id"]) if index else None

    def save_user(self, user: User) -> User:
        self.store.upsert(USERS, user.id, user_to_data(user))
        return user

    def change_email(self, user: User, new_email: str) -> User:
        old_key = normalize_email(user.email)
        new_key = normalize_email(new_email)
        if new_key != old_key:
            try:
                self.store.insert(USER_EMAILS, new_key, {"user_id": user.id})
            except ConstraintViolation:
                raise ConstraintViolation("email already exists", {"field": "email"})
        user.email = new_email.strip()
        self.save_user(user)
        if new_key != old_key:
            self.store.delete(USER_EMAILS, old_key)
        return user

    def change_username(self, user: User, new_username: str) -> User:
        old_key = normalize_username(user.username)
        new_key = normalize_username(new_username)
        if new_key != old_key:
            try:
                self.store.insert(USERNAMES, new_key, {"user_id": user.id})
            except ConstraintViolation:
                raise ConstraintViolation("username already exists", {"field": "username"})
        user.username = new_username.strip()
        self.save_user(user)
        if new_key != old_key:
            self.store.delete(USERNAMES, old_key)
        return user

    # subscriptions -----------------------------------------------------------

    def get_subscription_data(self, user_id: str) -> Optional[Dict[str, Any]]:
        entity = self.store.get(SUBSCRIPTIONS, user_id)
        return entity.data if entity else None

    def save_subscription(self, user_id: str, subscription: Subscription) -> Subscription:
        self.store.upsert(SUBSCRIPTIONS, user_id, subscription_to_data(subscription))
        return subscription

    # refresh tokens ----------------------------------------------------------

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        self.store.insert(
            REFRESH_TOKENS,
            record.token_hash,
            _refresh_to_data(record),
            expires_at=record.expires_at,
        )
        return record

    def pop_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        entity = self.store.pop(REFRESH_TOKENS, token_hash)
        return _refresh_from_data(token_hash, entity.data) if entity else None

    def delete_refresh_token(self, token_hash: str) -> bool:
        return self.store.delete(REFRESH_TOKENS, token_hash)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        return [
            _refresh_from_data(entity.row_key, entity.data)
            for entity in self.store.query(REFRESH_TOKENS, where={"user_id": user_id})
        ]

    # two-factor credentials --------------------------------------------------

    def get_two_factor_credential(self, user_id: str) -> Optional[TwoFactorCredential]:
        entity = self.store.get(TWO_FACTOR, user_id)
        return _credential_from_data(user_id, entity.data) if entity else None

    def save_two_factor_credential(self, cred: TwoFactorCredential) -> TwoFactorCredential:
        self.store.upsert(TWO_FACTOR, cred.user_id, _credential_to_data(cred))
        return cred

    def delete_two_factor_credential(self, user_id: str) -> bool:
        return self.store.delete(TWO_FACTOR, user_id)

    def mutate_two_factor_credential(
        self,
        user_id: str,
        change: Callable[[TwoFactorCredential], Optional[TwoFactorCredential]],
    ) -> Optional[TwoFactorCredential]:
        return self._mutate(
            TWO_FACTOR, user_id, _credential_from_data, _credential_to_data, change
        )

    # two-factor sessions -----------------------------------------------------

    def create_two_factor_session(self, session: TwoFactorSession) -> TwoFactorSession:
        self.store.insert(
            TWO_FACTOR_SESSIONS,
            session.id,
            _session_to_data(session),
            expires_at=session.expires_at,
        )
        return session

    def get_two_factor_session(self, session_id: str) -> Optional[TwoFactorSession]:
        entity = self.store.get(TWO_FACTOR_SESSIONS, session_id)
        return _session_from_data(session_id, entity.data) if entity else None

    def pop_two_factor_session(self, session_id: str) -> Optional[TwoFactorSession]:
        entity = self.store.pop(TWO_FACTOR_SESSIONS, session_id)
        return _session_from_data(session_id, entity.data) if entity else None

    def delete_two_factor_session(self, session_id: str) -> bool:
        return self.store.delete(TWO_FACTOR_SESSIONS, session_id)

    def mutate_two_factor_session(
        self,
        session_id: str,
        change: Callable[[TwoFactorSession], Optional[TwoFactorSession]],
    ) -> Optional[TwoFactorSession]:
        return self._mutate(
            TWO_FACTOR_SESSIONS,
            session_id,
            _session_from_data,
            _session_to_data,
            change,
            expires_at=lambda session: session.expires_at,
        )

    # rate-limit counters -----------------------------------------------------

    def increment_counter(self, key: str, *, expires_at: datetime) -> int:
        return self.store.increment(RATE_LIMITS, key, expires_at=expires_at)

    def get_counter(self, key: str) -> int:
        entity = self.store.get(RATE_LIMITS, key)
        return int(entity.data.get("count", 0)) if entity else 0

    def delete_counter(self, key: str) -> bool:
        return self.store.delete(RATE_LIMITS, key)

    def purge_expired(self, now: datetime) -> int:
        return self.store.purge_expired(now)
