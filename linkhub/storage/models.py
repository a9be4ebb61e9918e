from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUB_ACCOUNT = "sub_account"


class Permission(str, Enum):
    PAGES_WRITE = "pages:write"
    LINKS_WRITE = "links:write"
    APPEARANCE_WRITE = "appearance:write"
    ANALYTICS_READ = "analytics:read"
    BILLING_MANAGE = "billing:manage"
    COMPANY_MANAGE = "company:manage"
    USERS_ADMIN = "users:admin"


class CompanyRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


# Permissions granted to a freshly created account of each role
ROLE_DEFAULT_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.USER: frozenset(
        {
            Permission.PAGES_WRITE,
            Permission.LINKS_WRITE,
            Permission.APPEARANCE_WRITE,
            Permission.ANALYTICS_READ,
            Permission.BILLING_MANAGE,
        }
    ),
    Role.SUB_ACCOUNT: frozenset({Permission.PAGES_WRITE, Permission.LINKS_WRITE}),
    Role.ADMIN: frozenset(Permission),
}


class Tier(str, Enum):
    """Subscription tiers; ordering is by ``rank``, not by string value."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]

    def at_least(self, other: "Tier") -> bool:
        return self.rank >= other.rank


_TIER_RANKS = {Tier.FREE: 0, Tier.PRO: 1, Tier.PREMIUM: 2, Tier.ENTERPRISE: 3}


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    TOTP = "totp"
    BOTH = "both"


class ChallengePurpose(str, Enum):
    LOGIN = "login"
    ENABLE_EMAIL = "enable_email"


@dataclass(frozen=True)
class CompanyMembership:
    company_id: str
    role: CompanyRole = CompanyRole.MEMBER


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    # Only legacy schemes keep a separate salt; argon2 embeds its own
    password_salt: Optional[str] = None
    role: Role = Role.USER
    permissions: FrozenSet[Permission] = frozenset()
    companies: Tuple[CompanyMembership, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Subscription:
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    started_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    access_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    provider_customer_id: Optional[str] = None


@dataclass
class RefreshToken:
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime


@dataclass
class TwoFactorCredential:
    user_id: str
    encrypted_secret: Optional[str] = None
    totp_enabled: bool = False
    email_enabled: bool = False
    backup_code_hashes: Tuple[str, ...] = ()
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def totp_pending(self) -> bool:
        return self.encrypted_secret is not None and not self.totp_enabled

    @property
    def any_enabled(self) -> bool:
        return self.totp_enabled or self.email_enabled


@dataclass
class TwoFactorSession:
    id: str
    user_id: str
    method: TwoFactorMethod
    purpose: ChallengePurpose
    attempts_remaining: int
    created_at: datetime
    expires_at: datetime
    code_hash: Optional[str] = None
    last_resend_at: Optional[datetime] = None

    @property
    def uses_email(self) -> bool:
        return self.method in (TwoFactorMethod.EMAIL, TwoFactorMethod.BOTH)


@dataclass
class Entity:
    """A partition/row keyed record as held by an entity store."""

    partition_key: str
    row_key: str
    data: Dict[str, Any]
    version: int = 1
    expires_at: Optional[datetime] = None
