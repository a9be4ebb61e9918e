"""Effective subscription tier resolution and tier-gated feature lookups.

The stored ``Subscription.tier`` is what billing last granted. What a user
may use right now is the *effective* tier, derived on every read:

1. raw tier ``free`` resolves to ``free``;
2. status ``cancelled`` keeps the paid tier until ``access_until`` (the next
   billing date at cancellation time) has passed, then ``free``;
3. any status other than ``active``/``trial``, or an explicit expiry that has
   passed (``expires_at``, or ``trial_ends_at`` for trials), resolves to ``free``;
4. otherwise the raw tier.

A configurable grace period is added to every expiry comparison. Feature and
limit checks are pure lookups of the effective tier in ``TIER_TABLE``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from linkhub.logging import get_logger
from linkhub.service.audit import AuditLogger, SecurityEvent
from linkhub.service.errors import ForbiddenError, ValidationError
from linkhub.storage.common import decode_ts
from linkhub.storage.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    Tier,
    utcnow,
)
from linkhub.storage.repository import AuthRepository

logger = get_logger(__name__)

UNLIMITED = -1

_BILLING_PERIODS = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.YEARLY: timedelta(days=365),
}


class Feature(str, Enum):
    CUSTOM_THEMES = "custom_themes"
    ANALYTICS = "analytics"
    ADVANCED_ANALYTICS = "advanced_analytics"
    SCHEDULED_LINKS = "scheduled_links"
    REMOVE_BRANDING = "remove_branding"
    CUSTOM_DOMAIN = "custom_domain"
    SUB_ACCOUNTS = "sub_accounts"
    TEAM_MEMBERS = "team_members"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"
    SSO = "sso"


class Limit(str, Enum):
    PAGES = "pages"
    LINKS_PER_PAGE = "links_per_page"
    SUB_ACCOUNTS = "sub_accounts"
    TEAM_MEMBERS = "team_members"
    API_REQUESTS_PER_DAY = "api_requests_per_day"
    ANALYTICS_RETENTION_DAYS = "analytics_retention_days"


class EntitlementReason(str, Enum):
    FREE_TIER = "free_tier"
    ACTIVE = "active"
    TRIAL = "trial"
    CANCELLED_IN_PERIOD = "cancelled_in_period"
    CANCELLED_PERIOD_ENDED = "cancelled_period_ended"
    INACTIVE_STATUS = "inactive_status"
    EXPIRED = "expired"
    TRIAL_ENDED = "trial_ended"
    NO_SUBSCRIPTION = "no_subscription"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class TierCapabilities:
    features: FrozenSet[Feature]
    limits: Mapping[Limit, int]

    def has_feature(self, feature: Feature) -> bool:
        return feature in self.features

    def limit(self, name: Limit) -> int:
        return self.limits.get(name, 0)


@dataclass(frozen=True)
class TierTable:
    """Immutable, versioned tier -> capabilities lookup."""

    version: str
    tiers: Mapping[Tier, TierCapabilities]

    def for_tier(self, tier: Tier) -> TierCapabilities:
        return self.tiers[tier]

    def minimum_tier_for(self, feature: Feature) -> Optional[Tier]:
        for tier in sorted(self.tiers, key=lambda t: t.rank):
            if feature in self.tiers[tier].features:
                return tier
        return None


def _capabilities(features: FrozenSet[Feature], limits: Dict[Limit, int]) -> TierCapabilities:
    return TierCapabilities(features=features, limits=MappingProxyType(dict(limits)))


_FREE_FEATURES = frozenset({Feature.ANALYTICS})
_PRO_FEATURES = _FREE_FEATURES | {
    Feature.CUSTOM_THEMES,
    Feature.SCHEDULED_LINKS,
    Feature.REMOVE_BRANDING,
}
_PREMIUM_FEATURES = _PRO_FEATURES | {
    Feature.ADVANCED_ANALYTICS,
    Feature.CUSTOM_DOMAIN,
    Feature.SUB_ACCOUNTS,
    Feature.API_ACCESS,
}
_ENTERPRISE_FEATURES = _PREMIUM_FEATURES | {
    Feature.TEAM_MEMBERS,
    Feature.PRIORITY_SUPPORT,
    Feature.SSO,
}

TIER_TABLE = TierTable(
    version="2024.2",
    tiers=MappingProxyType(
        {
            Tier.FREE: _capabilities(
                _FREE_FEATURES,
                {
                    Limit.PAGES: 1,
                    Limit.LINKS_PER_PAGE: 10,
                    Limit.SUB_ACCOUNTS: 0,
                    Limit.TEAM_MEMBERS: 0,
                    Limit.API_REQUESTS_PER_DAY: 0,
                    Limit.ANALYTICS_RETENTION_DAYS: 7,
                },
            ),
            Tier.PRO: _capabilities(
                _PRO_FEATURES,
                {
                    Limit.PAGES: 3,
                    Limit.LINKS_PER_PAGE: 50,
                    Limit.SUB_ACCOUNTS: 0,
                    Limit.TEAM_MEMBERS: 0,
                    Limit.API_REQUESTS_PER_DAY: 0,
                    Limit.ANALYTICS_RETENTION_DAYS: 90,
                },
            ),
            Tier.PREMIUM: _capabilities(
                _PREMIUM_FEATURES,
                {
                    Limit.PAGES: 10,
                    Limit.LINKS_PER_PAGE: UNLIMITED,
                    Limit.SUB_ACCOUNTS: 5,
                    Limit.TEAM_MEMBERS: 0,
                    Limit.API_REQUESTS_PER_DAY: 1000,
                    Limit.ANALYTICS_RETENTION_DAYS: 365,
                },
            ),
            Tier.ENTERPRISE: _capabilities(
                _ENTERPRISE_FEATURES,
                {
                    Limit.PAGES: UNLIMITED,
                    Limit.LINKS_PER_PAGE: UNLIMITED,
                    Limit.SUB_ACCOUNTS: UNLIMITED,
                    Limit.TEAM_MEMBERS: 50,
                    Limit.API_REQUESTS_PER_DAY: 100_000,
                    Limit.ANALYTICS_RETENTION_DAYS: UNLIMITED,
                },
            ),
        }
    ),
)


@dataclass(frozen=True)
class Entitlement:
    effective_tier: Tier
    raw_tier: Tier
    status: SubscriptionStatus
    has_access: bool
    access_until: Optional[datetime]
    reason: EntitlementReason


# ============================================================================
# PARSING
# ============================================================================

class SubscriptionParseError(ValueError):
    """Raised when a stored or billing-supplied subscription is malformed."""


def _parse_enum(enum_cls, raw: Mapping[str, Any], key: str, default):
    value = raw.get(key)
    if value is None or value == "":
        return default
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        raise SubscriptionParseError(f"unknown {key}: {value!r}") from exc


def _parse_ts(raw: Mapping[str, Any], key: str) -> Optional[datetime]:
    try:
        return decode_ts(raw.get(key))
    except (TypeError, ValueError) as exc:
        raise SubscriptionParseError(f"invalid {key}: {raw.get(key)!r}") from exc


def parse_subscription(raw: Optional[Mapping[str, Any]]) -> Subscription:
    """Build a Subscription from a stored record; absent fields become None."""
    if raw is None:
        raise SubscriptionParseError("no subscription record")
    if not isinstance(raw, Mapping):
        raise SubscriptionParseError("subscription record must be a mapping")
    provider_customer_id = raw.get("provider_customer_id")
    return Subscription(
        tier=_parse_enum(Tier, raw, "tier", Tier.FREE),
        status=_parse_enum(SubscriptionStatus, raw, "status", SubscriptionStatus.ACTIVE),
        started_at=_parse_ts(raw, "started_at"),
        next_billing_date=_parse_ts(raw, "next_billing_date"),
        cancelled_at=_parse_ts(raw, "cancelled_at"),
        access_until=_parse_ts(raw, "access_until"),
        expires_at=_parse_ts(raw, "expires_at"),
        trial_ends_at=_parse_ts(raw, "trial_ends_at"),
        billing_cycle=_parse_enum(BillingCycle, raw, "billing_cycle", BillingCycle.MONTHLY),
        provider_customer_id=str(provider_customer_id) if provider_customer_id else None,
    )


# ============================================================================
# RESOLUTION
# ============================================================================

def _passed(moment: Optional[datetime], now: datetime, grace: timedelta) -> bool:
    return moment is not None and moment + grace <= now


def resolve(
    subscription: Subscription,
    now: datetime,
    *,
    grace: timedelta = timedelta(0),
) -> Entitlement:
    raw_tier = subscription.tier
    status = subscription.status

    def _entitle(tier: Tier, reason: EntitlementReason, until: Optional[datetime]) -> Entitlement:
        return Entitlement(
            effective_tier=tier,
            raw_tier=raw_tier,
            status=status,
            has_access=tier == raw_tier,
            access_until=until,
            reason=reason,
        )

    if raw_tier == Tier.FREE:
        return _entitle(Tier.FREE, EntitlementReason.FREE_TIER, None)

    if status == SubscriptionStatus.CANCELLED:
        access_until = subscription.access_until or subscription.next_billing_date
        if access_until is None or _passed(access_until, now, grace):
            return _entitle(Tier.FREE, EntitlementReason.CANCELLED_PERIOD_ENDED, access_until)
        return _entitle(raw_tier, EntitlementReason.CANCELLED_IN_PERIOD, access_until)

    if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        return _entitle(Tier.FREE, EntitlementReason.INACTIVE_STATUS, subscription.expires_at)

    if _passed(subscription.expires_at, now, grace):
        return _entitle(Tier.FREE, EntitlementReason.EXPIRED, subscription.expires_at)

    if status == SubscriptionStatus.TRIAL:
        if _passed(subscription.trial_ends_at, now, grace):
            return _entitle(Tier.FREE, EntitlementReason.TRIAL_ENDED, subscription.trial_ends_at)
        return _entitle(
            raw_tier,
            EntitlementReason.TRIAL,
            subscription.trial_ends_at or subscription.expires_at,
        )

    return _entitle(raw_tier, EntitlementReason.ACTIVE, subscription.expires_at)


def resolve_raw(
    raw: Optional[Mapping[str, Any]],
    now: datetime,
    *,
    grace: timedelta = timedelta(0),
) -> Entitlement:
    """Resolve straight from a stored record.

    A missing record is an ordinary free account. A record that fails to parse
    also resolves to ``free``, with reason ``unparseable`` so it is visible.
    """
    if raw is None:
        return Entitlement(
            effective_tier=Tier.FREE,
            raw_tier=Tier.FREE,
            status=SubscriptionStatus.ACTIVE,
            has_access=True,
            access_until=None,
            reason=EntitlementReason.NO_SUBSCRIPTION,
        )
    try:
        subscription = parse_subscription(raw)
    except SubscriptionParseError as exc:
        logger.warning("subscription_unparseable", error=str(exc))
        return Entitlement(
            effective_tier=Tier.FREE,
            raw_tier=Tier.FREE,
            status=SubscriptionStatus.EXPIRED,
            has_access=False,
            access_until=None,
            reason=EntitlementReason.UNPARSEABLE,
        )
    return resolve(subscription, now, grace=grace)


# ============================================================================
# FEATURE / LIMIT LOOKUPS
# ============================================================================

def has_feature(tier: Tier, feature: Feature, table: TierTable = TIER_TABLE) -> bool:
    return table.for_tier(tier).has_feature(feature)


def get_limit(tier: Tier, name: Limit, table: TierTable = TIER_TABLE) -> int:
    """Numeric limit for the tier; ``UNLIMITED`` (-1) means no cap."""
    return table.for_tier(tier).limit(name)


def require_feature(
    entitlement: Entitlement, feature: Feature, table: TierTable = TIER_TABLE
) -> None:
    if has_feature(entitlement.effective_tier, feature, table):
        return
    required = table.minimum_tier_for(feature)
    raise ForbiddenError(
        "feature not available on your plan",
        detail={
            "feature": feature.value,
            "effective_tier": entitlement.effective_tier.value,
            "required_tier": required.value if required else None,
        },
    )


def check_limit(
    tier: Tier, name: Limit, current: int, table: TierTable = TIER_TABLE
) -> int:
    """Raise ForbiddenError if one more item would exceed the tier limit.

    Returns how many more items are allowed (-1 when unlimited).
    """
    limit = get_limit(tier, name, table)
    if limit == UNLIMITED:
        return UNLIMITED
    if current >= limit:
        raise ForbiddenError(
            "plan limit reached",
            detail={"limit": name.value, "max": limit, "current": current, "tier": tier.value},
        )
    return limit - current


# ============================================================================
# BILLING TRANSITIONS
# ============================================================================

@dataclass(frozen=True)
class BillingUpdate:
    """Fields a billing-provider sync may overwrite; None leaves a field as is."""

    tier: Optional[Tier] = None
    status: Optional[SubscriptionStatus] = None
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    access_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    billing_cycle: Optional[BillingCycle] = None
    provider_customer_id: Optional[str] = None


def upgrade(
    subscription: Subscription,
    tier: Tier,
    now: datetime,
    *,
    billing_cycle: Optional[BillingCycle] = None,
) -> Subscription:
    current = resolve(subscription, now).effective_tier
    if tier.rank <= current.rank:
        raise ValidationError(
            "upgrade must move to a higher tier",
            detail={"current_tier": current.value, "requested_tier": tier.value},
        )
    cycle = billing_cycle or subscription.billing_cycle
    return dataclasses.replace(
        subscription,
        tier=tier,
        status=SubscriptionStatus.ACTIVE,
        started_at=now,
        next_billing_date=now + _BILLING_PERIODS[cycle],
        billing_cycle=cycle,
        cancelled_at=None,
        access_until=None,
        expires_at=None,
        trial_ends_at=None,
    )


def downgrade(subscription: Subscription, tier: Tier, now: datetime) -> Subscription:
    if tier.rank >= subscription.tier.rank:
        raise ValidationError(
            "downgrade must move to a lower tier",
            detail={"current_tier": subscription.tier.value, "requested_tier": tier.value},
        )
    if tier == Tier.FREE:
        return Subscription(
            tier=Tier.FREE,
            status=SubscriptionStatus.ACTIVE,
            started_at=now,
            billing_cycle=subscription.billing_cycle,
            provider_customer_id=subscription.provider_customer_id,
        )
    return dataclasses.replace(subscription, tier=tier)


def cancel(subscription: Subscription, now: datetime) -> Subscription:
    """Cancel and keep the paid tier through the period already paid for."""
    if subscription.tier == Tier.FREE:
        raise ValidationError("free plan cannot be cancelled")
    if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        raise ValidationError(
            "only active subscriptions can be cancelled",
            detail={"status": subscription.status.value},
        )
    if subscription.status == SubscriptionStatus.TRIAL:
        access_until = subscription.trial_ends_at or now
    else:
        access_until = subscription.next_billing_date or now
    return dataclasses.replace(
        subscription,
        status=SubscriptionStatus.CANCELLED,
        cancelled_at=now,
        access_until=access_until,
    )


def reactivate(subscription: Subscription, now: datetime) -> Subscription:
    if subscription.status != SubscriptionStatus.CANCELLED:
        raise ValidationError(
            "only cancelled subscriptions can be reactivated",
            detail={"status": subscription.status.value},
        )
    if subscription.access_until is None or subscription.access_until <= now:
        raise ValidationError("paid period has ended; start a new subscription instead")
    return dataclasses.replace(
        subscription,
        status=SubscriptionStatus.ACTIVE,
        cancelled_at=None,
        access_until=None,
    )


def sync_from_billing(subscription: Subscription, update: BillingUpdate) -> Subscription:
    changes = {
        f.name: getattr(update, f.name)
        for f in dataclasses.fields(update)
        if getattr(update, f.name) is not None
    }
    return dataclasses.replace(subscription, **changes)


class SubscriptionService:
    """Loads subscriptions, resolves them live, and applies billing transitions."""

    def __init__(
        self,
        repository: AuthRepository,
        audit: AuditLogger,
        *,
        grace_period: timedelta = timedelta(0),
        table: TierTable = TIER_TABLE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.grace_period = grace_period
        self.table = table
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def create_default(self, user_id: str) -> Subscription:
        subscription = Subscription(tier=Tier.FREE, started_at=self._now())
        return self.repository.save_subscription(user_id, subscription)

    def get(self, user_id: str) -> Subscription:
        """Stored subscription; raises SubscriptionParseError if unreadable."""
        raw = self.repository.get_subscription_data(user_id)
        if raw is None:
            return Subscription(tier=Tier.FREE)
        return parse_subscription(raw)

    def resolve_for_user(self, user_id: str) -> Entitlement:
        raw = self.repository.get_subscription_data(user_id)
        return resolve_raw(raw, self._now(), grace=self.grace_period)

    def capabilities(self, entitlement: Entitlement) -> TierCapabilities:
        return self.table.for_tier(entitlement.effective_tier)

    def _apply(self, user_id: str, action: str, change) -> Subscription:
        before = self.get(user_id)
        after = change(before)
        self.repository.save_subscription(user_id, after)
        self.audit.record(
            SecurityEvent.SUBSCRIPTION_CHANGED,
            outcome="success",
            user_id=user_id,
            action=action,
            from_tier=before.tier.value,
            to_tier=after.tier.value,
            status=after.status.value,
        )
        return after

    def upgrade(
        self, user_id: str, tier: Tier, *, billing_cycle: Optional[BillingCycle] = None
    ) -> Subscription:
        return self._apply(
            user_id,
            "upgrade",
            lambda sub: upgrade(sub, tier, self._now(), billing_cycle=billing_cycle),
        )

    def downgrade(self, user_id: str, tier: Tier) -> Subscription:
        return self._apply(user_id, "downgrade", lambda sub: downgrade(sub, tier, self._now()))

    def cancel(self, user_id: str) -> Subscription:
        return self._apply(user_id, "cancel", lambda sub: cancel(sub, self._now()))

    def reactivate(self, user_id: str) -> Subscription:
        return self._apply(user_id, "reactivate", lambda sub: reactivate(sub, self._now()))

    def sync_from_billing(self, user_id: str, update: BillingUpdate) -> Subscription:
        return self._apply(user_id, "billing_sync", lambda sub: sync_from_billing(sub, update))
