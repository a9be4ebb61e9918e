"""Unit tests for access token issuing and verification."""

import base64
import json

import pytest

from linkhub.service.entitlements import resolve
from linkhub.service.tokens import TokenIssuer
from linkhub.storage.models import (
    CompanyMembership,
    CompanyRole,
    Permission,
    Role,
    Subscription,
    SubscriptionStatus,
    Tier,
    User,
)

SECRET = "token-tests-secret-key-0123456789abcdef"


@pytest.fixture
def issuer(clock):
    return TokenIssuer(SECRET, issuer="linkhub", audience="linkhub-clients", clock=clock)


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="ada@example.com",
        username="ada",
        password_hash="x",
        role=Role.USER,
        permissions=frozenset({Permission.PAGES_WRITE, Permission.BILLING_MANAGE}),
        companies=(CompanyMembership("acme", CompanyRole.OWNER),),
    )


@pytest.fixture
def entitlement(clock):
    return resolve(Subscription(tier=Tier.PRO, status=SubscriptionStatus.ACTIVE), clock())


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssueAccessToken:
    def test_claims_round_trip(self, issuer, user, entitlement, clock):
        issued = issuer.issue_access_token(user, entitlement)
        claims = issuer.decode_access_token(issued.token)

        assert claims is not None
        assert claims.user_id == "user-1"
        assert claims.username == "ada"
        assert claims.role == Role.USER
        assert claims.permissions == frozenset({Permission.PAGES_WRITE, Permission.BILLING_MANAGE})
        assert claims.companies == (CompanyMembership("acme", CompanyRole.OWNER),)
        assert claims.tier == Tier.PRO
        assert claims.has_permission(Permission.BILLING_MANAGE)
        assert not claims.has_permission(Permission.USERS_ADMIN)

    def test_fifteen_minute_lifetime(self, issuer, user, entitlement, clock):
        issued = issuer.issue_access_token(user, entitlement)

        assert (issued.expires_at - clock()).total_seconds() == 15 * 60

    def test_token_carries_no_password_material(self, issuer, user, entitlement):
        payload = _payload(issuer.issue_access_token(user, entitlement).token)

        assert "password_hash" not in payload
        assert "email" not in payload
        assert payload["token_type"] == "access"

    def test_each_token_has_unique_jti(self, issuer, user, entitlement):
        first = _payload(issuer.issue_access_token(user, entitlement).token)
        second = _payload(issuer.issue_access_token(user, entitlement).token)

        assert first["jti"] != second["jti"]

    def test_empty_secret_is_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("", issuer="linkhub", audience="linkhub-clients")


class TestDecodeAccessToken:
    def test_expired_token_is_rejected(self, issuer, user, entitlement, clock):
        token = issuer.issue_access_token(user, entitlement).token
        clock.advance(minutes=16)

        assert issuer.decode_access_token(token) is None

    def test_leeway_covers_small_clock_skew(self, issuer, user, entitlement, clock):
        token = issuer.issue_access_token(user, entitlement).token
        clock.advance(minutes=15, seconds=10)

        assert issuer.decode_access_token(token) is not None

    def test_tampered_signature_is_rejected(self, issuer, user, entitlement):
        token = issuer.issue_access_token(user, entitlement).token
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{'A' if signature[0] != 'A' else 'B'}{signature[1:]}"

        assert issuer.decode_access_token(forged) is None

    def test_other_secret_is_rejected(self, issuer, user, entitlement, clock):
        token = issuer.issue_access_token(user, entitlement).token
        other = TokenIssuer("another-secret-entirely-0123456789", issuer="linkhub",
                            audience="linkhub-clients", clock=clock)

        assert other.decode_access_token(token) is None

    def test_wrong_audience_is_rejected(self, issuer, user, entitlement, clock):
        token = issuer.issue_access_token(user, entitlement).token
        other = TokenIssuer(SECRET, issuer="linkhub", audience="someone-else", clock=clock)

        assert other.decode_access_token(token) is None

    def test_none_algorithm_is_rejected(self, issuer, user, entitlement):
        token = issuer.issue_access_token(user, entitlement).token
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        assert issuer.decode_access_token(f"{header}.{payload}.") is None

    def test_non_access_token_type_is_rejected(self, issuer, clock):
        now = int(clock().timestamp())
        token = issuer._encode_jwt(
            {
                "iss": "linkhub",
                "aud": "linkhub-clients",
                "sub": "user-1",
                "role": "user",
                "iat": now,
                "exp": now + 600,
                "jti": "j",
                "token_type": "refresh",
            }
        )

        assert issuer.decode_access_token(token) is None

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, issuer, token):
        assert issuer.decode_access_token(token) is None

    def test_non_ascii_signature_is_rejected(self, issuer, user, entitlement):
        header, payload, _ = issuer.issue_access_token(user, entitlement).token.split(".")

        assert issuer.decode_access_token(f"{header}.{payload}.é") is None
        assert issuer.decode_access_token(f"{header}.{payload}.\ud800") is None

    def test_non_ascii_header_is_rejected(self, issuer, user, entitlement):
        _, payload, signature = issuer.issue_access_token(user, entitlement).token.split(".")

        assert issuer.decode_access_token(f"é.{payload}.{signature}") is None
