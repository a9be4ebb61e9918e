"""Unit tests for the two-factor engine.

Covers TOTP generation against RFC 6238 vectors, enrollment for both methods,
login challenges, the attempt budget, backup codes and resend throttling.
"""

import re
from dataclasses import replace

import pytest

from linkhub.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from linkhub.service.two_factor import (
    SecretCipher,
    TwoFactorEngine,
    generate_totp,
    generate_totp_secret,
    provisioning_uri,
    verify_totp,
)
from linkhub.storage.memory import MemoryStore
from linkhub.storage.models import TwoFactorMethod, User
from linkhub.storage.repository import AuthRepository

# base32 of ASCII "12345678901234567890", the RFC 6238 SHA1 seed
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
BACKUP_CODE = re.compile(r"^[0-9a-f]{4}-[0-9a-f]{4}$")


def _wrong_code(secret: str, timestamp: float) -> str:
    valid = {generate_totp(secret, timestamp + step * 30) for step in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


def _other_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def repository():
    return AuthRepository(MemoryStore())


@pytest.fixture
def engine(repository, outbox, clock):
    return TwoFactorEngine(
        repository,
        SecretCipher("two-factor-test-key"),
        outbox,
        hash_key="two-factor-hash-key",
        issuer="LinkHub",
        clock=clock,
    )


@pytest.fixture
def user():
    return User(id="user-1", email="ada@example.com", username="ada", password_hash="x")


def _enable_totp(engine, user, clock):
    setup = engine.setup_totp(user)
    engine.enable_totp(user.id, generate_totp(setup.secret, clock().timestamp()))
    return setup


def _enable_email(engine, user, outbox):
    setup = engine.setup_email(user)
    engine.enable_email(user.id, setup.session_id, outbox.last_code)
    return setup


class TestTotpAlgorithm:
    """RFC 6238 behaviour of the stdlib TOTP implementation."""

    @pytest.mark.parametrize(
        "timestamp, expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_code_verifies_within_one_step(self):
        secret = generate_totp_secret()
        start = 1_700_000_010  # aligned to a 30s step
        code = generate_totp(secret, start)

        assert verify_totp(secret, code, start)
        assert verify_totp(secret, code, start + 29)
        assert not verify_totp(secret, code, start + 61)

    def test_secret_has_160_bits(self):
        secret = generate_totp_secret()

        assert len(secret) == 32
        assert re.fullmatch(r"[A-Z2-7]+", secret)

    @pytest.mark.parametrize(
        "code", ["", "abcdef", "12 456", "\u0661\u0662\u0663\u0664\u0665\u0666", "\uff11" * 6]
    )
    def test_non_numeric_codes_fail(self, code):
        assert not verify_totp(RFC_SECRET, code, 59)

    def test_provisioning_uri(self):
        uri = provisioning_uri("ABCDEF", "ada@example.com", "Link Hub")

        assert uri.startswith("otpauth://totp/Link%20Hub:ada@example.com?")
        assert "secret=ABCDEF" in uri
        assert "algorithm=SHA1" in uri
        assert "digits=6" in uri
        assert "period=30" in uri


class TestSecretCipher:
    def test_round_trip_and_ciphertext_differs(self):
        cipher = SecretCipher("key-material")
        token = cipher.encrypt("JBSWY3DPEHPK3PXP")

        assert token != "JBSWY3DPEHPK3PXP"
        assert cipher.decrypt(token) == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_is_a_server_error(self):
        token = SecretCipher("key-one").encrypt("JBSWY3DPEHPK3PXP")

        with pytest.raises(ServerError):
            SecretCipher("key-two").decrypt(token)


class TestTotpEnrollment:
    def test_setup_returns_secret_uri_and_backup_codes_once(self, engine, user, repository):
        setup = engine.setup_totp(user)

        assert setup.method == TwoFactorMethod.TOTP
        assert setup.provisioning_uri.startswith("otpauth://totp/LinkHub:ada@example.com?")
        assert len(setup.backup_codes) == 10
        assert all(BACKUP_CODE.match(code) for code in setup.backup_codes)
        stored = repository.get_two_factor_credential(user.id)
        assert stored.encrypted_secret != setup.secret
        assert setup.secret not in stored.encrypted_secret
        assert all(code not in stored.backup_code_hashes for code in setup.backup_codes)
        assert engine.status(user.id).totp_pending is True

    def test_enable_with_current_code(self, engine, user, clock):
        _enable_totp(engine, user, clock)

        status = engine.status(user.id)
        assert status.totp_enabled is True
        assert status.totp_pending is False
        assert status.methods == ["totp"]
        assert status.backup_codes_remaining == 10

    def test_enable_accepts_previous_step(self, engine, user, clock):
        setup = engine.setup_totp(user)
        code = generate_totp(setup.secret, clock().timestamp() - 30)

        engine.enable_totp(user.id, code)
        assert engine.status(user.id).totp_enabled is True

    def test_enable_with_wrong_code_is_rejected(self, engine, user, clock):
        setup = engine.setup_totp(user)

        with pytest.raises(ValidationError):
            engine.enable_totp(user.id, _wrong_code(setup.secret, clock().timestamp()))
        assert engine.status(user.id).totp_enabled is False

    def test_enable_without_setup_is_rejected(self, engine, user):
        with pytest.raises(ValidationError):
            engine.enable_totp(user.id, "123456")

    def test_setup_again_after_enable_conflicts(self, engine, user, clock):
        _enable_totp(engine, user, clock)

        with pytest.raises(ConflictError):
            engine.setup_totp(user)


class TestEmailEnrollment:
    def test_setup_sends_code_and_returns_backup_codes(self, engine, user, outbox):
        setup = engine.setup_email(user)

        assert setup.method == TwoFactorMethod.EMAIL
        assert setup.session_id
        assert setup.email_sent is True
        assert len(setup.backup_codes) == 10
        assert outbox.codes[-1][0] == "ada@example.com"
        assert re.fullmatch(r"\d{6}", outbox.last_code)

    def test_setup_still_returns_backup_codes_when_email_fails(
        self, repository, clock, user, failing_outbox
    ):
        engine = TwoFactorEngine(
            repository, SecretCipher("k"), failing_outbox, hash_key="h", clock=clock
        )
        setup = engine.setup_email(user)

        assert setup.email_sent is False
        assert len(setup.backup_codes) == 10

    def test_enable_with_emailed_code(self, engine, user, outbox):
        _enable_email(engine, user, outbox)

        assert engine.status(user.id).email_enabled is True
        assert engine.enabled_method(user.id) == TwoFactorMethod.EMAIL

    def test_enable_with_wrong_code_spends_an_attempt(self, engine, user, outbox):
        setup = engine.setup_email(user)

        with pytest.raises(ValidationError) as excinfo:
            engine.enable_email(user.id, setup.session_id, _other_code(outbox.last_code))
        assert excinfo.value.detail == {"attempts_remaining": 2}

    def test_enable_after_session_expiry_is_rejected(self, engine, user, outbox, clock):
        setup = engine.setup_email(user)
        clock.advance(minutes=11)

        with pytest.raises(ValidationError):
            engine.enable_email(user.id, setup.session_id, outbox.last_code)

    def test_second_method_keeps_existing_backup_codes(self, engine, user, outbox, clock):
        _enable_totp(engine, user, clock)
        setup = engine.setup_email(user)
        engine.enable_email(user.id, setup.session_id, outbox.last_code)

        assert setup.backup_codes == ()
        status = engine.status(user.id)
        assert status.methods == ["totp", "email"]
        assert status.backup_codes_remaining == 10
        assert engine.enabled_method(user.id) == TwoFactorMethod.BOTH


class TestLoginChallenge:
    def test_no_challenge_without_enabled_method(self, engine, user):
        engine.setup_totp(user)

        assert engine.start_login_challenge(user) is None

    def test_totp_challenge_verifies_and_is_single_use(self, engine, user, clock, repository):
        setup = _enable_totp(engine, user, clock)
        challenge = engine.start_login_challenge(user)

        assert challenge.method == TwoFactorMethod.TOTP
        assert challenge.email_sent is False
        result = engine.verify_login(
            challenge.session_id, generate_totp(setup.secret, clock().timestamp())
        )
        assert result.user_id == user.id
        assert result.method == "totp"
        assert repository.get_two_factor_session(challenge.session_id) is None
        with pytest.raises(AuthenticationError):
            engine.verify_login(
                challenge.session_id, generate_totp(setup.secret, clock().timestamp())
            )

    def test_email_challenge_sends_and_verifies_code(self, engine, user, outbox):
        _enable_email(engine, user, outbox)
        challenge = engine.start_login_challenge(user)

        assert challenge.method == TwoFactorMethod.EMAIL
        assert challenge.email_sent is True
        result = engine.verify_login(challenge.session_id, outbox.last_code)
        assert result.method == "email"

    def test_both_methods_accept_totp(self, engine, user, outbox, clock):
        setup = _enable_totp(engine, user, clock)
        _enable_email(engine, user, outbox)
        challenge = engine.start_login_challenge(user)

        assert challenge.method == TwoFactorMethod.BOTH
        result = engine.verify_login(
            challenge.session_id, generate_totp(setup.secret, clock().timestamp())
        )
        assert result.method == "totp"

    def test_third_wrong_code_kills_the_session(self, engine, user, clock, repository):
        setup = _enable_totp(engine, user, clock)
        challenge = engine.start_login_challenge(user)
        wrong = _wrong_code(setup.secret, clock().timestamp())

        for expected_remaining in (2, 1):
            with pytest.raises(AuthenticationError) as excinfo:
                engine.verify_login(challenge.session_id, wrong)
            assert excinfo.value.message == "invalid two-factor code"
            assert excinfo.value.detail == {"attempts_remaining": expected_remaining}

        with pytest.raises(AuthenticationError) as excinfo:
            engine.verify_login(challenge.session_id, wrong)
        assert excinfo.value.message == "too many failed attempts"
        assert repository.get_two_factor_session(challenge.session_id) is None

        with pytest.raises(AuthenticationError) as excinfo:
            engine.verify_login(
                challenge.session_id, generate_totp(setup.secret, clock().timestamp())
            )
        assert excinfo.value.message == "invalid or expired two-factor session"

    def test_non_ascii_digits_spend_an_attempt(self, engine, user, clock):
        _enable_totp(engine, user, clock)
        challenge = engine.start_login_challenge(user)

        with pytest.raises(AuthenticationError) as excinfo:
            engine.verify_login(challenge.session_id, "١٢٣٤٥٦")
        assert excinfo.value.detail == {"attempts_remaining": 2}

    def test_expired_session_is_rejected(self, engine, user, clock):
        setup = _enable_totp(engine, user, clock)
        challenge = engine.start_login_challenge(user)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(AuthenticationError) as excinfo:
            engine.verify_login(
                challenge.session_id, generate_totp(setup.secret, clock().timestamp())
            )
        assert excinfo.value.detail == {}

    def test_enable_email_session_cannot_be_used_for_login(self, engine, user, outbox):
        setup = engine.setup_email(user)

        with pytest.raises(AuthenticationError):
            engine.verify_login(setup.session_id, outbox.last_code)


class TestBackupCodes:
    def test_backup_code_is_single_use(self, engine, user, clock):
        setup = _enable_totp(engine, user, clock)
        code = setup.backup_codes[0]

        first = engine.start_login_challenge(user)
        result = engine.verify_login(first.session_id, code)
        assert result.method == "backup_code"
        assert result.backup_codes_remaining == 9

        second = engine.start_login_challenge(user)
        with pytest.raises(AuthenticationError):
            engine.verify_login(second.session_id, code)
        assert engine.status(user.id).backup_codes_remaining == 9

    def test_backup_code_input_is_normalized(self, engine, user, clock):
        setup = _enable_totp(engine, user, clock)
        code = setup.backup_codes[1].upper().replace("-", "")
        challenge = engine.start_login_challenge(user)

        assert engine.verify_login(challenge.session_id, f" {code} ").method == "backup_code"

    def test_regenerate_replaces_all_codes(self, engine, user, clock):
        setup = _enable_totp(engine, user, clock)
        fresh = engine.regenerate_backup_codes(user.id)

        assert len(fresh) == 10
        assert set(fresh).isdisjoint(setup.backup_codes)
        challenge = engine.start_login_challenge(user)
        with pytest.raises(AuthenticationError):
            engine.verify_login(challenge.session_id, setup.backup_codes[0])
        challenge = engine.start_login_challenge(user)
        assert engine.verify_login(challenge.session_id, fresh[0]).method == "backup_code"

    def test_regenerate_requires_enabled_method(self, engine, user):
        engine.setup_totp(user)

        with pytest.raises(ValidationError):
            engine.regenerate_backup_codes(user.id)


class TestDisable:
    def test_disable_clears_everything_and_is_idempotent(self, engine, user, clock, repository):
        _enable_totp(engine, user, clock)

        assert engine.disable(user.id) is True
        assert engine.disable(user.id) is False
        assert repository.get_two_factor_credential(user.id) is None
        status = engine.status(user.id)
        assert status.methods == []
        assert status.backup_codes_remaining == 0
        assert engine.start_login_challenge(user) is None


class TestResend:
    def test_resend_is_throttled(self, engine, user, outbox):
        _enable_email(engine, user, outbox)
        challenge = engine.start_login_challenge(user)

        with pytest.raises(RateLimitedError) as excinfo:
            engine.resend(challenge.session_id, user.email)
        assert excinfo.value.retry_after == 60

    def test_resend_rotates_the_code(self, engine, user, outbox, clock):
        _enable_email(engine, user, outbox)
        challenge = engine.start_login_challenge(user)
        old_code = outbox.last_code
        clock.advance(seconds=61)

        resent = engine.resend(challenge.session_id, user.email)
        new_code = outbox.last_code
        assert resent.session_id == challenge.session_id
        assert resent.email_sent is True

        if new_code != old_code:
            with pytest.raises(AuthenticationError):
                engine.verify_login(challenge.session_id, old_code)
        assert engine.verify_login(challenge.session_id, new_code).method == "email"

    def test_resend_needs_email_session(self, engine, user, clock):
        _enable_totp(engine, user, clock)
        challenge = engine.start_login_challenge(user)

        with pytest.raises(ValidationError):
            engine.resend(challenge.session_id, user.email)

    def test_resend_unknown_session(self, engine, user):
        with pytest.raises(AuthenticationError):
            engine.resend("missing", user.email)


class TestSecretCorruption:
    def test_undecryptable_secret_is_a_server_error(self, engine, user, clock, repository):
        _enable_totp(engine, user, clock)
        cred = repository.get_two_factor_credential(user.id)
        repository.save_two_factor_credential(replace(cred, encrypted_secret="garbage"))
        challenge = engine.start_login_challenge(user)

        with pytest.raises(ServerError):
            engine.verify_login(challenge.session_id, "123456")
