import pytest

from gatekeep.service import totp
from gatekeep.service.errors import (
    AuthenticationError,
    AuthFailureReason,
    EntityNotFoundError,
    OtpInvalidError,
)
from gatekeep.service.two_factor import TwoFactorEnrollment


@pytest.fixture
def enrollment(memory_store, settings, clock):
    return TwoFactorEnrollment(memory_store, settings, clock=clock)


def test_setup_enables_and_stores_secret(enrollment, memory_store, test_user):
    setup = enrollment.setup_two_factor_auth(test_user.id)

    stored = memory_store.get_user(test_user.id)
    assert stored.otp_enabled is True
    assert stored.otp_secret == setup.secret
    assert setup.otpauth_url.startswith("otpauth://totp/Gatekeep:test@example.com?")
    assert f"secret={setup.secret}" in setup.otpauth_url
    assert "issuer=Gatekeep" in setup.otpauth_url
    assert setup.qr_code_url.startswith("data:image/png;base64,")


def test_setup_again_rotates_secret(enrollment, memory_store, test_user):
    first = enrollment.setup_two_factor_auth(test_user.id)
    second = enrollment.setup_two_factor_auth(test_user.id)
    assert first.secret != second.secret
    assert memory_store.get_user(test_user.id).otp_secret == second.secret


def test_verify_accepts_authenticator_code(enrollment, test_user, clock):
    setup = enrollment.setup_two_factor_auth(test_user.id)
    code = totp.totp(setup.secret, clock().timestamp())
    assert enrollment.verify_two_factor_token(test_user.id, code) is True
    # persistent enrollment: the same code stays valid within its step
    assert enrollment.verify_two_factor_token(test_user.id, code) is True


def test_verify_rejects_wrong_code(enrollment, test_user, clock):
    setup = enrollment.setup_two_factor_auth(test_user.id)
    counter = int(clock().timestamp() // 30)
    accepted = {totp.hotp(setup.secret, c) for c in (counter - 1, counter, counter + 1)}
    wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)
    with pytest.raises(OtpInvalidError):
        enrollment.verify_two_factor_token(test_user.id, wrong)


def test_verify_without_enrollment(enrollment, test_user):
    with pytest.raises(AuthenticationError) as exc:
        enrollment.verify_two_factor_token(test_user.id, "123456")
    assert exc.value.reason is AuthFailureReason.DISABLED


def test_disable_clears_secret(enrollment, memory_store, test_user, clock):
    setup = enrollment.setup_two_factor_auth(test_user.id)
    updated = enrollment.disable_two_factor_auth(test_user.id)

    assert updated.otp_enabled is False
    assert updated.otp_secret is None
    code = totp.totp(setup.secret, clock().timestamp())
    with pytest.raises(AuthenticationError) as exc:
        enrollment.verify_two_factor_token(test_user.id, code)
    assert exc.value.reason is AuthFailureReason.DISABLED


def test_disable_is_idempotent(enrollment, test_user):
    enrollment.disable_two_factor_auth(test_user.id)
    assert enrollment.disable_two_factor_auth(test_user.id).otp_enabled is False


@pytest.mark.parametrize(
    "operation",
    ["setup_two_factor_auth", "disable_two_factor_auth"],
)
def test_unknown_user(enrollment, operation):
    with pytest.raises(EntityNotFoundError):
        getattr(enrollment, operation)("missing-user")


def test_verify_unknown_user(enrollment):
    with pytest.raises(EntityNotFoundError):
        enrollment.verify_two_factor_token("missing-user", "123456")
