"""Tests for the resend rate limiter and the OTP usability validator."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.errors import OTPExpiredError, TooManyAttemptsError
from authcore.service.otp import OTPValidator, ResendRateLimiter
from authcore.storage.models import OTPPurpose, OTPRecord

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _record(**overrides):
    values = dict(
        id=1,
        email="a@student.example.edu",
        purpose=OTPPurpose.REGISTRATION,
        code_hash="x",
        expires_at=NOW + timedelta(minutes=10),
        max_attempts=5,
    )
    values.update(overrides)
    return OTPRecord(**values)


class TestResendRateLimiter:
    def test_first_resend_allowed(self):
        limiter = ResendRateLimiter(max_resends=5, cooldown_seconds=60)

        assert limiter.can_resend(0, None, NOW) == (True, 0)

    def test_exact_cooldown_boundary_is_allowed(self):
        limiter = ResendRateLimiter(max_resends=5, cooldown_seconds=60)

        allowed, retry_after = limiter.can_resend(1, NOW - timedelta(seconds=60), NOW)

        assert allowed is True
        assert retry_after == 0

    def test_within_cooldown_is_refused_with_retry_after(self):
        limiter = ResendRateLimiter(max_resends=5, cooldown_seconds=60)

        allowed, retry_after = limiter.can_resend(1, NOW - timedelta(seconds=45), NOW)

        assert allowed is False
        assert retry_after == 15

    def test_retry_after_rounds_up(self):
        limiter = ResendRateLimiter(max_resends=5, cooldown_seconds=60)

        allowed, retry_after = limiter.can_resend(
            1, NOW - timedelta(seconds=59, milliseconds=500), NOW
        )

        assert allowed is False
        assert retry_after == 1

    @pytest.mark.parametrize("count", [5, 6, 100])
    def test_count_ceiling_refuses_even_after_cooldown(self, count):
        limiter = ResendRateLimiter(max_resends=5, cooldown_seconds=60)

        allowed, retry_after = limiter.can_resend(count, NOW - timedelta(hours=1), NOW)

        assert allowed is False
        assert retry_after == 0

    def test_both_conditions_required(self):
        limiter = ResendRateLimiter(max_resends=2, cooldown_seconds=30)

        assert limiter.can_resend(1, NOW - timedelta(seconds=31), NOW)[0] is True
        assert limiter.can_resend(2, None, NOW)[0] is False
        assert limiter.can_resend(1, NOW - timedelta(seconds=10), NOW)[0] is False


class TestOTPValidator:
    def test_usable_below_ceiling(self):
        assert OTPValidator.is_usable(4, 5) is True
        assert OTPValidator.is_usable(5, 5) is False

    def test_check_passes_for_fresh_record(self):
        OTPValidator(5, 10).check(_record(), NOW)

    def test_exhausted_record_reports_too_many_attempts(self):
        with pytest.raises(TooManyAttemptsError):
            OTPValidator(5, 10).check(_record(attempts=5), NOW)

    def test_attempts_checked_before_expiry(self):
        record = _record(attempts=5, expires_at=NOW - timedelta(minutes=1))

        with pytest.raises(TooManyAttemptsError):
            OTPValidator(5, 10).check(record, NOW)

    def test_expired_record(self):
        with pytest.raises(OTPExpiredError):
            OTPValidator(5, 10).check(_record(expires_at=NOW), NOW)

    def test_stored_ceiling_wins_over_configured(self):
        # Records keep the ceiling they were created with
        with pytest.raises(TooManyAttemptsError):
            OTPValidator(10, 10).check(_record(attempts=3, max_attempts=3), NOW)

    def test_expires_at(self):
        assert OTPValidator(5, 10).expires_at(NOW) == NOW + timedelta(minutes=10)


class TestOTPRecord:
    @pytest.mark.parametrize("attempts, remaining", [(0, 5), (4, 1), (5, 0), (7, 0)])
    def test_remaining_attempts_never_negative(self, attempts, remaining):
        assert _record(attempts=attempts).remaining_attempts == remaining

    def test_expiry_is_inclusive(self):
        record = _record()

        assert record.is_expired(NOW + timedelta(minutes=10)) is True
        assert record.is_expired(NOW + timedelta(minutes=9, seconds=59)) is False
