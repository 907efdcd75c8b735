"""
Unit tests for MfaService

Tests:
- TOTP enrollment, confirmation and verification
- SMS/email code send, expiry and single use
- Backup code redemption and regeneration
- Gated destructive actions
- Infrastructure error propagation and audit degradation
"""

import pytest
from unittest.mock import Mock

from mfa_service.core.exceptions import ChannelDeliveryError, CredentialStoreError, MalformedSecretError
from mfa_service.models.mfa import MfaMethodState, MfaMethodType
from mfa_service.services.credential_store import CredentialStore
from mfa_service.services.mfa_service import MfaService
from mfa_service.services.rate_limiter import AttemptLimiter
from mfa_service.utils.security import generate_totp_secret, totp_code_at


USER_ID = "user-42"
PHONE = "+15551234567"
EMAIL = "trader@example.com"


@pytest.fixture
def enrolled(mfa_service, clock):
    """Start TOTP enrollment and return the enrollment artifacts"""
    return mfa_service.start_totp_enrollment(USER_ID, EMAIL)


@pytest.fixture
def active_totp(mfa_service, enrolled, clock, audit_sink):
    """Enrolled and confirmed TOTP; audit history cleared"""
    assert mfa_service.confirm_totp_enrollment(USER_ID, totp_code_at(enrolled.secret, clock()))
    audit_sink.reset_mock()
    return enrolled


def current_code(enrollment, clock, step_offset=0):
    return totp_code_at(enrollment.secret, clock(), step_offset=step_offset)


def wrong_code(code):
    return str((int(code) + 1) % 1000000).zfill(6)


class TestTotpEnrollment:
    """Test TOTP enrollment start and confirmation"""

    def test_start_returns_artifacts(self, enrolled):
        assert len(enrolled.secret) == 32
        assert enrolled.provisioning_uri.startswith("otpauth://totp/")
        assert enrolled.qr_code_data_uri.startswith("data:image/png;base64,")
        assert enrolled.issuer == "SmartStore AI"
        assert enrolled.account_name == EMAIL
        assert len(enrolled.backup_codes) == 10
        assert all(len(code) == 8 and code.isdigit() for code in enrolled.backup_codes)

    def test_start_stores_pending_method(self, mfa_service, enrolled, store, audit_labels):
        method = store.get(USER_ID, MfaMethodType.TOTP)

        assert method.state == MfaMethodState.PENDING
        assert method.secret_or_code == enrolled.secret
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10
        assert audit_labels() == ["totp_enrollment_started:success"]

    def test_start_requires_account_label(self, mfa_service):
        with pytest.raises(ValueError):
            mfa_service.start_totp_enrollment(USER_ID, "  ")

    def test_restart_replaces_secret_and_backup_codes(self, mfa_service, enrolled):
        second = mfa_service.start_totp_enrollment(USER_ID, EMAIL)

        assert second.secret != enrolled.secret
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10
        assert mfa_service.verify_backup_code(USER_ID, enrolled.backup_codes[0]) is False

    def test_start_refused_when_active(self, mfa_service, active_totp, store, audit_labels):
        with pytest.raises(ValueError, match="already enabled"):
            mfa_service.start_totp_enrollment(USER_ID, EMAIL)

        method = store.get(USER_ID, MfaMethodType.TOTP)
        assert method.state == MfaMethodState.ACTIVE
        assert method.secret_or_code == active_totp.secret
        assert audit_labels() == ["totp_enrollment_started:failure"]
        assert mfa_service.verify_backup_code(USER_ID, active_totp.backup_codes[0]) is True

    def test_confirm_activates(self, mfa_service, enrolled, clock, store, audit_labels):
        # Act
        result = mfa_service.confirm_totp_enrollment(USER_ID, current_code(enrolled, clock))

        # Assert
        assert result is True
        method = store.get(USER_ID, MfaMethodType.TOTP)
        assert method.state == MfaMethodState.ACTIVE
        assert method.last_used_at == clock()
        assert audit_labels()[-1] == "totp_enabled:success"

    def test_confirm_accepts_two_step_skew(self, mfa_service, enrolled, clock):
        assert mfa_service.confirm_totp_enrollment(USER_ID, current_code(enrolled, clock, step_offset=-2)) is True

    def test_confirm_wrong_code_keeps_pending(self, mfa_service, enrolled, clock, store, audit_sink):
        code = current_code(enrolled, clock)

        assert mfa_service.confirm_totp_enrollment(USER_ID, wrong_code(code)) is False

        assert store.get(USER_ID, MfaMethodType.TOTP).state == MfaMethodState.PENDING
        event = audit_sink.record.call_args.args[0]
        assert event.label == "totp_enabled:failure"
        assert event.details["reason"] == "invalid_code"

        # Still retryable
        assert mfa_service.confirm_totp_enrollment(USER_ID, code) is True

    def test_confirm_without_enrollment(self, mfa_service, audit_sink):
        assert mfa_service.confirm_totp_enrollment(USER_ID, "123456") is False

        event = audit_sink.record.call_args.args[0]
        assert event.details["reason"] == "no_pending_enrollment"

    def test_validate_setup_with_consecutive_codes(self, mfa_service, enrolled, clock, audit_labels):
        codes = [current_code(enrolled, clock, step_offset=-1), current_code(enrolled, clock)]

        assert mfa_service.validate_totp_setup(USER_ID, codes) is True
        assert audit_labels()[-1] == "totp_setup_validated:success"

    def test_validate_setup_does_not_activate(self, mfa_service, enrolled, clock, store):
        codes = [current_code(enrolled, clock, step_offset=-1), current_code(enrolled, clock)]

        assert mfa_service.validate_totp_setup(USER_ID, codes) is True

        assert store.get(USER_ID, MfaMethodType.TOTP).state == MfaMethodState.PENDING
        assert mfa_service.disable_all_mfa(USER_ID, current_code(enrolled, clock)) is False

    def test_validate_setup_needs_two_distinct_codes(self, mfa_service, enrolled, clock):
        code = current_code(enrolled, clock)

        assert mfa_service.validate_totp_setup(USER_ID, [code, code]) is False
        assert mfa_service.validate_totp_setup(USER_ID, [code, wrong_code(code)]) is False

    def test_manual_entry_qr(self, mfa_service, enrolled):
        assert mfa_service.generate_manual_entry_qr(enrolled.secret, EMAIL).startswith("data:image/png;base64,")


class TestTotpVerification:
    """Test TOTP verification"""

    def test_enroll_confirm_verify(self, mfa_service, clock):
        # Arrange
        enrollment = mfa_service.start_totp_enrollment(USER_ID, EMAIL)
        assert mfa_service.confirm_totp_enrollment(USER_ID, current_code(enrollment, clock))

        # Act
        clock.advance(seconds=60)
        result = mfa_service.verify_totp(USER_ID, current_code(enrollment, clock))

        # Assert
        assert result is True
        assert mfa_service.has_mfa_enabled(USER_ID) is True

    def test_adjacent_step_accepted(self, mfa_service, active_totp, clock):
        assert mfa_service.verify_totp(USER_ID, current_code(active_totp, clock, step_offset=-1)) is True

    def test_code_outside_window_rejected(self, mfa_service, active_totp, clock, audit_labels):
        code = current_code(active_totp, clock, step_offset=-3)
        if code in {current_code(active_totp, clock, step_offset=o) for o in (-1, 0, 1)}:
            pytest.skip("codes collided")

        assert mfa_service.verify_totp(USER_ID, code) is False
        assert audit_labels() == ["totp_verification_failed:failure"]

    def test_success_updates_last_used(self, mfa_service, active_totp, clock, store, audit_labels):
        clock.advance(minutes=3)

        assert mfa_service.verify_totp(USER_ID, current_code(active_totp, clock)) is True

        assert store.get(USER_ID, MfaMethodType.TOTP).last_used_at == clock()
        assert audit_labels() == ["totp_verified:success"]

    def test_not_enrolled_returns_false_without_audit(self, mfa_service, audit_sink):
        assert mfa_service.verify_totp(USER_ID, "123456") is False
        audit_sink.record.assert_not_called()

    def test_pending_enrollment_is_not_verified(self, mfa_service, enrolled, clock, audit_sink):
        audit_sink.reset_mock()

        assert mfa_service.verify_totp(USER_ID, current_code(enrolled, clock)) is False
        audit_sink.record.assert_not_called()

    def test_malformed_secret_raises(self, mfa_service, store, audit_labels):
        store.upsert(USER_ID, MfaMethodType.TOTP, "not-base32!!", state=MfaMethodState.ACTIVE)

        with pytest.raises(MalformedSecretError):
            mfa_service.verify_totp(USER_ID, "123456")

        assert audit_labels() == ["totp_verification_error:error"]


class TestSmsCodes:
    """Test SMS code send and verification"""

    def sent_code(self, sms_sender):
        phone, code = sms_sender.send.call_args.args
        assert phone == PHONE
        return code

    def test_send_and_verify(self, mfa_service, sms_sender, store, audit_labels):
        # Act
        assert mfa_service.send_sms_code(USER_ID, PHONE) is True
        code = self.sent_code(sms_sender)

        # Assert
        assert len(code) == 6 and code.isdigit()
        method = store.get(USER_ID, MfaMethodType.SMS)
        assert method.destination == PHONE
        assert mfa_service.verify_sms_code(USER_ID, code) is True
        assert audit_labels() == ["sms_code_sent:success", "sms_verified:success"]

    def test_audit_details_mask_destination(self, mfa_service, audit_sink):
        mfa_service.send_sms_code(USER_ID, PHONE)

        event = audit_sink.record.call_args.args[0]
        assert event.details["destination"] == "+1********67"
        assert PHONE not in event.model_dump_json()

    def test_code_is_single_use(self, mfa_service, sms_sender, audit_sink):
        mfa_service.send_sms_code(USER_ID, PHONE)
        code = self.sent_code(sms_sender)

        assert mfa_service.verify_sms_code(USER_ID, code) is True
        assert mfa_service.verify_sms_code(USER_ID, code) is False

        event = audit_sink.record.call_args.args[0]
        assert event.label == "sms_verification_failed:failure"
        assert event.details["reason"] == "no_outstanding_code"

    def test_code_valid_at_exactly_validity(self, mfa_service, sms_sender, clock):
        mfa_service.send_sms_code(USER_ID, PHONE)
        code = self.sent_code(sms_sender)

        clock.advance(minutes=5)

        assert mfa_service.verify_sms_code(USER_ID, code) is True

    def test_code_expires(self, mfa_service, sms_sender, clock, store, audit_sink):
        mfa_service.send_sms_code(USER_ID, PHONE)
        code = self.sent_code(sms_sender)

        clock.advance(minutes=5, seconds=1)

        assert mfa_service.verify_sms_code(USER_ID, code) is False
        assert audit_sink.record.call_args.args[0].details["reason"] == "expired_code"
        assert store.get(USER_ID, MfaMethodType.SMS).secret_or_code is None

    def test_wrong_code_keeps_outstanding_code(self, mfa_service, sms_sender, audit_sink):
        mfa_service.send_sms_code(USER_ID, PHONE)
        code = self.sent_code(sms_sender)

        assert mfa_service.verify_sms_code(USER_ID, wrong_code(code)) is False
        assert audit_sink.record.call_args.args[0].details["reason"] == "invalid_code"
        assert mfa_service.verify_sms_code(USER_ID, code) is True

    def test_resend_replaces_code(self, mfa_service, sms_sender):
        mfa_service.send_sms_code(USER_ID, PHONE)
        first = self.sent_code(sms_sender)
        mfa_service.send_sms_code(USER_ID, PHONE)
        second = self.sent_code(sms_sender)
        if first == second:
            pytest.skip("codes collided")

        assert mfa_service.verify_sms_code(USER_ID, first) is False
        assert mfa_service.verify_sms_code(USER_ID, second) is True

    def test_delivery_failure_returns_false(self, mfa_service, sms_sender, store, audit_sink):
        sms_sender.send.side_effect = ChannelDeliveryError("gateway down", channel="sms")

        assert mfa_service.send_sms_code(USER_ID, PHONE) is False

        event = audit_sink.record.call_args.args[0]
        assert event.label == "sms_code_sent:error"
        assert event.details["stage"] == "delivery"
        assert store.get(USER_ID, MfaMethodType.SMS).secret_or_code is not None

    def test_verify_without_send(self, mfa_service, audit_sink):
        assert mfa_service.verify_sms_code(USER_ID, "123456") is False
        audit_sink.record.assert_not_called()

    def test_sweep_clears_expired_codes(self, mfa_service, clock, store):
        mfa_service.send_sms_code(USER_ID, PHONE)
        clock.advance(minutes=6)

        assert mfa_service.sweep_expired_codes() == 1
        assert store.get(USER_ID, MfaMethodType.SMS).secret_or_code is None


class TestEmailCodes:
    """Test email code send and verification"""

    def test_send_and_verify(self, mfa_service, email_sender, audit_labels):
        assert mfa_service.send_email_code(USER_ID, EMAIL) is True

        email, subject, body = email_sender.send.call_args.args
        assert email == EMAIL
        assert subject == "Verification Code"
        assert "5 minutes" in body

        store_code = [token for token in body.split() if token.isdigit() and len(token) == 6][0]
        assert mfa_service.verify_email_code(USER_ID, store_code) is True
        assert audit_labels() == ["email_code_sent:success", "email_verified:success"]

    def test_email_and_sms_codes_independent(self, mfa_service, email_sender, sms_sender):
        mfa_service.send_email_code(USER_ID, EMAIL)
        mfa_service.send_sms_code(USER_ID, PHONE)
        _, sms_code = sms_sender.send.call_args.args

        assert mfa_service.verify_sms_code(USER_ID, sms_code) is True
        assert mfa_service.has_mfa_enabled(USER_ID) is True
        assert len(mfa_service.list_mfa_methods(USER_ID)) == 2


class TestBackupCodes:
    """Test backup code redemption and regeneration"""

    def test_backup_code_single_use(self, mfa_service, enrolled, audit_labels):
        code = enrolled.backup_codes[0]

        assert mfa_service.verify_backup_code(USER_ID, code) is True
        assert mfa_service.verify_backup_code(USER_ID, code) is False
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 9
        assert audit_labels()[-2:] == ["backup_code_verified:success", "backup_code_verification_failed:failure"]

    def test_backup_code_with_dashes(self, mfa_service, enrolled):
        code = enrolled.backup_codes[1]
        assert mfa_service.verify_backup_code(USER_ID, f"{code[:4]}-{code[4:]}") is True

    def test_unknown_backup_code(self, mfa_service, enrolled):
        unused = {"00000000", "99999999"} - set(enrolled.backup_codes)
        assert mfa_service.verify_backup_code(USER_ID, unused.pop()) is False
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10

    def test_regenerate_replaces_set(self, mfa_service, active_totp, clock, audit_labels):
        # Act
        new_codes = mfa_service.regenerate_backup_codes(USER_ID, current_code(active_totp, clock))

        # Assert
        assert len(new_codes) == 10
        assert set(new_codes).isdisjoint(active_totp.backup_codes)
        assert mfa_service.verify_backup_code(USER_ID, active_totp.backup_codes[0]) is False
        assert mfa_service.verify_backup_code(USER_ID, new_codes[0]) is True
        assert "backup_codes_regenerated:success" in audit_labels()

    def test_regenerate_with_wrong_code_changes_nothing(self, mfa_service, active_totp, clock):
        result = mfa_service.regenerate_backup_codes(USER_ID, wrong_code(current_code(active_totp, clock)))

        assert result is None
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10
        assert mfa_service.verify_backup_code(USER_ID, active_totp.backup_codes[0]) is True

    def test_regenerate_rejects_backup_code_as_gate(self, mfa_service, active_totp):
        assert mfa_service.regenerate_backup_codes(USER_ID, active_totp.backup_codes[0]) is None


class TestDisable:
    """Test gated teardown"""

    def test_disable_totp(self, mfa_service, active_totp, clock, store, audit_labels):
        assert mfa_service.disable_totp(USER_ID, current_code(active_totp, clock)) is True

        assert store.get(USER_ID, MfaMethodType.TOTP) is None
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 0
        assert audit_labels() == ["totp_verified:success", "totp_disabled:success"]

    def test_disable_totp_wrong_code_keeps_method(self, mfa_service, active_totp, clock, store):
        assert mfa_service.disable_totp(USER_ID, wrong_code(current_code(active_totp, clock))) is False

        assert store.get(USER_ID, MfaMethodType.TOTP) is not None
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10

    def test_disable_all(self, mfa_service, active_totp, clock, audit_sink):
        mfa_service.send_sms_code(USER_ID, PHONE)
        mfa_service.send_email_code(USER_ID, EMAIL)

        assert mfa_service.disable_all_mfa(USER_ID, current_code(active_totp, clock)) is True

        assert mfa_service.has_mfa_enabled(USER_ID) is False
        assert mfa_service.list_mfa_methods(USER_ID) == []
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 0
        event = audit_sink.record.call_args.args[0]
        assert event.label == "all_mfa_disabled:success"
        assert event.details["methods_removed"] == 3

    def test_disable_all_wrong_code_changes_nothing(self, mfa_service, active_totp, clock):
        mfa_service.send_sms_code(USER_ID, PHONE)

        assert mfa_service.disable_all_mfa(USER_ID, wrong_code(current_code(active_totp, clock))) is False

        assert len(mfa_service.list_mfa_methods(USER_ID)) == 2
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10

    def test_disable_all_without_totp(self, mfa_service):
        mfa_service.send_sms_code(USER_ID, PHONE)

        assert mfa_service.disable_all_mfa(USER_ID, "123456") is False
        assert mfa_service.has_mfa_enabled(USER_ID) is True

    def test_pending_enrollment_does_not_pass_gate(self, mfa_service, enrolled, clock):
        assert mfa_service.disable_totp(USER_ID, current_code(enrolled, clock)) is False
        assert mfa_service.regenerate_backup_codes(USER_ID, current_code(enrolled, clock)) is None
        assert mfa_service.disable_all_mfa(USER_ID, current_code(enrolled, clock)) is False
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 10

    def test_reenrollment_cannot_take_over_active_account(self, mfa_service, active_totp, clock):
        mfa_service.send_sms_code(USER_ID, PHONE)

        with pytest.raises(ValueError):
            mfa_service.start_totp_enrollment(USER_ID, "attacker@example.com")
        foreign_code = totp_code_at(generate_totp_secret(), clock())
        if foreign_code == current_code(active_totp, clock):
            pytest.skip("codes collided")

        assert mfa_service.disable_all_mfa(USER_ID, foreign_code) is False
        assert len(mfa_service.list_mfa_methods(USER_ID)) == 2
        assert mfa_service.verify_backup_code(USER_ID, active_totp.backup_codes[0]) is True


class TestStatus:
    """Test status queries"""

    def test_new_user_has_no_mfa(self, mfa_service):
        assert mfa_service.has_mfa_enabled(USER_ID) is False
        assert mfa_service.get_backup_codes_remaining(USER_ID) == 0

    def test_pending_enrollment_counts_as_enabled(self, mfa_service, enrolled):
        assert mfa_service.has_mfa_enabled(USER_ID) is True

    def test_list_methods(self, mfa_service, active_totp):
        methods = mfa_service.list_mfa_methods(USER_ID)

        assert len(methods) == 1
        assert methods[0].type == "totp"
        assert methods[0].state == "active"


class TestInfrastructureFailures:
    """Test store errors, audit sink failures and attempt limiting"""

    @pytest.fixture
    def broken_store(self):
        store = Mock(spec=CredentialStore)
        store.get.side_effect = CredentialStoreError("database unavailable", operation="get")
        store.upsert.side_effect = CredentialStoreError("database unavailable", operation="upsert")
        return store

    @pytest.fixture
    def broken_service(self, broken_store, sms_sender, email_sender, audit_sink, clock):
        return MfaService(
            store=broken_store,
            sms_sender=sms_sender,
            email_sender=email_sender,
            audit_sink=audit_sink,
            clock=clock,
        )

    def test_verify_totp_store_error_raises(self, broken_service, audit_labels):
        with pytest.raises(CredentialStoreError):
            broken_service.verify_totp(USER_ID, "123456")

        assert audit_labels() == ["totp_verification_error:error"]

    def test_verify_sms_store_error_raises(self, broken_service, audit_labels):
        with pytest.raises(CredentialStoreError):
            broken_service.verify_sms_code(USER_ID, "123456")

        assert audit_labels() == ["sms_verification_error:error"]

    def test_send_store_error_raises_without_delivery(self, broken_service, sms_sender, audit_sink):
        with pytest.raises(CredentialStoreError):
            broken_service.send_sms_code(USER_ID, PHONE)

        sms_sender.send.assert_not_called()
        assert audit_sink.record.call_args.args[0].details["stage"] == "store"

    def test_delete_error_leaves_gate_result(self, mfa_service, active_totp, clock, store, monkeypatch):
        monkeypatch.setattr(
            store,
            "delete_all",
            Mock(side_effect=CredentialStoreError("database unavailable", operation="delete_all"))
        )

        with pytest.raises(CredentialStoreError):
            mfa_service.disable_all_mfa(USER_ID, current_code(active_totp, clock))

        assert mfa_service.has_mfa_enabled(USER_ID) is True

    def test_audit_sink_failure_does_not_fail_operation(self, mfa_service, active_totp, clock, audit_sink):
        audit_sink.record.side_effect = RuntimeError("sink down")

        assert mfa_service.verify_totp(USER_ID, current_code(active_totp, clock)) is True

    def test_rate_limited_attempt(self, store, sms_sender, email_sender, audit_sink, clock, audit_labels):
        limiter = Mock(spec=AttemptLimiter)
        limiter.allow.return_value = False
        service = MfaService(
            store=Mock(spec=CredentialStore),
            sms_sender=sms_sender,
            email_sender=email_sender,
            audit_sink=audit_sink,
            attempt_limiter=limiter,
            clock=clock,
        )

        assert service.verify_totp(USER_ID, "123456") is False

        limiter.allow.assert_called_once_with(USER_ID, "totp")
        service.store.get.assert_not_called()
        assert audit_labels() == ["mfa_rate_limited:failure"]
