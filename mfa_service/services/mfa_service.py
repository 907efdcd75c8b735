"""
MFA Service - enrollment, verification and teardown of second factors

Supports TOTP (RFC 6238) authenticator apps, SMS codes, email codes and
single-use backup codes.

Result conventions:
- Wrong, expired, already-used or unknown codes return False (or None for
  backup code regeneration). These are expected outcomes, not errors.
- Store, channel and secret-material failures raise MfaInfrastructureError
  subclasses, after an "error" audit event has been emitted.
- Destructive actions (disable TOTP, disable all, regenerate backup codes)
  first pass a fresh TOTP verification. If the gate fails nothing changes.

The service keeps no per-user state between calls; the credential store is
the only source of truth, so one instance can serve every request or a new
one can be built per request.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from mfa_service.core.config import settings
from mfa_service.core.exceptions import ChannelDeliveryError, MfaInfrastructureError
from mfa_service.metrics import mfa_codes_sent_total, mfa_state_changes_total, mfa_verifications_total
from mfa_service.models.mfa import MfaMethod, MfaMethodState, MfaMethodType
from mfa_service.schemas.events import AuditResult, MfaAction
from mfa_service.schemas.mfa import MfaMethodSummary, TotpEnrollment
from mfa_service.services.audit_service import AuditSink, build_audit_event
from mfa_service.services.channels import EmailSender, SmsSender, render_code_email
from mfa_service.services.credential_store import CredentialStore
from mfa_service.services.rate_limiter import AttemptLimiter, NoopAttemptLimiter
from mfa_service.utils.security import (
    build_provisioning_uri,
    constant_time_compare,
    generate_backup_codes,
    generate_numeric_code,
    generate_qr_code_data_uri,
    generate_totp_secret,
    hash_backup_code,
    mask_email,
    mask_phone,
    normalize_code,
    verify_totp as verify_totp_code,
)

logger = logging.getLogger(__name__)


# Audit actions per transient channel: (sent, verified, failed, error)
_CHANNEL_ACTIONS = {
    MfaMethodType.SMS: (
        MfaAction.SMS_CODE_SENT,
        MfaAction.SMS_VERIFIED,
        MfaAction.SMS_VERIFICATION_FAILED,
        MfaAction.SMS_VERIFICATION_ERROR,
    ),
    MfaMethodType.EMAIL: (
        MfaAction.EMAIL_CODE_SENT,
        MfaAction.EMAIL_VERIFIED,
        MfaAction.EMAIL_VERIFICATION_FAILED,
        MfaAction.EMAIL_VERIFICATION_ERROR,
    ),
}


class MfaService:
    """Service for MFA enrollment and verification"""

    def __init__(
        self,
        store: CredentialStore,
        sms_sender: SmsSender,
        email_sender: EmailSender,
        audit_sink: AuditSink,
        attempt_limiter: Optional[AttemptLimiter] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        issuer: Optional[str] = None
    ):
        self.store = store
        self.sms_sender = sms_sender
        self.email_sender = email_sender
        self.audit_sink = audit_sink
        self.attempt_limiter = attempt_limiter or NoopAttemptLimiter()
        self.clock = clock
        self.issuer = issuer or settings.MFA_ISSUER
        self.code_validity = timedelta(minutes=settings.MFA_CODE_VALIDITY_MINUTES)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _audit(self, user_id: str, action: MfaAction, result: AuditResult, **details) -> None:
        """Emit one audit event; sink failures are logged, never raised"""
        event = build_audit_event(user_id, action, result, details=details, timestamp=self.clock())
        logger.info(f"MFA Event: {event.label} (user {user_id})")
        try:
            self.audit_sink.record(event)
        except Exception as e:
            # Graceful degradation: the MFA outcome stands even if the sink is down
            logger.error(f"Audit sink rejected event {event.event_id} ({event.label}): {str(e)}")

    def _allow_attempt(self, user_id: str, method: str) -> bool:
        if self.attempt_limiter.allow(user_id, method):
            return True

        mfa_verifications_total.labels(method=method, status="rate_limited").inc()
        self._audit(user_id, MfaAction.RATE_LIMITED, AuditResult.FAILURE, method=method)
        return False

    def _is_code_expired(self, method: MfaMethod, now: datetime) -> bool:
        issued_at = method.code_issued_at or method.created_at
        return issued_at is None or now - issued_at > self.code_validity

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def start_totp_enrollment(self, user_id: str, account_label: str) -> TotpEnrollment:
        """
        Start TOTP enrollment

        Generates a new secret and backup codes and stores them with the TOTP
        row in pending state. An unconfirmed enrollment is replaced together
        with its backup codes; an active TOTP method must be disabled first.

        Args:
            user_id: User identifier
            account_label: Account name shown in the authenticator app

        Returns:
            TotpEnrollment with secret, provisioning URI, QR code and the
            plaintext backup codes (shown to the user exactly once)

        Raises:
            ValueError: If account_label is empty or TOTP is already active
            CredentialStoreError: If the enrollment could not be stored
        """
        if not account_label or not account_label.strip():
            raise ValueError("account_label is required for TOTP enrollment")

        secret = generate_totp_secret()
        provisioning_uri = build_provisioning_uri(secret, account_label, self.issuer)
        qr_code_data_uri = generate_qr_code_data_uri(provisioning_uri)
        backup_codes = generate_backup_codes(
            count=settings.MFA_BACKUP_CODE_COUNT,
            length=settings.MFA_BACKUP_CODE_LENGTH
        )

        try:
            method = self.store.replace_totp_enrollment(
                user_id,
                secret,
                [hash_backup_code(code) for code in backup_codes]
            )
        except MfaInfrastructureError:
            self._audit(user_id, MfaAction.TOTP_ENROLLMENT_STARTED, AuditResult.ERROR)
            raise

        if method is None:
            self._audit(user_id, MfaAction.TOTP_ENROLLMENT_STARTED, AuditResult.FAILURE, reason="already_enabled")
            raise ValueError("MFA is already enabled. Disable it first to re-enroll.")

        mfa_state_changes_total.labels(action=MfaAction.TOTP_ENROLLMENT_STARTED.value).inc()
        self._audit(
            user_id,
            MfaAction.TOTP_ENROLLMENT_STARTED,
            AuditResult.SUCCESS,
            backup_codes_count=len(backup_codes)
        )

        return TotpEnrollment(
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code_data_uri=qr_code_data_uri,
            backup_codes=backup_codes,
            issuer=self.issuer,
            account_name=account_label
        )

    def confirm_totp_enrollment(self, user_id: str, code: str) -> bool:
        """
        Confirm a pending TOTP enrollment

        On success the method becomes active. On failure the pending row is
        left as it is so the user can retry with the next code.
        """
        if not self._allow_attempt(user_id, MfaMethodType.TOTP.value):
            return False

        now = self.clock()
        try:
            method = self.store.get(user_id, MfaMethodType.TOTP)
            if method is None:
                matched = False
            else:
                matched = verify_totp_code(
                    method.secret_or_code,
                    code,
                    valid_window=settings.MFA_CONFIRM_VALID_WINDOW,
                    for_time=now
                )
                if matched:
                    self.store.mark_verified(user_id, MfaMethodType.TOTP, now)
        except MfaInfrastructureError as e:
            mfa_verifications_total.labels(method="totp", status="error").inc()
            self._audit(user_id, MfaAction.TOTP_ENABLED, AuditResult.ERROR, error=type(e).__name__)
            raise

        if not matched:
            mfa_verifications_total.labels(method="totp", status="invalid_code").inc()
            self._audit(
                user_id,
                MfaAction.TOTP_ENABLED,
                AuditResult.FAILURE,
                reason="invalid_code" if method is not None else "no_pending_enrollment"
            )
            return False

        mfa_verifications_total.labels(method="totp", status="success").inc()
        mfa_state_changes_total.labels(action=MfaAction.TOTP_ENABLED.value).inc()
        self._audit(user_id, MfaAction.TOTP_ENABLED, AuditResult.SUCCESS)
        return True

    def verify_totp(self, user_id: str, code: str) -> bool:
        """
        Verify a TOTP code

        Only an active (confirmed) method is checked. Returns False without
        any side effect when the user has no active TOTP method, so callers
        cannot tell "not enrolled" from "wrong code". This is the gate for
        disable_totp, regenerate_backup_codes and disable_all_mfa.
        """
        if not self._allow_attempt(user_id, MfaMethodType.TOTP.value):
            return False

        now = self.clock()
        try:
            method = self.store.get(user_id, MfaMethodType.TOTP)
            if method is None or method.state != MfaMethodState.ACTIVE:
                return False

            matched = verify_totp_code(
                method.secret_or_code,
                code,
                valid_window=settings.MFA_TOTP_VALID_WINDOW,
                for_time=now
            )
            if matched:
                self.store.mark_verified(user_id, MfaMethodType.TOTP, now)
        except MfaInfrastructureError as e:
            mfa_verifications_total.labels(method="totp", status="error").inc()
            self._audit(user_id, MfaAction.TOTP_VERIFICATION_ERROR, AuditResult.ERROR, error=type(e).__name__)
            raise

        if matched:
            mfa_verifications_total.labels(method="totp", status="success").inc()
            self._audit(user_id, MfaAction.TOTP_VERIFIED, AuditResult.SUCCESS)
            return True

        mfa_verifications_total.labels(method="totp", status="invalid_code").inc()
        self._audit(user_id, MfaAction.TOTP_VERIFICATION_FAILED, AuditResult.FAILURE)
        return False

    def validate_totp_setup(self, user_id: str, codes: Sequence[str]) -> bool:
        """
        Validate an authenticator app by requiring several distinct valid codes

        Useful when the app clock is suspect: two different codes from
        consecutive steps prove the secret was entered correctly and the
        clock is in range.

        Read-only: a pending enrollment is still activated by
        confirm_totp_enrollment.
        """
        distinct = {normalize_code(code) for code in codes if code}
        if len(distinct) < 2:
            return False

        if not self._allow_attempt(user_id, MfaMethodType.TOTP.value):
            return False

        now = self.clock()
        try:
            method = self.store.get(user_id, MfaMethodType.TOTP)
            if method is None:
                return False

            valid_count = sum(
                1 for code in distinct
                if verify_totp_code(method.secret_or_code, code, valid_window=settings.MFA_TOTP_VALID_WINDOW, for_time=now)
            )
            validated = valid_count >= 2
        except MfaInfrastructureError as e:
            self._audit(user_id, MfaAction.TOTP_SETUP_VALIDATED, AuditResult.ERROR, error=type(e).__name__)
            raise

        self._audit(
            user_id,
            MfaAction.TOTP_SETUP_VALIDATED,
            AuditResult.SUCCESS if validated else AuditResult.FAILURE,
            valid_codes=valid_count
        )
        return validated

    def disable_totp(self, user_id: str, code: str) -> bool:
        """
        Disable TOTP behind a fresh TOTP verification

        Deletes the TOTP method and the backup codes issued with it in a
        single transaction.

        Raises:
            CredentialStoreError: If the delete failed; TOTP stays enrolled
        """
        if not self.verify_totp(user_id, code):
            return False

        try:
            deleted = self.store.delete_one(user_id, MfaMethodType.TOTP, include_backup_codes=True)
        except MfaInfrastructureError as e:
            self._audit(user_id, MfaAction.TOTP_DISABLED, AuditResult.ERROR, error=type(e).__name__)
            raise

        if not deleted:
            # Removed by a concurrent request between the gate and the delete
            self._audit(user_id, MfaAction.TOTP_DISABLED, AuditResult.FAILURE, reason="not_enrolled")
            return False

        mfa_state_changes_total.labels(action=MfaAction.TOTP_DISABLED.value).inc()
        self._audit(user_id, MfaAction.TOTP_DISABLED, AuditResult.SUCCESS)
        return True

    def generate_manual_entry_qr(self, secret: str, account_label: str) -> str:
        """QR code data URI for an existing secret"""
        return generate_qr_code_data_uri(build_provisioning_uri(secret, account_label, self.issuer))

    # ------------------------------------------------------------------
    # SMS / email codes
    # ------------------------------------------------------------------

    def _send_code(
        self,
        user_id: str,
        method_type: MfaMethodType,
        destination: str,
        deliver: Callable[[str], None],
        masked_destination: str
    ) -> bool:
        sent_action = _CHANNEL_ACTIONS[method_type][0]
        channel = method_type.value
        code = generate_numeric_code(settings.MFA_CODE_LENGTH)

        # Last send wins: the new code replaces any outstanding one
        try:
            self.store.upsert(
                user_id,
                method_type,
                code,
                destination=destination,
                code_issued_at=self.clock()
            )
        except MfaInfrastructureError as e:
            mfa_codes_sent_total.labels(channel=channel, status="error").inc()
            self._audit(user_id, sent_action, AuditResult.ERROR, stage="store", error=type(e).__name__)
            raise

        try:
            deliver(code)
        except ChannelDeliveryError as e:
            logger.error(f"Failed to deliver {channel} code to {masked_destination}: {str(e)}")
            mfa_codes_sent_total.labels(channel=channel, status="error").inc()
            self._audit(user_id, sent_action, AuditResult.ERROR, stage="delivery", destination=masked_destination)
            return False

        mfa_codes_sent_total.labels(channel=channel, status="success").inc()
        self._audit(user_id, sent_action, AuditResult.SUCCESS, destination=masked_destination)
        return True

    def send_sms_code(self, user_id: str, phone: str) -> bool:
        """
        Generate and send an SMS code

        Returns:
            True if the SMS gateway accepted the message, False if delivery
            failed (the code stays stored and valid until it expires)

        Raises:
            CredentialStoreError: If the code could not be stored
        """
        return self._send_code(
            user_id,
            MfaMethodType.SMS,
            phone,
            lambda code: self.sms_sender.send(phone, code),
            mask_phone(phone)
        )

    def send_email_code(self, user_id: str, email: str) -> bool:
        """Generate and send an email code (same contract as send_sms_code)"""
        def deliver(code: str) -> None:
            subject, body = render_code_email(code, settings.MFA_CODE_VALIDITY_MINUTES)
            self.email_sender.send(email, subject, body)

        return self._send_code(
            user_id,
            MfaMethodType.EMAIL,
            email,
            deliver,
            mask_email(email)
        )

    def _verify_code(self, user_id: str, method_type: MfaMethodType, code: str) -> bool:
        _, verified_action, failed_action, error_action = _CHANNEL_ACTIONS[method_type]
        channel = method_type.value

        if not self._allow_attempt(user_id, channel):
            return False

        submitted = normalize_code(code)
        now = self.clock()
        try:
            method = self.store.get(user_id, method_type)
            if method is None:
                return False

            stored = method.secret_or_code
            if not stored:
                outcome = "no_outstanding_code"
            elif self._is_code_expired(method, now):
                self.store.clear_code(user_id, method_type, stored)
                outcome = "expired_code"
            elif not constant_time_compare(stored, submitted):
                outcome = "invalid_code"
            elif self.store.consume_code(user_id, method_type, stored, now):
                outcome = "success"
            else:
                # Consumed or replaced by a concurrent request since the read
                outcome = "already_used"
        except MfaInfrastructureError as e:
            mfa_verifications_total.labels(method=channel, status="error").inc()
            self._audit(user_id, error_action, AuditResult.ERROR, error=type(e).__name__)
            raise

        mfa_verifications_total.labels(method=channel, status=outcome).inc()

        if outcome == "success":
            self._audit(user_id, verified_action, AuditResult.SUCCESS)
            return True

        self._audit(user_id, failed_action, AuditResult.FAILURE, reason=outcome)
        return False

    def verify_sms_code(self, user_id: str, code: str) -> bool:
        """
        Verify an SMS code

        The code is single-use and expires MFA_CODE_VALIDITY_MINUTES after it
        was issued. A wrong code leaves the outstanding code in place.
        """
        return self._verify_code(user_id, MfaMethodType.SMS, code)

    def verify_email_code(self, user_id: str, code: str) -> bool:
        """Verify an email code (same contract as verify_sms_code)"""
        return self._verify_code(user_id, MfaMethodType.EMAIL, code)

    def sweep_expired_codes(self) -> int:
        """
        Clear SMS/email codes past their validity window

        Optional housekeeping; verification already rejects expired codes.
        """
        cleared = self.store.clear_expired_codes(self.clock() - self.code_validity)
        if cleared:
            logger.info(f"Cleared {cleared} expired MFA code(s)")
        return cleared

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def regenerate_backup_codes(self, user_id: str, totp_code: str) -> Optional[List[str]]:
        """
        Regenerate backup codes behind a fresh TOTP verification

        Returns:
            New plaintext backup codes, or None if the TOTP gate failed

        Raises:
            CredentialStoreError: If the new set could not be stored; the
                previous set stays valid
        """
        if not self.verify_totp(user_id, totp_code):
            return None

        try:
            previous_hashes = self.store.list_backup_code_hashes(user_id)
            backup_codes = generate_backup_codes(
                count=settings.MFA_BACKUP_CODE_COUNT,
                length=settings.MFA_BACKUP_CODE_LENGTH,
                exclude_hashes=previous_hashes
            )
            self.store.replace_backup_codes(user_id, [hash_backup_code(code) for code in backup_codes])
        except MfaInfrastructureError as e:
            self._audit(user_id, MfaAction.BACKUP_CODES_REGENERATED, AuditResult.ERROR, error=type(e).__name__)
            raise

        mfa_state_changes_total.labels(action=MfaAction.BACKUP_CODES_REGENERATED.value).inc()
        self._audit(
            user_id,
            MfaAction.BACKUP_CODES_REGENERATED,
            AuditResult.SUCCESS,
            backup_codes_count=len(backup_codes)
        )
        return backup_codes

    def verify_backup_code(self, user_id: str, code: str) -> bool:
        """Redeem a backup code; each code works exactly once"""
        if not self._allow_attempt(user_id, "backup_code"):
            return False

        submitted = normalize_code(code)
        if not submitted:
            mfa_verifications_total.labels(method="backup_code", status="invalid_code").inc()
            self._audit(user_id, MfaAction.BACKUP_CODE_VERIFICATION_FAILED, AuditResult.FAILURE)
            return False

        try:
            redeemed = self.store.consume_backup_code(user_id, hash_backup_code(submitted))
        except MfaInfrastructureError as e:
            mfa_verifications_total.labels(method="backup_code", status="error").inc()
            self._audit(user_id, MfaAction.BACKUP_CODE_VERIFICATION_ERROR, AuditResult.ERROR, error=type(e).__name__)
            raise

        if redeemed:
            mfa_verifications_total.labels(method="backup_code", status="success").inc()
            self._audit(user_id, MfaAction.BACKUP_CODE_VERIFIED, AuditResult.SUCCESS)
            return True

        mfa_verifications_total.labels(method="backup_code", status="invalid_code").inc()
        self._audit(user_id, MfaAction.BACKUP_CODE_VERIFICATION_FAILED, AuditResult.FAILURE)
        return False

    def get_backup_codes_remaining(self, user_id: str) -> int:
        """Number of unused backup codes"""
        return len(self.store.list_backup_code_hashes(user_id))

    # ------------------------------------------------------------------
    # Account-wide
    # ------------------------------------------------------------------

    def disable_all_mfa(self, user_id: str, totp_code: str) -> bool:
        """
        Remove every MFA method and backup code behind a fresh TOTP verification

        All-or-nothing: the delete runs in one transaction.

        Raises:
            CredentialStoreError: If the delete failed; every method stays enrolled
        """
        if not self.verify_totp(user_id, totp_code):
            return False

        try:
            removed = self.store.delete_all(user_id)
        except MfaInfrastructureError as e:
            self._audit(user_id, MfaAction.ALL_MFA_DISABLED, AuditResult.ERROR, error=type(e).__name__)
            raise

        mfa_state_changes_total.labels(action=MfaAction.ALL_MFA_DISABLED.value).inc()
        self._audit(user_id, MfaAction.ALL_MFA_DISABLED, AuditResult.SUCCESS, methods_removed=removed)
        return True

    def has_mfa_enabled(self, user_id: str) -> bool:
        """True iff the user has at least one MFA method row"""
        return self.store.count_for_user(user_id) > 0

    def list_mfa_methods(self, user_id: str) -> List[MfaMethodSummary]:
        """MFA methods of a user for the account settings page, newest first"""
        return [
            MfaMethodSummary(
                type=method.method_type,
                state=method.state,
                created_at=method.created_at,
                last_used_at=method.last_used_at
            )
            for method in self.store.list_for_user(user_id)
        ]
