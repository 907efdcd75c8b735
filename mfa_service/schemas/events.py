"""
Audit event schemas

Every MFA state change or verification attempt produces one MfaAuditEvent.
Events are appended to a Redis stream for later security review.
"""

from typing import Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class AuditResult(str, Enum):
    """Outcome of an audited MFA attempt"""
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class MfaAction(str, Enum):
    """Audited MFA actions"""
    # TOTP
    TOTP_ENROLLMENT_STARTED = "totp_enrollment_started"
    TOTP_ENABLED = "totp_enabled"
    TOTP_SETUP_VALIDATED = "totp_setup_validated"
    TOTP_VERIFIED = "totp_verified"
    TOTP_VERIFICATION_FAILED = "totp_verification_failed"
    TOTP_VERIFICATION_ERROR = "totp_verification_error"
    TOTP_DISABLED = "totp_disabled"

    # SMS
    SMS_CODE_SENT = "sms_code_sent"
    SMS_VERIFIED = "sms_verified"
    SMS_VERIFICATION_FAILED = "sms_verification_failed"
    SMS_VERIFICATION_ERROR = "sms_verification_error"

    # Email
    EMAIL_CODE_SENT = "email_code_sent"
    EMAIL_VERIFIED = "email_verified"
    EMAIL_VERIFICATION_FAILED = "email_verification_failed"
    EMAIL_VERIFICATION_ERROR = "email_verification_error"

    # Backup codes
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    BACKUP_CODE_VERIFIED = "backup_code_verified"
    BACKUP_CODE_VERIFICATION_FAILED = "backup_code_verification_failed"
    BACKUP_CODE_VERIFICATION_ERROR = "backup_code_verification_error"

    # Account-wide
    ALL_MFA_DISABLED = "all_mfa_disabled"
    RATE_LIMITED = "mfa_rate_limited"


class MfaAuditEvent(BaseModel):
    """
    Audit event for an MFA attempt

    Serialised as JSON into the audit stream.
    """
    event_id: str = Field(
        ...,
        description="Unique event ID (UUID)"
    )
    user_id: str = Field(
        ...,
        description="User the attempt was made for"
    )
    action: MfaAction = Field(
        ...,
        description="Audited action"
    )
    result: AuditResult = Field(
        ...,
        description="success, failure or error"
    )
    timestamp: str = Field(
        ...,
        description="Event timestamp (ISO 8601 format, UTC)"
    )
    source: str = Field(
        default="mfa_service",
        description="Service that generated the event"
    )
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Action-specific context (never codes or secrets)"
    )

    class Config:
        use_enum_values = True

    @property
    def label(self) -> str:
        """action:result, the form used in log lines"""
        return f"{self.action}:{self.result}"
