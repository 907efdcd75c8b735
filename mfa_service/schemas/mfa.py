"""
Pydantic schemas for MFA (Multi-Factor Authentication)
"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, validator

from mfa_service.models.mfa import MfaMethodType, MfaMethodState


# Service-level results

class TotpEnrollment(BaseModel):
    """
    Artifacts returned by TOTP enrollment start

    Backup codes are plaintext here and nowhere else; only their hashes
    are stored.
    """
    secret: str = Field(
        ...,
        description="Base32-encoded TOTP secret (display to user for manual entry)"
    )
    provisioning_uri: str = Field(
        ...,
        description="otpauth:// URI for authenticator apps"
    )
    qr_code_data_uri: str = Field(
        ...,
        description="QR code as data URI (can be embedded in <img> tag)"
    )
    backup_codes: List[str] = Field(
        ...,
        description="One-time backup codes"
    )
    issuer: str
    account_name: str


class MfaMethodSummary(BaseModel):
    """Read-only projection of a method row for account settings"""
    type: MfaMethodType
    state: MfaMethodState
    created_at: datetime
    last_used_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


# HTTP request schemas

def _digits_only(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.replace(" ", "").replace("-", "")
    if not v.isdigit():
        raise ValueError('Code must be numeric')
    return v


class TotpEnrollRequest(BaseModel):
    """TOTP enrollment request"""
    account_label: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Account name shown in the authenticator app (usually email)"
    )


class CodeRequest(BaseModel):
    """Request carrying a single one-time code"""
    code: str = Field(
        ...,
        min_length=4,
        max_length=12,
        description="One-time code (TOTP, SMS, email or backup code)"
    )

    @validator('code')
    def code_must_be_numeric(cls, v):
        return _digits_only(v)


class TotpSetupValidateRequest(BaseModel):
    """Two or more consecutive TOTP codes proving the app is in sync"""
    codes: List[str] = Field(
        ...,
        min_length=2,
        description="Consecutive TOTP codes"
    )

    @validator('codes', each_item=True)
    def codes_must_be_numeric(cls, v):
        return _digits_only(v)


class SmsSendRequest(BaseModel):
    """SMS code send request"""
    phone: str = Field(
        ...,
        min_length=6,
        max_length=20,
        description="Destination phone number in E.164 format"
    )

    @validator('phone')
    def phone_must_be_e164(cls, v):
        if not v.startswith('+') or not v[1:].isdigit():
            raise ValueError('Phone must be in E.164 format, e.g. +15551234567')
        return v


class EmailSendRequest(BaseModel):
    """Email code send request"""
    email: str = Field(
        ...,
        min_length=3,
        max_length=255,
        description="Destination email address"
    )

    @validator('email')
    def email_must_look_valid(cls, v):
        if '@' not in v or v.startswith('@') or v.endswith('@'):
            raise ValueError('Invalid email address')
        return v.strip()


# HTTP response schemas

class VerificationResponse(BaseModel):
    """Outcome of a verification or gated action"""
    user_id: str
    verified: bool
    method: str


class SendCodeResponse(BaseModel):
    """Outcome of a code send"""
    user_id: str
    sent: bool
    channel: str
    expires_in_minutes: int


class BackupCodesRegenerateResponse(BaseModel):
    """Backup codes regeneration response"""
    user_id: str
    backup_codes: List[str] = Field(
        ...,
        description="New one-time backup codes"
    )
    message: str = "Backup codes regenerated successfully"
    warning: str = "Store these codes securely. Previous backup codes are now invalid."


class MfaStatusResponse(BaseModel):
    """MFA status for the account settings page"""
    user_id: str
    mfa_enabled: bool
    methods: List[MfaMethodSummary]
    backup_codes_remaining: int


class MfaAuditLogResponse(BaseModel):
    """Recent MFA audit events"""
    user_id: str
    events: List[dict]
