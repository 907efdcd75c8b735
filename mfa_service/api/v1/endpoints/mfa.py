"""
MFA (Multi-Factor Authentication) endpoints

Infrastructure failures (MfaInfrastructureError) are mapped to 503 by the
application-level exception handler in main.py.

Routes are plain functions so FastAPI runs them in its threadpool; the MFA
service makes blocking database, Redis, SMTP and Twilio calls.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from mfa_service.api.dependencies import get_audit_service, get_current_user_id, get_mfa_service
from mfa_service.core.config import settings
from mfa_service.services.audit_service import AuditService
from mfa_service.services.mfa_service import MfaService
from mfa_service.schemas.mfa import (
    BackupCodesRegenerateResponse,
    CodeRequest,
    EmailSendRequest,
    MfaAuditLogResponse,
    MfaStatusResponse,
    SendCodeResponse,
    SmsSendRequest,
    TotpEnrollment,
    TotpEnrollRequest,
    TotpSetupValidateRequest,
    VerificationResponse,
)


router = APIRouter()


def _invalid_code() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Invalid verification code"
    )


@router.post("/totp/enroll", response_model=TotpEnrollment)
def enroll_totp(
    request_data: TotpEnrollRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Start TOTP enrollment

    Generates a TOTP secret, QR code and backup codes. The method stays
    pending until `/mfa/totp/confirm` succeeds.

    **Backup Codes:**
    - Shown once in this response, stored only as hashes
    - Each code can only be used once
    - Re-enrolling replaces an unconfirmed enrollment and its codes

    **Errors:**
    - 400: TOTP is already active; disable it first to re-enroll
    """
    try:
        return mfa_service.start_totp_enrollment(user_id, request_data.account_label)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("/totp/confirm", response_model=VerificationResponse)
def confirm_totp(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Confirm TOTP enrollment with a code from the authenticator app

    **Errors:**
    - 400: Invalid code or no pending enrollment (enrollment stays retryable)
    """
    if not mfa_service.confirm_totp_enrollment(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="totp")


@router.post("/totp/verify", response_model=VerificationResponse)
def verify_totp(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Verify a TOTP code (login second step)"""
    if not mfa_service.verify_totp(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="totp")


@router.post("/totp/validate-setup", response_model=VerificationResponse)
def validate_totp_setup(
    request_data: TotpSetupValidateRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Validate an authenticator app with two or more consecutive codes"""
    if not mfa_service.validate_totp_setup(user_id, request_data.codes):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="totp")


@router.delete("/totp", response_model=VerificationResponse)
def disable_totp(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Disable TOTP

    Requires a current TOTP code. Backup codes issued with the enrollment
    are invalidated.
    """
    if not mfa_service.disable_totp(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="totp")


@router.post("/sms/send", response_model=SendCodeResponse)
def send_sms_code(
    request_data: SmsSendRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Send a one-time code by SMS

    **Errors:**
    - 502: SMS gateway failed; retry later
    """
    if not mfa_service.send_sms_code(user_id, request_data.phone):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not send SMS code, try again later"
        )
    return SendCodeResponse(
        user_id=user_id,
        sent=True,
        channel="sms",
        expires_in_minutes=settings.MFA_CODE_VALIDITY_MINUTES
    )


@router.post("/sms/verify", response_model=VerificationResponse)
def verify_sms_code(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Verify an SMS code (single use, expires after the validity window)"""
    if not mfa_service.verify_sms_code(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="sms")


@router.post("/email/send", response_model=SendCodeResponse)
def send_email_code(
    request_data: EmailSendRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Send a one-time code by email

    **Errors:**
    - 502: Email gateway failed; retry later
    """
    if not mfa_service.send_email_code(user_id, request_data.email):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not send email code, try again later"
        )
    return SendCodeResponse(
        user_id=user_id,
        sent=True,
        channel="email",
        expires_in_minutes=settings.MFA_CODE_VALIDITY_MINUTES
    )


@router.post("/email/verify", response_model=VerificationResponse)
def verify_email_code(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Verify an email code (single use, expires after the validity window)"""
    if not mfa_service.verify_email_code(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="email")


@router.post("/backup-codes/regenerate", response_model=BackupCodesRegenerateResponse)
def regenerate_backup_codes(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """
    Regenerate backup codes

    Requires a current TOTP code (backup codes are NOT accepted here).
    Previous backup codes are invalidated.
    """
    backup_codes = mfa_service.regenerate_backup_codes(user_id, request_data.code)
    if backup_codes is None:
        raise _invalid_code()
    return BackupCodesRegenerateResponse(user_id=user_id, backup_codes=backup_codes)


@router.post("/backup-codes/verify", response_model=VerificationResponse)
def verify_backup_code(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Redeem a backup code"""
    if not mfa_service.verify_backup_code(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="backup_code")


@router.post("/disable-all", response_model=VerificationResponse)
def disable_all_mfa(
    request_data: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """Remove every MFA method and backup code; requires a current TOTP code"""
    if not mfa_service.disable_all_mfa(user_id, request_data.code):
        raise _invalid_code()
    return VerificationResponse(user_id=user_id, verified=True, method="totp")


@router.get("/status", response_model=MfaStatusResponse)
def get_mfa_status(
    user_id: str = Depends(get_current_user_id),
    mfa_service: MfaService = Depends(get_mfa_service)
):
    """MFA methods and remaining backup codes for the account settings page"""
    methods = mfa_service.list_mfa_methods(user_id)
    return MfaStatusResponse(
        user_id=user_id,
        mfa_enabled=len(methods) > 0,
        methods=methods,
        backup_codes_remaining=mfa_service.get_backup_codes_remaining(user_id)
    )


@router.get("/logs", response_model=MfaAuditLogResponse)
def get_mfa_logs(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Recent MFA audit events for the current user, newest first"""
    events = audit_service.get_mfa_logs(user_id, limit=limit)
    return MfaAuditLogResponse(
        user_id=user_id,
        events=[event.model_dump() for event in events]
    )
