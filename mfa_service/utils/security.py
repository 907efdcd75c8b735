"""
Security utilities for one-time code generation and verification

Pure functions: no database, no network. TOTP follows RFC 6238 (30-second
steps, 6 digits, HMAC-SHA1) via pyotp.
"""

import base64
import binascii
import calendar
import hashlib
import hmac
import io
import re
import secrets
import string
from datetime import datetime
from typing import Iterable, List, Optional, Union

import pyotp
import qrcode

from mfa_service.core.exceptions import MalformedSecretError


TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30
# 32 base32 characters = 160 bits, the RFC 4226 recommended secret size
TOTP_SECRET_LENGTH = 32

_CODE_SEPARATORS = re.compile(r"[\s-]")


def generate_totp_secret() -> str:
    """
    Generate a new base32 TOTP shared secret

    Returns:
        32-character base32 secret (160 bits of entropy)
    """
    return pyotp.random_base32(length=TOTP_SECRET_LENGTH)


def build_provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    """
    Build the otpauth:// URI authenticator apps consume

    Args:
        secret: Base32 TOTP secret
        account_label: Account shown in the app (usually the user's email)
        issuer: Issuer name shown in the app

    Returns:
        otpauth://totp/{issuer}:{account}?secret=...&issuer=...
    """
    totp = pyotp.TOTP(secret, interval=TOTP_INTERVAL_SECONDS)
    return totp.provisioning_uri(name=account_label, issuer_name=issuer)


def generate_qr_code_data_uri(data: str) -> str:
    """
    Generate QR code as data URI

    Args:
        data: Data to encode in QR code

    Returns:
        QR code as data URI (can be used in <img src="">)
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)

    img_base64 = base64.b64encode(buffer.read()).decode()
    return f"data:image/png;base64,{img_base64}"


def _to_unix_seconds(for_time: Union[datetime, int, float, None]) -> int:
    # Naive datetimes are UTC throughout this service
    if for_time is None:
        for_time = datetime.utcnow()
    if isinstance(for_time, datetime):
        return calendar.timegm(for_time.utctimetuple())
    return int(for_time)


def totp_code_at(secret: str, for_time: Union[datetime, int, float, None] = None, step_offset: int = 0) -> str:
    """
    Compute the TOTP code for a given time, optionally shifted by whole steps

    Raises:
        MalformedSecretError: If the secret is not valid base32
    """
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS)
    try:
        return totp.at(_to_unix_seconds(for_time), counter_offset=step_offset)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedSecretError(f"Stored TOTP secret is not valid base32: {e}") from e


def verify_totp(
    secret: str,
    code: str,
    valid_window: int = 1,
    for_time: Union[datetime, int, float, None] = None
) -> bool:
    """
    Verify a TOTP code against the current step and its neighbours

    Every candidate in [-valid_window, +valid_window] is computed and
    compared in constant time, so the response time does not reveal which
    step (if any) matched.

    Args:
        secret: Base32 TOTP secret
        code: Code submitted by the user
        valid_window: Number of 30-second steps tolerated either side
        for_time: Verification time (defaults to now)

    Returns:
        True if the code matches any step in the window

    Raises:
        MalformedSecretError: If the stored secret is not valid base32
    """
    if not secret:
        raise MalformedSecretError("Stored TOTP secret is empty")

    code = normalize_code(code)
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False

    matched = False
    for offset in range(-valid_window, valid_window + 1):
        candidate = totp_code_at(secret, for_time, step_offset=offset)
        if constant_time_compare(candidate, code):
            matched = True
    return matched


def generate_numeric_code(length: int = 6) -> str:
    """
    Generate a cryptographically random numeric code for SMS/email delivery

    Args:
        length: Number of digits

    Returns:
        Zero-padded digit string, e.g. "004219"
    """
    return str(secrets.randbelow(10 ** length)).zfill(length)


def generate_backup_codes(
    count: int = 10,
    length: int = 8,
    exclude_hashes: Iterable[str] = ()
) -> List[str]:
    """
    Generate backup codes for MFA

    Codes are unique within the batch and never hash to one of
    exclude_hashes, so a regenerated set cannot repeat a code that is
    currently redeemable.

    Args:
        count: Number of backup codes to generate
        length: Digits per backup code
        exclude_hashes: SHA-256 digests of codes that must not be reissued

    Returns:
        List of plaintext backup codes (show once, store only hashes)
    """
    excluded = set(exclude_hashes)
    codes: List[str] = []
    seen = set()

    while len(codes) < count:
        code = ''.join(secrets.choice(string.digits) for _ in range(length))
        code_hash = hash_backup_code(code)
        if code in seen or code_hash in excluded:
            continue
        seen.add(code)
        codes.append(code)

    return codes


def hash_backup_code(code: str) -> str:
    """Hash a backup code for storage (SHA-256 hex of the normalised code)"""
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def normalize_code(code: Optional[str]) -> str:
    """Strip spaces and dashes users tend to type into codes"""
    if not code:
        return ""
    return _CODE_SEPARATORS.sub("", code).upper()


def constant_time_compare(a: str, b: str) -> bool:
    """
    Constant-time string comparison to prevent timing attacks

    Args:
        a: First string
        b: Second string

    Returns:
        True if strings are equal
    """
    return hmac.compare_digest(a.encode(), b.encode())


def mask_email(email: str) -> str:
    """
    Mask email address for logging

    Args:
        email: Email address to mask

    Returns:
        Masked email (e.g., u***r@example.com)
    """
    if not email or '@' not in email:
        return "***"

    local, domain = email.split('@', 1)
    if len(local) <= 2:
        masked_local = '*' * len(local)
    else:
        masked_local = f"{local[0]}***{local[-1]}"

    return f"{masked_local}@{domain}"


def mask_phone(phone: str) -> str:
    """Mask phone number for logging, keeping the last two digits"""
    if not phone or len(phone) <= 4:
        return "***"
    return f"{phone[:2]}{'*' * (len(phone) - 4)}{phone[-2:]}"
