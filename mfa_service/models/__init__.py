"""
Database models
"""

from mfa_service.models.mfa import MfaMethod, MfaMethodType, MfaMethodState, MfaBackupCode

__all__ = [
    "MfaMethod",
    "MfaMethodType",
    "MfaMethodState",
    "MfaBackupCode",
]
