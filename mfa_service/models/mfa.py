"""
MFA (Multi-Factor Authentication) models
"""

from datetime import datetime
from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, Enum, UniqueConstraint, Index
import enum

from mfa_service.core.database import Base


class MfaMethodType(str, enum.Enum):
    """Second factor kind"""
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


class MfaMethodState(str, enum.Enum):
    """Enrollment state of a method row"""
    PENDING = "pending"
    ACTIVE = "active"


class MfaMethod(Base):
    """
    MFA method model - one row per (user, method type)

    For TOTP, secret_or_code holds the base32 shared secret for the life of
    the method. For SMS/EMAIL it holds the outstanding one-time code, which is
    cleared once consumed or seen expired.
    """
    __tablename__ = "mfa_methods"
    __table_args__ = (
        UniqueConstraint('user_id', 'method_type', name='uq_mfa_methods_user_method'),
    )

    method_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    method_type = Column(Enum(MfaMethodType, name="mfa_method_type"), nullable=False)
    state = Column(Enum(MfaMethodState, name="mfa_method_state"), default=MfaMethodState.PENDING, nullable=False)
    secret_or_code = Column(Text, nullable=True)
    destination = Column(String(255), nullable=True)
    code_issued_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<MfaMethod(user_id={self.user_id}, method_type={self.method_type}, state={self.state})>"


class MfaBackupCode(Base):
    """Backup code model - SHA-256 digest of one single-use recovery code"""
    __tablename__ = "mfa_backup_codes"
    __table_args__ = (
        UniqueConstraint('user_id', 'code_hash', name='uq_mfa_backup_codes_user_hash'),
        Index('ix_mfa_backup_codes_user', 'user_id'),
    )

    backup_code_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    code_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<MfaBackupCode(user_id={self.user_id})>"
