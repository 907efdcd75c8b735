"""
API dependencies for caller identity and service construction
"""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from mfa_service.core.database import get_db
from mfa_service.core.redis_client import get_redis, RedisClient
from mfa_service.services.audit_service import AuditService, RedisAuditSink
from mfa_service.services.channels import build_email_sender, build_sms_sender
from mfa_service.services.credential_store import SqlAlchemyCredentialStore
from mfa_service.services.mfa_service import MfaService
from mfa_service.services.rate_limiter import build_attempt_limiter


_audit_sink = None


def get_audit_sink(redis: RedisClient = Depends(get_redis)) -> RedisAuditSink:
    """
    Process-wide audit sink

    Shared so its retry buffer survives across requests while Redis is down.
    """
    global _audit_sink
    if _audit_sink is None:
        _audit_sink = RedisAuditSink(redis)
    return _audit_sink


def get_mfa_service(
    db: Session = Depends(get_db),
    redis: RedisClient = Depends(get_redis),
    audit_sink: RedisAuditSink = Depends(get_audit_sink)
) -> MfaService:
    """
    Get MFA service instance

    Args:
        db: Database session
        redis: Redis client
        audit_sink: Shared audit sink

    Returns:
        MfaService instance bound to this request's session
    """
    return MfaService(
        store=SqlAlchemyCredentialStore(db),
        sms_sender=build_sms_sender(),
        email_sender=build_email_sender(),
        audit_sink=audit_sink,
        attempt_limiter=build_attempt_limiter(redis)
    )


def get_audit_service(redis: RedisClient = Depends(get_redis)) -> AuditService:
    """Get audit query service instance"""
    return AuditService(redis)


async def get_current_user_id(
    x_user_id: str = Header(None, alias="X-User-Id")
) -> str:
    """
    Authenticated user ID forwarded by the authentication gateway

    Session and token validation happen upstream; this service only trusts
    the identity header set by the gateway.

    Raises:
        HTTPException: If the header is missing
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated user",
        )
    return x_user_id.strip()
