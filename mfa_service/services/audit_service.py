"""
Audit Service

Records MFA audit events to a Redis stream and reads them back for
security review.

Architecture:
- One stream (MFA_AUDIT_STREAM) holding every MFA audit event as JSON
- Approximate MAXLEN trimming keeps the stream bounded
- Writes never fail the MFA operation that produced them: on Redis errors
  the event is held in a bounded retry buffer and flushed with the next
  successful write
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from mfa_service.core.config import settings
from mfa_service.core.exceptions import MfaInfrastructureError
from mfa_service.core.redis_client import RedisClient
from mfa_service.metrics import mfa_audit_events_failed_total
from mfa_service.schemas.events import AuditResult, MfaAction, MfaAuditEvent

logger = logging.getLogger(__name__)


def build_audit_event(
    user_id: str,
    action: MfaAction,
    result: AuditResult,
    details: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None
) -> MfaAuditEvent:
    """Create an audit event with a fresh ID"""
    return MfaAuditEvent(
        event_id=str(uuid.uuid4()),
        user_id=user_id,
        action=action,
        result=result,
        timestamp=(timestamp or datetime.utcnow()).isoformat(),
        details=details or {}
    )


class AuditSink(ABC):
    """Destination for MFA audit events"""

    @abstractmethod
    def record(self, event: MfaAuditEvent) -> None:
        """Record one event"""


class RedisAuditSink(AuditSink):
    """Audit sink appending events to a Redis stream"""

    def __init__(
        self,
        redis: RedisClient,
        stream: str = None,
        maxlen: int = None,
        buffer_size: int = None
    ):
        self.redis = redis
        self.stream = stream or settings.MFA_AUDIT_STREAM
        self.maxlen = maxlen or settings.MFA_AUDIT_STREAM_MAXLEN
        self._pending = deque(maxlen=buffer_size or settings.MFA_AUDIT_BUFFER_SIZE)
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        """Events waiting for Redis to come back"""
        return len(self._pending)

    def _write(self, event: MfaAuditEvent) -> str:
        return self.redis.xadd(
            self.stream,
            {"user_id": event.user_id, "event": event.model_dump_json()},
            maxlen=self.maxlen
        )

    def _flush_pending(self) -> None:
        while self._pending:
            event = self._pending[0]
            self._write(event)
            self._pending.popleft()

    def record(self, event: MfaAuditEvent) -> None:
        with self._lock:
            try:
                self._flush_pending()
                stream_id = self._write(event)
                logger.debug(f"Audit event {event.event_id} ({event.label}) written as {stream_id}")

            except RedisError as e:
                if len(self._pending) == self._pending.maxlen:
                    mfa_audit_events_failed_total.labels(reason="buffer_overflow").inc()
                    logger.error(
                        f"Audit buffer full, oldest event {self._pending[0].event_id} overwritten"
                    )
                self._pending.append(event)
                mfa_audit_events_failed_total.labels(reason="sink_unavailable").inc()
                logger.error(
                    f"Failed to write audit event {event.event_id} ({event.label}) to {self.stream}: {str(e)}; "
                    f"{len(self._pending)} event(s) buffered"
                )


class AuditService:
    """Service for MFA audit trail queries"""

    # Upper bound on stream entries scanned per query
    MAX_SCAN = 5000

    def __init__(self, redis: RedisClient, stream: str = None):
        self.redis = redis
        self.stream = stream or settings.MFA_AUDIT_STREAM

    def get_mfa_logs(self, user_id: str, limit: int = 50) -> List[MfaAuditEvent]:
        """
        Get recent MFA audit events for a user, newest first

        Args:
            user_id: User to get events for
            limit: Maximum number of events to return

        Returns:
            List of audit events

        Raises:
            MfaInfrastructureError: If the audit stream cannot be read
        """
        try:
            entries = self.redis.xrevrange(self.stream, count=self.MAX_SCAN)
        except RedisError as e:
            logger.error(f"Error reading audit stream {self.stream}: {str(e)}")
            raise MfaInfrastructureError("Audit stream unavailable", operation="get_mfa_logs") from e

        events: List[MfaAuditEvent] = []
        for stream_id, fields in entries:
            if fields.get("user_id") != user_id:
                continue

            try:
                events.append(MfaAuditEvent(**json.loads(fields.get("event", "{}"))))
            except (json.JSONDecodeError, ValidationError):
                logger.warning(f"Skipping unreadable audit entry {stream_id} in {self.stream}")
                continue

            if len(events) >= limit:
                break

        return events
