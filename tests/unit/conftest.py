"""
Pytest configuration for unit tests.

Unit tests run against an in-memory SQLite database, so no PostgreSQL or
Redis instance is required.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from mfa_service.core.database import Base
from mfa_service import models  # noqa: F401
from mfa_service.services.audit_service import AuditSink
from mfa_service.services.channels import EmailSender, SmsSender
from mfa_service.services.credential_store import SqlAlchemyCredentialStore
from mfa_service.services.mfa_service import MfaService


FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0)


class FakeClock:
    """Controllable replacement for datetime.utcnow"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Database session bound to the in-memory engine."""
    session: Session = sessionmaker(bind=db_engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    """Credential store over the test session"""
    return SqlAlchemyCredentialStore(db_session)


@pytest.fixture
def clock():
    """Clock fixed at FIXED_NOW until advanced"""
    return FakeClock()


@pytest.fixture
def sms_sender():
    """Mock SMS gateway"""
    return Mock(spec=SmsSender)


@pytest.fixture
def email_sender():
    """Mock email gateway"""
    return Mock(spec=EmailSender)


@pytest.fixture
def audit_sink():
    """Mock audit sink"""
    return Mock(spec=AuditSink)


@pytest.fixture
def audit_labels(audit_sink):
    """Returns a callable listing recorded events as 'action:result'"""
    def labels():
        return [c.args[0].label for c in audit_sink.record.call_args_list]
    return labels


@pytest.fixture
def mfa_service(store, sms_sender, email_sender, audit_sink, clock):
    """MfaService wired to SQLite, mocked gateways and a fixed clock"""
    return MfaService(
        store=store,
        sms_sender=sms_sender,
        email_sender=email_sender,
        audit_sink=audit_sink,
        clock=clock,
    )
