"""
Pytest configuration and shared fixtures.

Test settings are written to the environment before any sms_wallet import,
so the module-level settings and engine point at a throwaway database.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="sms_wallet_test_")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/app.db"
os.environ["CALLBACK_SECRET"] = "test-callback-secret"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RECOVERY_ON_BOOT"] = "false"

import pytest
from sqlalchemy.orm import sessionmaker

# Clear settings cache before any app imports to ensure test env vars are used
from sms_wallet.config import get_settings
get_settings.cache_clear()

from sms_wallet.events import EventPublisher, OutboundStateChanged, RecentEvents
from sms_wallet.outbound import OutboundStateMachine
from sms_wallet.recovery import RecoveryEngine
from sms_wallet.storage import CorrelationStore, build_engine, init_db
from sms_wallet.transport import DryRunTransport


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path}/store.db"


@pytest.fixture
def session_factory(db_url):
    """Session factory bound to a fresh database file per test."""
    engine = build_engine(db_url)
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> CorrelationStore:
    return CorrelationStore(session_factory)


@pytest.fixture
def events() -> RecentEvents:
    return RecentEvents(maxlen=1000)


@pytest.fixture
def publisher(events) -> EventPublisher:
    publisher = EventPublisher()
    publisher.attach(events)
    return publisher


@pytest.fixture
def transport() -> DryRunTransport:
    return DryRunTransport()


@pytest.fixture
def machine(store, transport, publisher) -> OutboundStateMachine:
    return OutboundStateMachine(store, transport, publisher)


@pytest.fixture
def recovery(store, machine, publisher) -> RecoveryEngine:
    return RecoveryEngine(store, machine, publisher)


def state_changes(events: RecentEvents, request_id: str) -> list:
    """States published for one request, in order."""
    return [
        e.state.value
        for e in events.snapshot()
        if isinstance(e, OutboundStateChanged) and e.request_id == request_id
    ]


def tokens_for(transport: DryRunTransport, request_id: str) -> list:
    """Correlation tokens handed to the transport for one request, in order."""
    return [
        q.correlation_token
        for q in transport.queued
        if q.correlation_token.startswith(f"{request_id}:")
    ]
