"""
Tests for restart recovery.

Tests cover:
- Re-driving a transiently failed request without a duplicate record
- Skipping terminal requests
- Recovery after a process restart (new store over the same database)
- Boot scheduling runs at most one pass
"""

import threading

import pytest
from sqlalchemy.orm import sessionmaker

from sms_wallet.classifier import RESULT_OK, ResultCode
from sms_wallet.domain import RequestState
from sms_wallet.errors import DuplicateRequest
from sms_wallet.events import EventPublisher, RecentEvents, RecoveryPassStarted
from sms_wallet.outbound import OutboundStateMachine
from sms_wallet.recovery import BootRecoveryScheduler, RecoveryEngine
from sms_wallet.storage import CorrelationStore, build_engine
from sms_wallet.transport import DryRunTransport

from conftest import state_changes, tokens_for

PHONE = "+14155550100"


class TestRecover:
    def test_transient_failure_recovered(self, machine, recovery, transport, store, events):
        machine.submit(PHONE, "WLT1|TX|r2", "r2")
        (first_token,) = tokens_for(transport, "r2")
        machine.on_sent(first_token, ResultCode.RADIO_OFF)
        assert store.get("r2").state is RequestState.SEND_FAILED_TEMP

        assert recovery.recover() == 1

        assert len(store.list_non_terminal()) == 1
        with pytest.raises(DuplicateRequest):
            store.create("r2", PHONE, "x", ["x"])
        tokens = tokens_for(transport, "r2")
        assert tokens == [first_token, "r2:2:0"]
        assert [q.segment_body for q in transport.queued] == ["WLT1|TX|r2", "WLT1|TX|r2"]

        machine.on_sent(tokens[1], RESULT_OK)

        request = store.get("r2")
        assert request.state is RequestState.SENT
        assert request.attempt == 2
        assert state_changes(events, "r2") == ["SUBMITTED", "SEND_FAILED_TEMP", "SUBMITTED", "SENT"]

    def test_reuses_stored_segments(self, machine, recovery, transport, store):
        machine.submit(PHONE, "A" * 400, "r1")
        original = [q.segment_body for q in transport.queued]
        transport.clear()

        recovery.recover()

        assert [q.segment_body for q in transport.queued] == original
        assert tokens_for(transport, "r1") == ["r1:2:0", "r1:2:1", "r1:2:2"]

    def test_terminal_requests_skipped(self, machine, recovery, transport, store):
        machine.submit(PHONE, "hello", "done")
        (token,) = tokens_for(transport, "done")
        machine.on_sent(token, RESULT_OK)
        machine.on_delivered(token, RESULT_OK)

        machine.submit(PHONE, "hello", "dead")
        (token,) = tokens_for(transport, "dead")
        machine.on_sent(token, ResultCode.NULL_PDU)

        machine.submit(PHONE, "hello", "waiting")
        transport.clear()

        assert recovery.recover() == 1
        assert tokens_for(transport, "waiting") == ["waiting:2:0"]
        assert store.get("done").state is RequestState.DELIVERED
        assert store.get("dead").state is RequestState.SEND_FAILED_PERM

    def test_sent_requests_awaiting_delivery_are_redriven(self, machine, recovery, transport, store):
        machine.submit(PHONE, "hello", "r1")
        (token,) = tokens_for(transport, "r1")
        machine.on_sent(token, RESULT_OK)

        assert recovery.recover() == 1
        request = store.get("r1")
        assert request.state is RequestState.SUBMITTED
        assert request.segments[0].sent_outcome.is_pending
        assert tokens_for(transport, "r1") == ["r1:1:0", "r1:2:0"]

    def test_queued_request_left_by_crash(self, recovery, transport, store):
        store.create("r3", PHONE, "hello", ["hello"])

        assert recovery.recover() == 1
        assert store.get("r3").state is RequestState.SUBMITTED
        assert tokens_for(transport, "r3") == ["r3:2:0"]

    def test_empty_store(self, recovery, events):
        assert recovery.recover() == 0
        assert isinstance(events.snapshot()[-1], RecoveryPassStarted)

    def test_pass_started_published_first(self, machine, recovery, events):
        machine.submit(PHONE, "hello", "r1")
        events.clear()

        recovery.recover()

        published = events.snapshot()
        assert isinstance(published[0], RecoveryPassStarted)
        assert published[1].state is RequestState.SUBMITTED

    def test_request_turning_terminal_after_scan_is_skipped(self, store, transport, publisher):
        machine = OutboundStateMachine(store, transport, publisher)
        machine.submit(PHONE, "hello", "r1")
        (token,) = tokens_for(transport, "r1")

        class LateCallbackStore:
            """Delivers the final callbacks right after the recovery scan."""

            def list_non_terminal(self):
                snapshot = store.list_non_terminal()
                machine.on_sent(token, RESULT_OK)
                machine.on_delivered(token, RESULT_OK)
                return snapshot

        engine = RecoveryEngine(LateCallbackStore(), machine, publisher)

        assert engine.recover() == 0
        assert store.get("r1").state is RequestState.DELIVERED

    def test_second_pass_resends_unresolved_again(self, machine, recovery, transport, store):
        machine.submit(PHONE, "hello", "r1")

        assert recovery.recover() == 1
        assert recovery.recover() == 1
        assert store.get("r1").attempt == 3


class TestRestart:
    def test_recovery_after_restart(self, db_url, session_factory):
        before = OutboundStateMachine(CorrelationStore(session_factory), DryRunTransport(), EventPublisher())
        before.submit(PHONE, "A" * 400, "r1")

        # New process: fresh engine, store, transport and publisher over the same file
        engine = build_engine(db_url)
        try:
            store = CorrelationStore(sessionmaker(bind=engine))
            transport = DryRunTransport()
            events = RecentEvents()
            publisher = EventPublisher()
            publisher.attach(events)
            machine = OutboundStateMachine(store, transport, publisher)

            assert RecoveryEngine(store, machine, publisher).recover() == 1

            for token in tokens_for(transport, "r1"):
                machine.on_sent(token, RESULT_OK)
            assert store.get("r1").state is RequestState.SENT
        finally:
            engine.dispose()


class TestBootRecoveryScheduler:
    class CountingEngine:
        def __init__(self, result=0, error=None):
            self.calls = 0
            self.result = result
            self.error = error
            self.ran = threading.Event()

        def recover(self):
            self.calls += 1
            self.ran.set()
            if self.error:
                raise self.error
            return self.result

    def test_runs_once(self):
        engine = self.CountingEngine(result=4)
        scheduler = BootRecoveryScheduler(engine)

        assert scheduler.schedule() is True
        assert scheduler.schedule() is False
        scheduler.join(timeout=5)

        assert engine.calls == 1
        assert scheduler.result == 4

    def test_failure_does_not_escape(self):
        engine = self.CountingEngine(error=RuntimeError("db gone"))
        scheduler = BootRecoveryScheduler(engine)

        scheduler.schedule()
        scheduler.join(timeout=5)

        assert engine.ran.is_set()
        assert scheduler.result is None

    def test_runs_real_pass(self, machine, recovery, store):
        machine.submit(PHONE, "hello", "r1")
        scheduler = BootRecoveryScheduler(recovery)

        scheduler.schedule()
        scheduler.join(timeout=5)

        assert scheduler.result == 1
        assert store.get("r1").attempt == 2
