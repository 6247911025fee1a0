"""
Restart recovery for in-flight sends.

One pass per boot is the whole retry policy: there is no attempt cap and
no backoff. A request that never resolves stays SEND_FAILED_TEMP (or
wherever it stopped) until the next boot re-drives it again.
"""

import logging
import threading
from typing import Optional

from sms_wallet.events import EventPublisher, RecoveryPassStarted
from sms_wallet.metrics import record_redriven
from sms_wallet.outbound import OutboundStateMachine
from sms_wallet.storage import CorrelationStore

logger = logging.getLogger(__name__)


class RecoveryEngine:
    def __init__(self, store: CorrelationStore, machine: OutboundStateMachine, publisher: EventPublisher):
        self._store = store
        self._machine = machine
        self._publisher = publisher

    def recover(self) -> int:
        """
        Re-drive every request found in a non-terminal state.

        The scan is a point-in-time snapshot; a request that turns terminal
        between the scan and its re-drive (a late callback) is skipped by
        the state machine under the request's lock.

        SENT requests still waiting for delivery reports are re-driven too:
        their sent outcomes are cleared and every segment is transmitted
        again, so the recipient may receive the message twice.

        Returns:
            Number of requests re-driven
        """
        self._publisher.publish(RecoveryPassStarted())

        pending = self._store.list_non_terminal()
        logger.info(f"Recovery pass started: {len(pending)} non-terminal request(s)")

        redriven = 0
        for request in pending:
            if self._machine.redrive(request.request_id):
                redriven += 1

        record_redriven(redriven)
        logger.info(f"Recovery pass finished: {redriven} request(s) re-driven")
        return redriven


class BootRecoveryScheduler:
    """
    Runs one recovery pass in the background after the service starts.

    schedule() is safe to call more than once; only the first call starts
    a pass. There is no guarantee about when the pass runs.
    """

    def __init__(self, engine: RecoveryEngine):
        self._engine = engine
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.result: Optional[int] = None

    def schedule(self) -> bool:
        with self._lock:
            if self._thread is not None:
                logger.debug("Boot recovery already scheduled")
                return False
            self._thread = threading.Thread(target=self._run, name="boot-recovery", daemon=True)
            self._thread.start()
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        try:
            self.result = self._engine.recover()
        except Exception:
            # Best effort: the next boot gets another pass
            logger.exception("Boot recovery pass failed")
