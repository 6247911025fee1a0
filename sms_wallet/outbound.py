"""
Outbound message lifecycle.

Drives each send request through

    QUEUED -> SUBMITTED -> {SENT | SEND_FAILED_TEMP | SEND_FAILED_PERM}
    SENT -> {DELIVERED | DELIVERY_FAILED}

by folding per-segment transport callbacks into one logical outcome. The
machine keeps no state of its own: every decision is a read-modify-write on
the correlation store under that request's lock, so callbacks racing each
other (or a recovery re-drive) on different threads are serialized.
"""

import logging
from typing import Optional

from sms_wallet.classifier import FailureClass, ResultCode, classify, describe
from sms_wallet.domain import CallbackKind, CorrelationToken, Outcome, RequestState, SendRequest
from sms_wallet.errors import InvalidTransition, MalformedToken, NotFound, TransportError
from sms_wallet.events import EventPublisher, OutboundStateChanged
from sms_wallet.metrics import record_callback, record_transition
from sms_wallet.segmenter import Segmenter, segment
from sms_wallet.storage import CorrelationStore
from sms_wallet.transport import Transport
from sms_wallet.utils import validate_phone_number

logger = logging.getLogger(__name__)


class OutboundStateMachine:
    def __init__(
        self,
        store: CorrelationStore,
        transport: Transport,
        publisher: EventPublisher,
        segmenter: Segmenter = segment,
        classifier=classify,
    ):
        self._store = store
        self._transport = transport
        self._publisher = publisher
        self._segmenter = segmenter
        self._classify = classifier

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, phone_number: str, body: str, request_id: str) -> SendRequest:
        """
        Accept a transaction message for delivery.

        Creates the request, moves it to SUBMITTED and hands every segment
        to the transport. Returning means "accepted for processing", not
        "sent": the outcome arrives later through on_sent / on_delivered.

        Args:
            phone_number: Destination in E.164 format
            body: Message text
            request_id: Caller supplied identifier, unique per logical send

        Returns:
            Snapshot of the request after submission

        Raises:
            InvalidPhoneNumber: Malformed destination, nothing is stored
            DuplicateRequest: request_id already used, existing record untouched
        """
        validate_phone_number(phone_number)
        parts = self._segmenter(body)
        logger.info(f"Submitting {request_id}: {len(parts)} segment(s) to {phone_number}")

        # A concurrent re-drive must find the request SUBMITTED, never QUEUED
        with self._store.lock(request_id):
            self._store.create(request_id, phone_number, body, parts)
            request = self._transition(request_id, RequestState.SUBMITTED)

        self._dispatch(request)
        return self._store.get(request_id)

    def redrive(self, request_id: str) -> bool:
        """
        Start a fresh attempt for a non-terminal request and resend its segments.

        The stored segmentation is reused and no new record is created.
        Callbacks still in flight for the previous attempt are ignored once
        the attempt number moves on.

        Returns:
            True if the request was re-driven, False if it is unknown or terminal
        """
        with self._store.lock(request_id):
            try:
                request = self._store.get(request_id)
            except NotFound:
                logger.warning(f"Re-drive skipped, unknown request {request_id}")
                return False
            if request.state.is_terminal:
                logger.info(f"Re-drive skipped, {request_id} is {request.state.value}")
                return False

            request = self._store.begin_attempt(request_id)
            self._emit(request)

        self._dispatch(request)
        return True

    def _dispatch(self, request: SendRequest) -> None:
        """Hand every segment of the current attempt to the transport."""
        for seg in request.segments:
            token = CorrelationToken(request.request_id, request.attempt, seg.index).encode()
            try:
                self._transport.send_segment(request.phone_number, seg.body, token)
            except TransportError as e:
                logger.warning(f"Transport rejected segment {token}: {e.message}")
                self.on_sent(token, e.result_code)
            except Exception:
                logger.exception(f"Transport failed on segment {token}")
                self.on_sent(token, ResultCode.GENERIC_FAILURE)

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def on_sent(self, token: str, result_code: int) -> Optional[RequestState]:
        """
        Handle the transport's "sent" report for one segment.

        Duplicated, stale, conflicting or unknown reports are logged and
        ignored. Nothing is raised back to the transport.

        Returns:
            The request's state after handling, or None if the token is unusable
        """
        return self._on_callback(token, result_code, CallbackKind.SENT)

    def on_delivered(self, token: str, result_code: int) -> Optional[RequestState]:
        """Handle the transport's "delivered" report for one segment. See on_sent."""
        return self._on_callback(token, result_code, CallbackKind.DELIVERED)

    def _on_callback(self, raw_token: str, result_code: int, kind: CallbackKind) -> Optional[RequestState]:
        try:
            token = CorrelationToken.decode(raw_token)
        except MalformedToken:
            logger.warning(f"Ignoring {kind.value} callback with malformed token {raw_token!r}")
            record_callback(kind.value, "malformed")
            return None
        if token.kind is not None and token.kind is not kind:
            logger.warning(f"Ignoring {kind.value} callback carrying a {token.kind.value} token")
            record_callback(kind.value, "malformed")
            return None

        outcome = Outcome.from_result_code(result_code)
        logger.debug(f"{kind.value} callback: token={raw_token}, result_code={result_code}")

        with self._store.lock(token.request_id):
            try:
                request = self._store.get(token.request_id)
            except NotFound:
                logger.warning(f"Ignoring {kind.value} callback for unknown request {token.request_id}")
                record_callback(kind.value, "unknown")
                return None

            if token.attempt != request.attempt:
                logger.info(
                    f"Ignoring stale {kind.value} callback for {token.request_id} "
                    f"(attempt {token.attempt}, current {request.attempt})"
                )
                record_callback(kind.value, "stale")
                return request.state

            try:
                if kind is CallbackKind.SENT:
                    changed = self._store.record_sent_outcome(token.request_id, token.segment_index, outcome)
                else:
                    changed = self._store.record_delivered_outcome(token.request_id, token.segment_index, outcome)
            except NotFound as e:
                logger.warning(f"Ignoring {kind.value} callback: {e.message}")
                record_callback(kind.value, "unknown")
                return request.state
            except InvalidTransition as e:
                logger.warning(f"Ignoring conflicting {kind.value} callback: {e.message}")
                record_callback(kind.value, "conflict")
                return request.state

            if not changed:
                record_callback(kind.value, "duplicate")
                return request.state

            record_callback(kind.value, "recorded")
            return self._advance(token.request_id).state

    # =========================================================================
    # Aggregation
    # =========================================================================

    def _advance(self, request_id: str) -> SendRequest:
        """Settle the send and delivery aggregates once every segment has reported."""
        request = self._store.get(request_id)

        if request.state is RequestState.SUBMITTED and request.all_sent_reported:
            request = self._settle_send(request)

        # Delivery reports can overtake sent reports, so check right after SENT too
        if request.state is RequestState.SENT and request.all_delivered_reported:
            request = self._settle_delivery(request)

        return request

    def _settle_send(self, request: SendRequest) -> SendRequest:
        failed = [s for s in request.segments if s.sent_outcome.is_error]
        if not failed:
            return self._transition(request.request_id, RequestState.SENT)

        # Permanent dominates: one unrecoverable part sinks the whole message
        permanent = [s for s in failed if self._classify(s.sent_outcome.code) is FailureClass.PERMANENT]
        if permanent:
            culprit, state, failure_class = permanent[0], RequestState.SEND_FAILED_PERM, FailureClass.PERMANENT
        else:
            culprit, state, failure_class = failed[0], RequestState.SEND_FAILED_TEMP, FailureClass.TRANSIENT

        return self._transition(
            request.request_id,
            state,
            reason=describe(culprit.sent_outcome.code),
            failure_class=failure_class,
        )

    def _settle_delivery(self, request: SendRequest) -> SendRequest:
        failed = [s for s in request.segments if s.delivered_outcome.is_error]
        if not failed:
            return self._transition(request.request_id, RequestState.DELIVERED)

        code = failed[0].delivered_outcome.code
        return self._transition(
            request.request_id,
            RequestState.DELIVERY_FAILED,
            reason=describe(code),
            failure_class=self._classify(code),
        )

    def _transition(
        self,
        request_id: str,
        state: RequestState,
        reason: Optional[str] = None,
        failure_class: Optional[FailureClass] = None,
    ) -> SendRequest:
        request = self._store.transition(request_id, state, reason=reason)
        self._emit(request, failure_class)
        return request

    def _emit(self, request: SendRequest, failure_class: Optional[FailureClass] = None) -> None:
        record_transition(request.state.value)
        self._publisher.publish(OutboundStateChanged(
            request_id=request.request_id,
            state=request.state,
            reason=request.reason,
            failure_class=failure_class,
        ))
