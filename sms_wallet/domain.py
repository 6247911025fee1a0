"""
Value types shared by the correlation store and the outbound state machine.

Records handed out by the store are immutable snapshots; every change goes
back through the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from sms_wallet.classifier import RESULT_OK
from sms_wallet.errors import MalformedToken


class RequestState(str, Enum):
    QUEUED = "QUEUED"
    SUBMITTED = "SUBMITTED"
    SENT = "SENT"
    SEND_FAILED_TEMP = "SEND_FAILED_TEMP"
    SEND_FAILED_PERM = "SEND_FAILED_PERM"
    DELIVERED = "DELIVERED"
    DELIVERY_FAILED = "DELIVERY_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RequestState.SEND_FAILED_PERM,
    RequestState.DELIVERED,
    RequestState.DELIVERY_FAILED,
})

NON_TERMINAL_STATES = frozenset(set(RequestState) - TERMINAL_STATES)

# Forward transitions within one attempt. Re-drives are handled separately
# by CorrelationStore.begin_attempt.
ALLOWED_TRANSITIONS = {
    RequestState.QUEUED: frozenset({RequestState.SUBMITTED}),
    RequestState.SUBMITTED: frozenset({
        RequestState.SENT,
        RequestState.SEND_FAILED_TEMP,
        RequestState.SEND_FAILED_PERM,
    }),
    RequestState.SENT: frozenset({
        RequestState.DELIVERED,
        RequestState.DELIVERY_FAILED,
    }),
    RequestState.SEND_FAILED_TEMP: frozenset(),
    RequestState.SEND_FAILED_PERM: frozenset(),
    RequestState.DELIVERED: frozenset(),
    RequestState.DELIVERY_FAILED: frozenset(),
}


class OutcomeKind(str, Enum):
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome:
    """Per-segment result of a sent or delivered callback."""

    kind: OutcomeKind
    code: Optional[int] = None

    @classmethod
    def pending(cls) -> "Outcome":
        return cls(OutcomeKind.PENDING)

    @classmethod
    def ok(cls) -> "Outcome":
        return cls(OutcomeKind.OK)

    @classmethod
    def error(cls, code: int) -> "Outcome":
        return cls(OutcomeKind.ERROR, code)

    @classmethod
    def from_result_code(cls, code: int) -> "Outcome":
        return cls.ok() if code == RESULT_OK else cls.error(int(code))

    @property
    def is_pending(self) -> bool:
        return self.kind is OutcomeKind.PENDING

    @property
    def is_ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR


@dataclass(frozen=True)
class Segment:
    index: int
    body: str
    sent_outcome: Outcome = field(default_factory=Outcome.pending)
    delivered_outcome: Outcome = field(default_factory=Outcome.pending)


@dataclass(frozen=True)
class SendRequest:
    request_id: str
    phone_number: str
    body: str
    state: RequestState
    attempt: int
    segments: Tuple[Segment, ...]
    created_at: str
    last_transition_at: str
    reason: Optional[str] = None

    @property
    def all_sent_reported(self) -> bool:
        return all(not s.sent_outcome.is_pending for s in self.segments)

    @property
    def all_delivered_reported(self) -> bool:
        return all(not s.delivered_outcome.is_pending for s in self.segments)


# =============================================================================
# Correlation tokens
# =============================================================================

class CallbackKind(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"


_KINDS = {kind.value: kind for kind in CallbackKind}


@dataclass(frozen=True)
class CorrelationToken:
    """
    Identifies which segment of which attempt a transport callback belongs to.

    Encoded as "<request_id>:<attempt>:<segment_index>[:<kind>]" and parsed
    from the right, so request ids may themselves contain ':'. The transport
    is handed the token without a kind and reports it back through either
    the sent or the delivered callback; a transport that keeps one token per
    callback may append the kind.
    """

    request_id: str
    attempt: int
    segment_index: int
    kind: Optional[CallbackKind] = None

    def encode(self) -> str:
        token = f"{self.request_id}:{self.attempt}:{self.segment_index}"
        if self.kind is not None:
            token = f"{token}:{self.kind.value}"
        return token

    def with_kind(self, kind: CallbackKind) -> "CorrelationToken":
        return CorrelationToken(self.request_id, self.attempt, self.segment_index, kind)

    @classmethod
    def decode(cls, token: str) -> "CorrelationToken":
        kind = None
        head, _, last = token.rpartition(":")
        if last in _KINDS:
            kind = _KINDS[last]
            token_body = head
        else:
            token_body = token

        parts = token_body.rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise MalformedToken(token)
        request_id, attempt, segment_index = parts
        if not attempt.isdigit() or not segment_index.isdigit():
            raise MalformedToken(token)
        return cls(
            request_id=request_id,
            attempt=int(attempt),
            segment_index=int(segment_index),
            kind=kind,
        )
