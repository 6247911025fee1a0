"""
Events surfaced to the consuming application.

Publishing is fire-and-forget: with no consumer attached the event is
dropped. The correlation store stays the source of truth, so a dropped
event loses a notification, never state.
"""

import logging
import threading
from collections import deque
from typing import Callable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from sms_wallet.classifier import FailureClass
from sms_wallet.domain import RequestState
from sms_wallet.utils import utc_now_iso

logger = logging.getLogger(__name__)


# =============================================================================
# Event Models
# =============================================================================

class OutboundStateChanged(BaseModel):
    type: Literal["outbound_state_changed"] = "outbound_state_changed"
    request_id: str
    state: RequestState
    reason: Optional[str] = Field(None, description="Opaque diagnostic for failures, e.g. RADIO_OFF")
    failure_class: Optional[FailureClass] = None
    occurred_at: str = Field(default_factory=utc_now_iso)


class InboundMessageReceived(BaseModel):
    type: Literal["inbound_message_received"] = "inbound_message_received"
    raw_body: str
    sender_address: Optional[str] = None
    sent_timestamp: int = Field(..., description="Sender timestamp, epoch milliseconds")
    received_at: int = Field(..., description="Local receive time, epoch milliseconds")
    occurred_at: str = Field(default_factory=utc_now_iso)


class RecoveryPassStarted(BaseModel):
    type: Literal["recovery_pass_started"] = "recovery_pass_started"
    timestamp: str = Field(default_factory=utc_now_iso)
    occurred_at: str = Field(default_factory=utc_now_iso)


Event = Union[OutboundStateChanged, InboundMessageReceived, RecoveryPassStarted]
EventConsumer = Callable[[Event], None]


# =============================================================================
# Publisher
# =============================================================================

class EventPublisher:
    """
    Boundary between the delivery core and the application.

    The application attaches one consumer while it is able to handle events
    and detaches it on shutdown.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._consumer: Optional[EventConsumer] = None

    def attach(self, consumer: EventConsumer) -> None:
        with self._lock:
            self._consumer = consumer
        logger.debug("Event consumer attached")

    def detach(self) -> None:
        with self._lock:
            self._consumer = None
        logger.debug("Event consumer detached")

    @property
    def attached(self) -> bool:
        return self._consumer is not None

    def publish(self, event: Event) -> None:
        with self._lock:
            consumer = self._consumer

        if consumer is None:
            logger.debug(f"No consumer attached, dropping {event.type} event")
            return

        try:
            consumer(event)
        except Exception:
            logger.exception(f"Event consumer failed on {event.type} event")


class RecentEvents:
    """Bounded in-memory consumer keeping the latest events, oldest first."""

    def __init__(self, maxlen: int = 200) -> None:
        self._lock = threading.Lock()
        self._events = deque(maxlen=maxlen)

    def __call__(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self, limit: Optional[int] = None) -> List[Event]:
        with self._lock:
            events = list(self._events)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
